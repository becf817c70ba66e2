#!/usr/bin/env python3
"""
graphgrad Demo: One Graph per Example
=====================================

This demo shows the complete workflow:
1. Compose a computation on a Graph, run forward and backward
2. Train an MLP on the moons dataset, building one graph per example on a
   pool of worker threads that share the model parameters
3. Classify a batch concurrently on inference graphs, keeping only the
   copied outputs after each graph is cleared
4. Visualize the decision boundary

Run: python examples/demo.py
"""

import logging
import numpy as np
import matplotlib.pyplot as plt
from concurrent.futures import ThreadPoolExecutor
from typing import List, Tuple

from graphgrad import Graph, GraphConfig, ProcessingMode, MLP, Adam, cross_entropy


logger = logging.getLogger("demo")

TRAIN_CONFIG = GraphConfig(workers=1, incremental_forward=True)
INFERENCE_CONFIG = GraphConfig(workers=1, mode=ProcessingMode.INFERENCE)


def make_moons(
    n_samples: int = 100,
    noise: float = 0.1,
    seed: int = 42
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Generate the classic 'moons' dataset for binary classification.

    Two interleaved half-circles that are not linearly separable.

    Returns:
        X: Features array of shape (n_samples, 2)
        y: Labels array of shape (n_samples,) with values 0 or 1
    """
    np.random.seed(seed)
    n_each = n_samples // 2

    theta = np.linspace(0, np.pi, n_each)
    X = np.vstack([
        np.column_stack([np.cos(theta), np.sin(theta)]),
        np.column_stack([1 - np.cos(theta), 0.5 - np.sin(theta)])
    ])
    X += np.random.randn(*X.shape) * noise
    y = np.array([0] * n_each + [1] * n_each)
    return X, y


def train_example(model: MLP, xi: np.ndarray, yi: int) -> float:
    """Forward and backward one example on its own graph; returns the loss."""
    with Graph(TRAIN_CONFIG) as g:
        proc = model.reify(g)
        loss = cross_entropy(g, proc(g.new_variable(xi, requires_grad=False)), int(yi))
        g.backward(loss)
        proc.accumulate_grads()
        return loss.value.item()


def classify(model: MLP, xi: np.ndarray) -> np.ndarray:
    """Class probabilities for one example, computed on an inference graph."""
    with Graph(INFERENCE_CONFIG) as g:
        proc = model.reify(g)
        probs = g.softmax(proc(g.new_variable(xi)))
        g.forward()
        return g.copied_value(probs)


def predict(model: MLP, X: np.ndarray, pool: ThreadPoolExecutor) -> np.ndarray:
    return np.array(list(pool.map(lambda xi: classify(model, xi), X)))


def train(
    model: MLP,
    X: np.ndarray,
    y: np.ndarray,
    pool: ThreadPoolExecutor,
    epochs: int = 60,
    lr: float = 0.05,
) -> List[float]:
    """
    Full-batch training: every epoch sums the gradients of all examples,
    each computed on its own graph by the worker pool.

    Returns:
        List of mean loss values per epoch.
    """
    optimizer = Adam(model.parameters(), lr=lr)
    losses = []

    for epoch in range(epochs):
        optimizer.zero_grad()
        batch = list(pool.map(lambda xy: train_example(model, *xy), zip(X, y)))
        for p in model.parameters():
            p.grad /= len(X)
        optimizer.step()
        losses.append(float(np.mean(batch)))

        if (epoch + 1) % 10 == 0:
            acc = np.mean(predict(model, X, pool).argmax(axis=1) == y)
            logger.info("epoch %3d | loss %.4f | accuracy %.2f%%", epoch + 1, losses[-1], 100 * acc)

    return losses


def plot_decision_boundary(model: MLP, X: np.ndarray, y: np.ndarray, pool: ThreadPoolExecutor, title: str) -> None:
    h = 0.05
    x_min, x_max = X[:, 0].min() - 0.5, X[:, 0].max() + 0.5
    y_min, y_max = X[:, 1].min() - 0.5, X[:, 1].max() + 0.5
    xx, yy = np.meshgrid(np.arange(x_min, x_max, h), np.arange(y_min, y_max, h))

    grid = np.column_stack([xx.ravel(), yy.ravel()])
    Z = predict(model, grid, pool)[:, 1].reshape(xx.shape)

    plt.figure(figsize=(10, 8))
    plt.contourf(xx, yy, Z, levels=50, cmap='RdBu', alpha=0.8)
    plt.colorbar(label='P(class 1)')
    plt.contour(xx, yy, Z, levels=[0.5], colors='black', linewidths=2)
    plt.scatter(X[:, 0], X[:, 1], c=y, cmap='RdBu', edgecolors='black', s=50)
    plt.xlabel('x1')
    plt.ylabel('x2')
    plt.title(title)
    plt.tight_layout()
    plt.savefig('./decision_boundary.png', dpi=150)
    plt.close()
    logger.info("saved decision boundary plot to decision_boundary.png")


def demo_gradient_computation() -> None:
    """The scalar product example: y = x * s."""
    with Graph(workers=1) as g:
        x = g.new_variable([0.1, 0.2, 0.3, 0.0], label='x')
        s = g.new_scalar(2.0, requires_grad=True, label='s')
        y = g.prod_scalar(x, s)
        g.forward()
        g.backward(y, [-1.0, 0.5, 0.8, 0.0])

        logger.info("y = x * s = %s", y.value)
        logger.info("dL/dx = %s", x.grad)
        logger.info("dL/ds = %s  (sum of seed * x)", s.grad)
        for node in g.nodes:
            logger.info("  %r <- %s", node, list(node.operands))


def demo_neural_network() -> None:
    X, y = make_moons(n_samples=100, noise=0.15)
    model = MLP(2, [16, 16, 2], activation='tanh')
    logger.info("model %r with %d weights", model, sum(p.value.size for p in model.parameters()))

    with ThreadPoolExecutor(max_workers=4) as pool:
        train(model, X, y, pool)
        acc = np.mean(predict(model, X, pool).argmax(axis=1) == y)
        logger.info("final training accuracy: %.2f%%", 100 * acc)
        plot_decision_boundary(model, X, y, pool, f"Decision Boundary (Accuracy: {acc:.1%})")


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    demo_gradient_computation()
    demo_neural_network()


if __name__ == "__main__":
    main()
