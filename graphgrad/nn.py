"""
Neural Network Module
=====================

Model definitions built on top of the graph engine.

A model is defined once and holds its parameters (Param). For every example
the model is bound to a fresh Graph with `module.reify(graph)`, which wraps
each parameter as a graph leaf and returns a Processor. Calling the processor
composes the forward computation on that graph:

    >>> model = MLP(2, [8, 2])
    >>> with Graph(workers=1) as g:
    ...     proc = model.reify(g)
    ...     logits = proc(g.new_variable([0.5, -1.0], requires_grad=False))
    ...     loss = cross_entropy(g, logits, 1)
    ...     g.forward()
    ...     g.backward(loss)
    ...     proc.accumulate_grads()

Many graphs may read the same parameters at once. Gradients are moved from
each graph into the shared parameters by `Processor.accumulate_grads`, which
takes each parameter's lock, so concurrent training workers never lose an
update.

This module provides:
- Param, Module, Processor: parameters and their per-graph binding
- linear, affine, bilinear, biaffine, conv2d, scaled dot-product attention
- Linear, ScaleNorm, MLP layers
- mse_loss, cross_entropy
- SGD, Adam
"""

from __future__ import annotations
import logging
import random
import threading
import numpy as np
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .config import ProcessingMode
from .engine import Graph, Node
from .errors import ShapeError


logger = logging.getLogger(__name__)


# =============================================================================
# Parameters
# =============================================================================

class Param:
    """
    A trainable array shared by every graph the model is bound to.

    Attributes:
        value: The parameter array (float64), updated in place by optimizers.
        grad: Gradient accumulated from all graphs since the last zero_grad().
        requires_grad: False for frozen parameters.
        name: Optional name for debugging.
    """

    def __init__(self, value: Union[Sequence, np.ndarray], requires_grad: bool = True, name: str = '') -> None:
        self.value: np.ndarray = np.atleast_1d(np.array(value, dtype=np.float64))
        self.grad: np.ndarray = np.zeros_like(self.value)
        self.requires_grad = requires_grad
        self.name = name
        self._lock = threading.Lock()

    def accumulate_grad(self, grad: np.ndarray) -> None:
        """Add `grad` to the parameter gradient; safe to call from many threads."""
        if grad.shape != self.value.shape:
            raise ShapeError(f"param {self.name!r}: gradient shape {grad.shape} != {self.value.shape}")
        with self._lock:
            self.grad += grad

    def zero_grad(self) -> None:
        with self._lock:
            self.grad.fill(0.0)

    def __repr__(self) -> str:
        return f"Param({self.name or '?'}, shape={self.value.shape})"


class Module:
    """
    Base class for all models.

    Subclasses list their parameters in parameters() and define
    forward(proc, *xs), composing nodes on proc.graph and reading their
    parameters as nodes through proc.node(param).
    """

    def parameters(self) -> List[Param]:
        return []

    def zero_grad(self) -> None:
        for p in self.parameters():
            p.zero_grad()

    def forward(self, proc: Processor, *xs: Node):
        raise NotImplementedError

    def reify(self, graph: Graph) -> Processor:
        """Bind this module to `graph` for one computation."""
        return Processor(self, graph)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class Processor:
    """
    A Module bound to one Graph.

    Every parameter of the module is wrapped exactly once as a leaf of the
    graph. The processing mode is the graph's: an inference graph never tracks
    gradients, so its wrapped parameters do not require them.
    """

    def __init__(self, module: Module, graph: Graph) -> None:
        self.module = module
        self.graph = graph
        self._nodes: Dict[int, Tuple[Param, Node]] = {}
        for p in module.parameters():
            if id(p) not in self._nodes:
                self._nodes[id(p)] = (p, graph.new_wrap(p))
        logger.debug("reified %r: %d parameters, mode=%s", module, len(self._nodes), self.mode.value)

    @property
    def mode(self) -> ProcessingMode:
        return self.graph.config.mode

    def node(self, param: Param) -> Node:
        return self._nodes[id(param)][1]

    def __call__(self, *xs: Node):
        return self.module.forward(self, *xs)

    def accumulate_grads(self) -> None:
        """Add the gradient of every wrapped leaf into its shared Param."""
        for param, node in self._nodes.values():
            if node.grad is not None:
                param.accumulate_grad(node.grad)


# =============================================================================
# Transforms
# =============================================================================

def linear(g: Graph, w: Node, x: Node) -> Node:
    """Linear transformation: y = Wx."""
    return g.mul(w, x)


def affine(g: Graph, *xs: Optional[Node]) -> Node:
    """
    Affine transformation over an odd number of nodes.

    y = b + W1x1 + W2x2 + ... + WnXn

    The first node is the bias. The remaining nodes come in (W, x) pairs;
    pairs after the first whose x is None are skipped.

    Raises:
        ShapeError: If the number of nodes is even or smaller than three.
    """
    if len(xs) % 2 == 0 or len(xs) < 3:
        raise ShapeError(
            f"affine: expected an odd number (at least 3) of nodes, got {len(xs)}"
        )
    y = g.add(xs[0], linear(g, xs[1], xs[2]))
    for i in range(3, len(xs) - 1, 2):
        w, x = xs[i], xs[i + 1]
        if x is not None:
            y = g.add(y, linear(g, w, x))
    return y


def bilinear(g: Graph, w: Node, x1: Node, x2: Node) -> Node:
    """Bilinear transformation: y = x1' W x2."""
    return g.mul(g.mul(g.t(x1), w), x2)


def biaffine(g: Graph, w: Node, u: Node, v: Node, b: Node, x1: Node, x2: Node) -> Node:
    """Biaffine transformation: y = x1' W x2 + u' x1 + v' x2 + b."""
    return g.add(g.add(g.add(bilinear(g, w, x1, x2), g.mul(g.t(u), x1)), g.mul(g.t(v), x2)), b)


def conv2d(g: Graph, w: Node, x: Node, x_stride: int, y_stride: int) -> Node:
    """
    2D convolution (valid padding) of the matrix x with the kernel w.

    Each output cell is the dot product of the kernel with a window of x;
    the windows are composed with view, so the convolution is differentiable
    with respect to both x and w.

    Raises:
        ShapeError: If the strides do not evenly divide the size difference
            between x and w.
    """
    if len(x.shape) != 2 or len(w.shape) != 2:
        raise ShapeError(f"conv2d: expected matrices, got {x.shape} and {w.shape}")
    if x_stride < 1 or y_stride < 1:
        raise ShapeError(f"conv2d: strides must be positive, got ({x_stride}, {y_stride})")
    (x_rows, x_cols), (w_rows, w_cols) = x.shape, w.shape
    if x_rows < w_rows or x_cols < w_cols:
        raise ShapeError(f"conv2d: kernel {w.shape} larger than input {x.shape}")
    if (x_rows - w_rows) % x_stride != 0:
        raise ShapeError("conv2d: incompatible stride value for rows")
    if (x_cols - w_cols) % y_stride != 0:
        raise ShapeError("conv2d: incompatible stride value for columns")
    dim_x = (x_rows - w_rows) // x_stride + 1
    dim_y = (x_cols - w_cols) // y_stride + 1

    out = []
    for i in range(dim_x):
        for j in range(dim_y):
            view = g.view(x, i * x_stride, j * y_stride, w_rows, w_cols)
            out.append(g.dot(view, w))
    return g.reshape(g.concat(*out), dim_x, dim_y)


def _attend(g: Graph, keys: Node, values: Node, q: Node, div_term: Node) -> Tuple[Node, np.ndarray]:
    att_scores = g.div_scalar(g.mul(keys, q), div_term)
    att_probs = g.softmax(att_scores)
    return g.mul(values, att_probs), g.value(att_probs)


def scaled_dot_product_attention(
    g: Graph,
    qs: Sequence[Node],
    ks: Sequence[Node],
    vs: Sequence[Node],
    scale: float,
) -> Tuple[List[Node], List[np.ndarray]]:
    """
    Self-attention over one sequence.

    Queries, keys and values must already be projected from the input.
    Each attention score is divided by `scale` (usually the square root of
    the key size).

    Returns:
        (context, probs): one context node per query and the attention
        probabilities for each query.
    """
    keys = g.stack(*ks)
    values = g.t(g.stack(*vs))
    div_term = g.new_scalar(scale)
    context, probs = [], []
    for q in qs:
        c, p = _attend(g, keys, values, q, div_term)
        context.append(c)
        probs.append(p)
    return context, probs


def scaled_dot_product_attention_concurrent(
    g: Graph,
    qs: Sequence[Node],
    ks: Sequence[Node],
    vs: Sequence[Node],
    scale: float,
) -> Tuple[List[Node], List[np.ndarray]]:
    """Like scaled_dot_product_attention, composing each query on its own thread."""
    keys = g.stack(*ks)
    values = g.t(g.stack(*vs))
    div_term = g.new_scalar(scale)
    with ThreadPoolExecutor(max_workers=g.config.workers) as pool:
        results = list(pool.map(lambda q: _attend(g, keys, values, q, div_term), qs))
    return [c for c, _ in results], [p for _, p in results]


# =============================================================================
# Layers
# =============================================================================

class Linear(Module):
    """
    Fully connected layer: y = Wx + b

    Attributes:
        w: Weight Param of shape (nout, nin)
        b: Bias Param of shape (nout,)
    """

    def __init__(self, nin: int, nout: int) -> None:
        # Xavier/Glorot initialization: helps with training stability
        scale = (2.0 / nin) ** 0.5
        self.w = Param(
            [[random.uniform(-1, 1) * scale for _ in range(nin)] for _ in range(nout)],
            name='w',
        )
        self.b = Param(np.zeros(nout), name='b')

    def forward(self, proc: Processor, x: Node) -> Node:
        return affine(proc.graph, proc.node(self.b), proc.node(self.w), x)

    def parameters(self) -> List[Param]:
        return [self.w, self.b]

    def __repr__(self) -> str:
        nout, nin = self.w.value.shape
        return f"Linear({nin} -> {nout})"


class ScaleNorm(Module):
    """
    Scale normalization: y = x / (||x|| + eps) * g

    A learned gain vector g rescales the unit-norm input elementwise.
    """

    eps = 1e-10

    def __init__(self, size: int) -> None:
        self.gain = Param(np.ones(size), name='gain')

    def forward(self, proc: Processor, *xs: Node) -> List[Node]:
        g = proc.graph
        gain = proc.node(self.gain)
        eps = g.new_scalar(self.eps)
        ys = []
        for x in xs:
            norm = g.sqrt(g.reduce_sum(g.square(x)))
            ys.append(g.prod(g.div_scalar(x, g.add_scalar(norm, eps)), gain))
        return ys

    def parameters(self) -> List[Param]:
        return [self.gain]

    def __repr__(self) -> str:
        return f"ScaleNorm({self.gain.value.shape[0]})"


class MLP(Module):
    """
    Multi-Layer Perceptron: a stack of Linear layers.

    All hidden layers use the given activation; the output layer is linear,
    so its output can be fed to softmax/cross_entropy or a regression loss.

    Example:
        MLP(3, [4, 4, 1]) creates:
        - Layer 1: 3 -> 4 (with activation)
        - Layer 2: 4 -> 4 (with activation)
        - Layer 3: 4 -> 1 (linear output)
    """

    activations = ('relu', 'tanh', 'sigmoid')

    def __init__(self, nin: int, nouts: List[int], activation: str = 'relu') -> None:
        if activation not in self.activations:
            raise ValueError(f"unknown activation {activation!r}, expected one of {self.activations}")
        sizes = [nin] + nouts
        self.layers: List[Linear] = [Linear(sizes[i], sizes[i + 1]) for i in range(len(nouts))]
        self.activation = activation

    def forward(self, proc: Processor, x: Node) -> Node:
        g = proc.graph
        for i, layer in enumerate(self.layers):
            x = layer.forward(proc, x)
            if i < len(self.layers) - 1:
                x = getattr(g, self.activation)(x)
        return x

    def parameters(self) -> List[Param]:
        return [p for layer in self.layers for p in layer.parameters()]

    def __repr__(self) -> str:
        return f"MLP([{', '.join(str(layer) for layer in self.layers)}])"


# =============================================================================
# Loss Functions
# =============================================================================

def mse_loss(g: Graph, prediction: Node, target: Union[Sequence[float], np.ndarray]) -> Node:
    """
    Mean Squared Error loss.

    MSE = (1/n) * sum((pred_i - target_i)^2)

    Returns:
        Size-1 node holding the loss.
    """
    t = g.new_variable(target, requires_grad=False)
    return g.reduce_mean(g.square(g.sub(prediction, t)))


def cross_entropy(g: Graph, logits: Node, target: int) -> Node:
    """
    Cross-entropy of softmax(logits) against the class index `target`.

    CE = -log(softmax(logits)[target])
    """
    return g.neg(g.log(g.at_vec(g.softmax(logits), target)))


# =============================================================================
# Optimizers
# =============================================================================

class SGD:
    """
    Stochastic Gradient Descent optimizer.

    Updates parameters: p = p - lr * p.grad
    """

    def __init__(self, params: List[Param], lr: float = 0.01) -> None:
        self.params = params
        self.lr = lr

    def step(self) -> None:
        for p in self.params:
            p.value -= self.lr * p.grad

    def zero_grad(self) -> None:
        for p in self.params:
            p.zero_grad()


class Adam:
    """
    Adam optimizer: Adaptive Moment Estimation.

    Update rules:
        m = beta1 * m + (1 - beta1) * grad
        v = beta2 * v + (1 - beta2) * grad^2
        m_hat = m / (1 - beta1^t)
        v_hat = v / (1 - beta2^t)
        p = p - lr * m_hat / (sqrt(v_hat) + eps)
    """

    def __init__(
        self,
        params: List[Param],
        lr: float = 0.001,
        beta1: float = 0.9,
        beta2: float = 0.999,
        eps: float = 1e-8
    ) -> None:
        self.params = params
        self.lr = lr
        self.beta1 = beta1
        self.beta2 = beta2
        self.eps = eps

        self.m: List[np.ndarray] = [np.zeros_like(p.value) for p in params]
        self.v: List[np.ndarray] = [np.zeros_like(p.value) for p in params]
        self.t: int = 0

    def step(self) -> None:
        self.t += 1
        for i, p in enumerate(self.params):
            g = p.grad
            self.m[i] = self.beta1 * self.m[i] + (1 - self.beta1) * g
            self.v[i] = self.beta2 * self.v[i] + (1 - self.beta2) * (g ** 2)
            m_hat = self.m[i] / (1 - self.beta1 ** self.t)
            v_hat = self.v[i] / (1 - self.beta2 ** self.t)
            p.value -= self.lr * m_hat / (np.sqrt(v_hat) + self.eps)

    def zero_grad(self) -> None:
        for p in self.params:
            p.zero_grad()
