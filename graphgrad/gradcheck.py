"""
Gradient Checking
=================

Compare the analytic gradients computed by backward() with central finite
differences:

    dL/dx_i ~= (L(x + eps*e_i) - L(x - eps*e_i)) / (2*eps)

where L = sum(seed * f(x)). Every operator in the catalog is verified this
way in the test-suite; new operators should be too:

    >>> check_operator(Cube(), [np.array([0.5, -1.2])])
"""

from __future__ import annotations
import logging
import numpy as np
from typing import Callable, List, Optional, Sequence

from .config import GraphConfig, ProcessingMode
from .engine import Graph, Node
from .ops import Operator


logger = logging.getLogger(__name__)

Build = Callable[..., Node]


def _as_inputs(inputs: Sequence) -> List[np.ndarray]:
    return [np.atleast_1d(np.array(x, dtype=np.float64)) for x in inputs]


def evaluate(build: Build, inputs: Sequence) -> np.ndarray:
    """Value of build(graph, *leaves) on a fresh single-threaded inference graph."""
    with Graph(GraphConfig(workers=1, mode=ProcessingMode.INFERENCE)) as g:
        leaves = [g.new_variable(x) for x in inputs]
        return g.copied_value(build(g, *leaves))


def numerical_gradient(
    fn: Callable[..., np.ndarray],
    inputs: Sequence,
    index: int,
    seed: Optional[np.ndarray] = None,
    eps: float = 1e-6,
) -> np.ndarray:
    """
    Central finite-difference gradient of sum(seed * fn(*inputs)) with respect
    to inputs[index].
    """
    xs = _as_inputs(inputs)
    x = xs[index]
    if seed is None:
        seed = np.ones_like(np.asarray(fn(*xs), dtype=np.float64))
    grad = np.zeros_like(x)
    for idx in np.ndindex(x.shape):
        orig = x[idx]
        x[idx] = orig + eps
        plus = np.sum(seed * fn(*xs))
        x[idx] = orig - eps
        minus = np.sum(seed * fn(*xs))
        x[idx] = orig
        grad[idx] = (plus - minus) / (2 * eps)
    return grad


def check_gradients(
    build: Build,
    inputs: Sequence,
    seed: Optional[np.ndarray] = None,
    eps: float = 1e-6,
    atol: float = 1e-6,
    rtol: float = 1e-4,
    workers: int = 1,
) -> float:
    """
    Verify the gradients of build(graph, *leaves) with respect to every input.

    Args:
        build: Composes the computation on the given graph and returns the
            output node.
        inputs: One array per leaf.
        seed: Output gradient; ones if omitted.
        eps: Finite-difference step.
        atol, rtol: Tolerances passed to np.allclose.
        workers: Worker count of the graph running the analytic pass.

    Returns:
        The largest absolute difference between analytic and numeric
        gradients.

    Raises:
        AssertionError: If any operand gradient is outside tolerance.
    """
    xs = _as_inputs(inputs)
    with Graph(workers=workers) as g:
        leaves = [g.new_variable(x) for x in xs]
        y = build(g, *leaves)
        g.forward()
        seed = np.ones(y.shape) if seed is None else np.asarray(seed, dtype=np.float64)
        g.backward(y, seed)
        analytic = [
            np.zeros_like(x) if leaf.grad is None else leaf.grad.copy()
            for x, leaf in zip(xs, leaves)
        ]

    worst = 0.0
    for i, grad in enumerate(analytic):
        numeric = numerical_gradient(lambda *a: evaluate(build, a), xs, i, seed, eps)
        err = float(np.max(np.abs(grad - numeric))) if grad.size else 0.0
        worst = max(worst, err)
        if not np.allclose(grad, numeric, atol=atol, rtol=rtol):
            raise AssertionError(
                f"gradient mismatch on input {i}: max error {err:.3e}\n"
                f"analytic: {grad}\nnumeric:  {numeric}"
            )
    logger.debug("gradient check passed: max error %.3e", worst)
    return worst


def check_operator(op: Operator, inputs: Sequence, **kwargs) -> float:
    """check_gradients for a single operator applied to the inputs."""
    return check_gradients(lambda g, *xs: g.apply(op, *xs), inputs, **kwargs)
