"""
Unit Tests: Operator Catalog
============================

Every operator's backward must agree with a finite-difference estimate of
its forward. Shape validation is checked at composition time.

Run with: pytest tests/test_ops.py -v
"""

import math
import pytest
import numpy as np

from graphgrad import Graph, ShapeError, check_gradients, check_operator
from graphgrad import ops
from graphgrad.gradcheck import numerical_gradient


# Try to import PyTorch for comparison tests
try:
    import torch
    TORCH_AVAILABLE = True
except ImportError:
    TORCH_AVAILABLE = False


TOLERANCE = 1e-6

rng = np.random.default_rng(7)


def away_from_zero(*shape):
    """Random values with magnitude in [0.2, 1.2] and random sign."""
    return rng.uniform(0.2, 1.2, size=shape) * rng.choice([-1.0, 1.0], size=shape)


def positive(*shape):
    return rng.uniform(0.5, 2.0, size=shape)


def seed_for(op, inputs):
    """Random output gradient shaped like the operator's output."""
    return rng.normal(size=op.validate(*(np.shape(x) for x in inputs)))


# =============================================================================
# Gradient Checks
# =============================================================================

GRADIENT_CASES = [
    (ops.Add(), [away_from_zero(4), away_from_zero(4)]),
    (ops.Sub(), [away_from_zero(2, 3), away_from_zero(2, 3)]),
    (ops.Prod(), [away_from_zero(5), away_from_zero(5)]),
    (ops.Div(), [away_from_zero(4), positive(4)]),
    (ops.AddScalar(), [away_from_zero(3), away_from_zero(1)]),
    (ops.SubScalar(), [away_from_zero(3), away_from_zero(1)]),
    (ops.ProdScalar(), [away_from_zero(2, 2), away_from_zero(1)]),
    (ops.DivScalar(), [away_from_zero(3), positive(1)]),
    (ops.Mul(), [away_from_zero(3, 4), away_from_zero(4)]),
    (ops.Mul(), [away_from_zero(2, 3), away_from_zero(3, 2)]),
    (ops.Dot(), [away_from_zero(3), away_from_zero(3)]),
    (ops.Transpose(), [away_from_zero(4)]),
    (ops.Transpose(), [away_from_zero(2, 3)]),
    (ops.ReduceSum(), [away_from_zero(2, 3)]),
    (ops.ReduceMean(), [away_from_zero(5)]),
    (ops.Neg(), [away_from_zero(3)]),
    (ops.Square(), [away_from_zero(3)]),
    (ops.Sqrt(), [positive(3)]),
    (ops.Exp(), [away_from_zero(3)]),
    (ops.Log(), [positive(3)]),
    (ops.Tanh(), [away_from_zero(3)]),
    (ops.Sigmoid(), [away_from_zero(3)]),
    (ops.ReLU(), [away_from_zero(6)]),
    (ops.Abs(), [away_from_zero(6)]),
    (ops.Pow(3), [away_from_zero(4)]),
    (ops.Pow(-1.5), [positive(4)]),
    (ops.Softmax(), [away_from_zero(5)]),
    (ops.Concat(), [away_from_zero(2), away_from_zero(2, 2), away_from_zero(1)]),
    (ops.Stack(), [away_from_zero(3), away_from_zero(3)]),
    (ops.Reshape(2, 3), [away_from_zero(6)]),
    (ops.View(1, 0, 2, 2), [away_from_zero(3, 3)]),
    (ops.AtVec(2), [away_from_zero(4)]),
]


@pytest.mark.parametrize(
    "op, inputs", GRADIENT_CASES,
    ids=[f"{op.name}-{i}" for i, (op, _) in enumerate(GRADIENT_CASES)],
)
def test_operator_gradient(op, inputs) -> None:
    """Analytic gradients match central finite differences."""
    check_operator(op, inputs, seed=seed_for(op, inputs))


@pytest.mark.parametrize("workers", [1, 3])
def test_scale_normalization_gradients(workers) -> None:
    """y = (x / (||x|| + eps)) * g: shape preserved, gradients on x and g."""
    x = away_from_zero(5)
    gain = away_from_zero(5)

    def build(g, x, gain):
        eps = g.new_scalar(1e-10)
        norm = g.sqrt(g.reduce_sum(g.square(x)))
        return g.prod(g.div_scalar(x, g.add_scalar(norm, eps)), gain)

    with Graph(workers=workers) as g:
        y = build(g, g.new_variable(x), g.new_variable(gain))
        g.forward()
        assert y.value.shape == x.shape

    check_gradients(build, [x, gain], seed=rng.normal(size=5), workers=workers)


def test_fan_out_matches_closed_form() -> None:
    """L = f(x) + g(x) differentiates to f'(x) + g'(x)."""
    x = away_from_zero(4)

    def build(g, x):
        return g.add(g.reduce_sum(g.exp(x)), g.reduce_sum(g.tanh(x)))

    with Graph(workers=1) as g:
        xn = g.new_variable(x)
        g.backward(build(g, xn))
        expected = np.exp(x) + (1.0 - np.tanh(x) ** 2)
        np.testing.assert_allclose(xn.grad, expected, atol=TOLERANCE)
    check_gradients(build, [x])


def test_check_operator_detects_wrong_backward() -> None:
    class BrokenSquare(ops.Square):
        def backward(self, gy, xs, y):
            return [gy * xs[0]]

    with pytest.raises(AssertionError):
        check_operator(BrokenSquare(), [np.array([1.0, 2.0])])


def test_numerical_gradient_of_square() -> None:
    grad = numerical_gradient(lambda x: x ** 2, [np.array([1.0, -3.0])], 0)
    np.testing.assert_allclose(grad, [2.0, -6.0], atol=TOLERANCE)


def test_user_defined_operator() -> None:
    """New operators plug in through Graph.apply without touching the graph."""

    class Cube(ops.Unary):
        name = 'cube'

        def forward(self, x):
            return x ** 3

        def backward(self, gy, xs, y):
            return [gy * 3 * xs[0] ** 2]

    g = Graph(workers=1)
    x = g.new_variable([2.0])
    y = g.apply(Cube(), x)
    g.backward(y)
    np.testing.assert_allclose(y.value, [8.0])
    np.testing.assert_allclose(x.grad, [12.0])
    check_operator(Cube(), [away_from_zero(3)])


# =============================================================================
# Forward Values
# =============================================================================

class TestForwardValues:
    """Spot checks on operator outputs."""

    def test_softmax_sums_to_one(self) -> None:
        y = ops.Softmax().forward(np.array([1000.0, 1000.0, 999.0]))
        assert math.isclose(y.sum(), 1.0)
        assert np.all(np.isfinite(y))

    def test_transpose_vector_is_row(self) -> None:
        assert ops.Transpose().validate((4,)) == (1, 4)
        assert ops.Transpose().forward(np.arange(4.0)).shape == (1, 4)

    def test_mul_shapes(self) -> None:
        assert ops.Mul().validate((3, 4), (4,)) == (3,)
        assert ops.Mul().validate((3, 4), (4, 2)) == (3, 2)

    def test_concat_flattens(self) -> None:
        y = ops.Concat().forward(np.array([1.0]), np.array([[2.0, 3.0]]))
        np.testing.assert_allclose(y, [1.0, 2.0, 3.0])

    def test_view_window(self) -> None:
        x = np.arange(9.0).reshape(3, 3)
        np.testing.assert_allclose(ops.View(1, 1, 2, 2).forward(x), [[4.0, 5.0], [7.0, 8.0]])

    def test_dot_is_size_one(self) -> None:
        y = ops.Dot().forward(np.array([1.0, 2.0]), np.array([3.0, 4.0]))
        np.testing.assert_allclose(y, [11.0])


# =============================================================================
# Shape Validation
# =============================================================================

class TestShapeValidation:
    """Composition-time errors."""

    @pytest.mark.parametrize("op, shapes", [
        (ops.Add(), [(2,), (3,)]),
        (ops.Prod(), [(2, 2), (4,)]),
        (ops.ProdScalar(), [(3,), (2,)]),
        (ops.DivScalar(), [(3,), (1, 2)]),
        (ops.Mul(), [(3,), (3,)]),
        (ops.Mul(), [(3, 4), (3,)]),
        (ops.Dot(), [(2,), (3,)]),
        (ops.Softmax(), [(2, 2)]),
        (ops.Stack(), [(2,), (3,)]),
        (ops.Stack(), [(2, 2)]),
        (ops.Reshape(2, 2), [(5,)]),
        (ops.View(2, 0, 2, 2), [(3, 3)]),
        (ops.View(0, 0, 1, 1), [(3,)]),
        (ops.AtVec(4), [(4,)]),
        (ops.Transpose(), [(2, 2, 2)]),
        (ops.Softmax(), [(0,)]),
        (ops.ReduceMean(), [(0,)]),
        (ops.ReduceSum(), [(2, 0)]),
        (ops.Add(), [(0,), (0,)]),
    ])
    def test_rejects_incompatible_shapes(self, op, shapes) -> None:
        with pytest.raises(ShapeError):
            op.validate(*shapes)

    def test_wrong_arity(self) -> None:
        with pytest.raises(ShapeError):
            ops.Add().validate((2,))
        with pytest.raises(ShapeError):
            ops.Stack().validate()

    def test_empty_leaf_rejected(self) -> None:
        """Empty values never reach an operator's forward or backward."""
        g = Graph(workers=1)
        with pytest.raises(ShapeError):
            g.new_variable([])
        with pytest.raises(ShapeError):
            g.new_variable(np.zeros((2, 0)))
        assert len(g) == 0

    def test_graph_rejects_before_adding(self) -> None:
        g = Graph(workers=1)
        x = g.new_variable(np.zeros((3, 3)))
        with pytest.raises(ShapeError):
            g.view(x, 2, 2, 2, 2)
        assert len(g) == 1


# =============================================================================
# PyTorch Comparison Tests
# =============================================================================

@pytest.mark.skipif(not TORCH_AVAILABLE, reason="PyTorch not installed")
class TestPyTorchComparison:
    """Compare our gradients against PyTorch's gradients."""

    def test_prod_scalar_grad(self) -> None:
        x = away_from_zero(4)
        gy = rng.normal(size=4)

        g = Graph(workers=1)
        xn = g.new_variable(x)
        sn = g.new_scalar(2.5, requires_grad=True)
        g.backward(g.prod_scalar(xn, sn), gy)

        x_t = torch.tensor(x, requires_grad=True)
        s_t = torch.tensor(2.5, dtype=torch.float64, requires_grad=True)
        (x_t * s_t).backward(torch.tensor(gy))

        np.testing.assert_allclose(xn.grad, x_t.grad.numpy(), atol=TOLERANCE)
        np.testing.assert_allclose(sn.grad, [s_t.grad.item()], atol=TOLERANCE)

    def test_softmax_matmul_grad(self) -> None:
        w = away_from_zero(3, 4)
        x = away_from_zero(4)
        gy = rng.normal(size=3)

        g = Graph(workers=1)
        wn, xn = g.new_variable(w), g.new_variable(x)
        y = g.softmax(g.mul(wn, xn))
        g.backward(y, gy)

        w_t = torch.tensor(w, requires_grad=True)
        x_t = torch.tensor(x, requires_grad=True)
        y_t = torch.softmax(w_t @ x_t, dim=0)
        y_t.backward(torch.tensor(gy))

        np.testing.assert_allclose(y.value, y_t.detach().numpy(), atol=TOLERANCE)
        np.testing.assert_allclose(wn.grad, w_t.grad.numpy(), atol=TOLERANCE)
        np.testing.assert_allclose(xn.grad, x_t.grad.numpy(), atol=TOLERANCE)

    def test_sqrt_log_sigmoid_grad(self) -> None:
        x = positive(5)

        g = Graph(workers=1)
        xn = g.new_variable(x)
        g.backward(g.reduce_sum(g.sigmoid(g.log(g.sqrt(xn)))))

        x_t = torch.tensor(x, requires_grad=True)
        torch.sigmoid(torch.log(torch.sqrt(x_t))).sum().backward()

        np.testing.assert_allclose(xn.grad, x_t.grad.numpy(), atol=TOLERANCE)


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
