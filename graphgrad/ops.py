"""
Operator Catalog
================

Every differentiable computation the graph knows about is an Operator: a small
object that can

1. validate its operand shapes and report the output shape (infer_shape)
2. compute the output value from the operand values (forward)
3. turn the gradient of the output into one gradient per operand (backward)

Operators never touch the Graph. The Graph validates operands through
`validate`, stores the operator on the new node, and calls forward/backward
when it evaluates or differentiates that node. Adding an operator therefore
means writing a subclass and passing an instance to `Graph.apply`.

Values are float64 numpy arrays. A "scalar" operand is an array of size 1.

Example:
    >>> class Cube(Unary):
    ...     name = 'cube'
    ...     def forward(self, x):
    ...         return x ** 3
    ...     def backward(self, gy, xs, y):
    ...         return [gy * 3 * xs[0] ** 2]
    >>> y = graph.apply(Cube(), x)
"""

from __future__ import annotations
import numpy as np
from typing import List, Optional, Sequence, Tuple

from .errors import ShapeError


Shape = Tuple[int, ...]
Gradients = List[Optional[np.ndarray]]


def _size(shape: Shape) -> int:
    return int(np.prod(shape)) if shape else 1


def _scalar_grad(total: float, shape: Shape) -> np.ndarray:
    """Gradient of a size-1 operand that was broadcast over the output."""
    return np.full(shape, total, dtype=np.float64)


class Operator:
    """
    Base class for differentiable operators.

    Subclasses set `name` and `arity` (None for a variadic operator taking at
    least one operand) and implement forward and backward. Operators whose
    output shape differs from their first operand override infer_shape.
    """

    name: str = 'op'
    arity: Optional[int] = 1

    def validate(self, *shapes: Shape) -> Shape:
        """
        Check operand count and shapes; return the output shape.

        Raises:
            ShapeError: If the operands cannot be combined or one is empty.
        """
        if self.arity is None:
            if not shapes:
                raise ShapeError(f"{self.name}: expected at least one operand")
        elif len(shapes) != self.arity:
            raise ShapeError(
                f"{self.name}: expected {self.arity} operand(s), got {len(shapes)}"
            )
        for s in shapes:
            if 0 in s:
                raise ShapeError(f"{self.name}: empty operand of shape {s}")
        return tuple(self.infer_shape(*shapes))

    def infer_shape(self, *shapes: Shape) -> Shape:
        return shapes[0]

    def forward(self, *xs: np.ndarray) -> np.ndarray:
        raise NotImplementedError(f"{self.name}: forward not implemented")

    def backward(self, gy: np.ndarray, xs: Sequence[np.ndarray], y: np.ndarray) -> Gradients:
        raise NotImplementedError(f"{self.name}: backward not implemented")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


# =============================================================================
# Binary Elementwise
# =============================================================================

class Elementwise(Operator):
    """Two operands of identical shape."""

    arity = 2

    def infer_shape(self, a: Shape, b: Shape) -> Shape:
        if a != b:
            raise ShapeError(f"{self.name}: shape mismatch {a} vs {b}")
        return a


class Add(Elementwise):
    """
    Sum: z = x + y

    Local derivatives:
        dL/dx = dL/dz
        dL/dy = dL/dz
    """

    name = 'add'

    def forward(self, x, y):
        return x + y

    def backward(self, gy, xs, y):
        return [gy, gy]


class Sub(Elementwise):
    """
    Difference: z = x - y

    Local derivatives:
        dL/dx = dL/dz
        dL/dy = -dL/dz
    """

    name = 'sub'

    def forward(self, x, y):
        return x - y

    def backward(self, gy, xs, y):
        return [gy, -gy]


class Prod(Elementwise):
    """
    Hadamard product: z = x * y

    Local derivatives:
        dL/dx = dL/dz * y
        dL/dy = dL/dz * x
    """

    name = 'prod'

    def forward(self, x, y):
        return x * y

    def backward(self, gy, xs, y):
        x1, x2 = xs
        return [gy * x2, gy * x1]


class Div(Elementwise):
    """
    Elementwise quotient: z = x / y

    Local derivatives:
        dL/dx = dL/dz / y
        dL/dy = -dL/dz * x / y^2
    """

    name = 'div'

    def forward(self, x, y):
        return x / y

    def backward(self, gy, xs, y):
        x1, x2 = xs
        return [gy / x2, -gy * x1 / (x2 * x2)]


# =============================================================================
# Scalar Broadcast
# =============================================================================

class ScalarOperator(Operator):
    """First operand of any shape, second operand of size 1."""

    arity = 2

    def infer_shape(self, a: Shape, s: Shape) -> Shape:
        if _size(s) != 1:
            raise ShapeError(f"{self.name}: second operand must be a scalar, got shape {s}")
        return a


class AddScalar(ScalarOperator):
    """z = x + s. The scalar collects sum(dL/dz)."""

    name = 'add_scalar'

    def forward(self, x, s):
        return x + s.item()

    def backward(self, gy, xs, y):
        return [gy, _scalar_grad(gy.sum(), xs[1].shape)]


class SubScalar(ScalarOperator):
    """z = x - s. The scalar collects -sum(dL/dz)."""

    name = 'sub_scalar'

    def forward(self, x, s):
        return x - s.item()

    def backward(self, gy, xs, y):
        return [gy, _scalar_grad(-gy.sum(), xs[1].shape)]


class ProdScalar(ScalarOperator):
    """
    Scalar product: z = x * s

    Local derivatives:
        dL/dx = dL/dz * s
        dL/ds = sum(dL/dz * x)

    The scalar receives one contribution per element it was broadcast to,
    hence the sum.
    """

    name = 'prod_scalar'

    def forward(self, x, s):
        return x * s.item()

    def backward(self, gy, xs, y):
        x, s = xs
        return [gy * s.item(), _scalar_grad(np.sum(gy * x), s.shape)]


class DivScalar(ScalarOperator):
    """
    Division by a scalar: z = x / s

    Local derivatives:
        dL/dx = dL/dz / s
        dL/ds = -sum(dL/dz * x) / s^2
    """

    name = 'div_scalar'

    def forward(self, x, s):
        return x / s.item()

    def backward(self, gy, xs, y):
        x, s = xs
        v = s.item()
        return [gy / v, _scalar_grad(-np.sum(gy * x) / (v * v), s.shape)]


# =============================================================================
# Linear Algebra
# =============================================================================

class Mul(Operator):
    """
    Matrix product: z = a @ b, with a a matrix and b a matrix or a vector.

    Local derivatives (vector b):
        dL/da = outer(dL/dz, b)
        dL/db = a.T @ dL/dz
    """

    name = 'mul'
    arity = 2

    def infer_shape(self, a: Shape, b: Shape) -> Shape:
        if len(a) != 2 or len(b) not in (1, 2):
            raise ShapeError(f"{self.name}: expected matrix @ matrix|vector, got {a} @ {b}")
        if a[1] != b[0]:
            raise ShapeError(f"{self.name}: inner dimensions differ, {a} @ {b}")
        return (a[0],) if len(b) == 1 else (a[0], b[1])

    def forward(self, a, b):
        return a @ b

    def backward(self, gy, xs, y):
        a, b = xs
        ga = np.outer(gy, b) if b.ndim == 1 else gy @ b.T
        return [ga, a.T @ gy]


class Dot(Elementwise):
    """Sum of the elementwise product, as a size-1 value."""

    name = 'dot'

    def infer_shape(self, a: Shape, b: Shape) -> Shape:
        super().infer_shape(a, b)
        return (1,)

    def forward(self, x, y):
        return np.array([np.sum(x * y)])

    def backward(self, gy, xs, y):
        g = gy.item()
        return [g * xs[1], g * xs[0]]


class Transpose(Operator):
    """Matrix transpose. A vector of length n becomes a 1 x n row."""

    name = 't'

    def infer_shape(self, a: Shape) -> Shape:
        if len(a) == 1:
            return (1, a[0])
        if len(a) == 2:
            return (a[1], a[0])
        raise ShapeError(f"{self.name}: expected a vector or a matrix, got {a}")

    def forward(self, x):
        return x.reshape(1, -1) if x.ndim == 1 else x.T

    def backward(self, gy, xs, y):
        x = xs[0]
        return [gy.reshape(x.shape) if x.ndim == 1 else gy.T]


# =============================================================================
# Reductions
# =============================================================================

class ReduceSum(Operator):
    """
    Sum of every element, as a size-1 value.

    Local derivative:
        dL/dx = dL/dz broadcast to the shape of x
    """

    name = 'reduce_sum'

    def infer_shape(self, a: Shape) -> Shape:
        return (1,)

    def forward(self, x):
        return np.array([x.sum()])

    def backward(self, gy, xs, y):
        return [np.full(xs[0].shape, gy.item())]


class ReduceMean(Operator):
    """
    Mean of every element, as a size-1 value.

    Local derivative:
        dL/dx = dL/dz / n, broadcast to the shape of x
    """

    name = 'reduce_mean'

    def infer_shape(self, a: Shape) -> Shape:
        return (1,)

    def forward(self, x):
        return np.array([x.mean()])

    def backward(self, gy, xs, y):
        x = xs[0]
        return [np.full(x.shape, gy.item() / x.size)]


# =============================================================================
# Unary Elementwise
# =============================================================================

class Unary(Operator):
    """One operand; output shaped like it."""

    arity = 1


class Neg(Unary):
    """z = -x, so dL/dx = -dL/dz."""

    name = 'neg'

    def forward(self, x):
        return -x

    def backward(self, gy, xs, y):
        return [-gy]


class Square(Unary):
    """
    Elementwise square: z = x^2

    Local derivative:
        dL/dx = dL/dz * 2x
    """

    name = 'square'

    def forward(self, x):
        return x * x

    def backward(self, gy, xs, y):
        return [2.0 * xs[0] * gy]


class Sqrt(Unary):
    # d(sqrt(x))/dx = 1 / (2 sqrt(x)); reuses the output
    name = 'sqrt'

    def forward(self, x):
        return np.sqrt(x)

    def backward(self, gy, xs, y):
        return [gy * 0.5 / y]


class Exp(Unary):
    """
    Exponential: z = e^x

    Local derivative:
        dL/dx = dL/dz * e^x = dL/dz * z
    """

    name = 'exp'

    def forward(self, x):
        return np.exp(x)

    def backward(self, gy, xs, y):
        return [gy * y]


class Log(Unary):
    """
    Natural logarithm: z = ln(x), defined for x > 0

    Local derivative:
        dL/dx = dL/dz / x
    """

    name = 'log'

    def forward(self, x):
        return np.log(x)

    def backward(self, gy, xs, y):
        return [gy / xs[0]]


class Tanh(Unary):
    """
    Hyperbolic tangent: z = tanh(x)

    Local derivative:
        dL/dx = dL/dz * (1 - z^2)
    """

    name = 'tanh'

    def forward(self, x):
        return np.tanh(x)

    def backward(self, gy, xs, y):
        return [gy * (1.0 - y * y)]


class Sigmoid(Unary):
    """
    Logistic sigmoid: z = 1 / (1 + e^-x)

    Local derivative:
        dL/dx = dL/dz * z * (1 - z)
    """

    name = 'sigmoid'

    def forward(self, x):
        return 1.0 / (1.0 + np.exp(-x))

    def backward(self, gy, xs, y):
        return [gy * y * (1.0 - y)]


class ReLU(Unary):
    """
    Rectified linear unit: z = max(0, x)

    Local derivative:
        dL/dx = dL/dz if x > 0 else 0

    The derivative at exactly 0 is taken as 0.
    """

    name = 'relu'

    def forward(self, x):
        return np.maximum(x, 0.0)

    def backward(self, gy, xs, y):
        return [gy * (xs[0] > 0)]


class Abs(Unary):
    """Absolute value. dL/dx = dL/dz * sign(x), which is 0 at x = 0."""

    name = 'abs'

    def forward(self, x):
        return np.abs(x)

    def backward(self, gy, xs, y):
        return [gy * np.sign(xs[0])]


class Pow(Unary):
    """
    Power with a constant exponent: z = x^n

    Local derivative:
        dL/dx = dL/dz * n * x^(n-1)
    """

    name = 'pow'

    def __init__(self, power: float) -> None:
        self.power = float(power)

    def forward(self, x):
        return np.power(x, self.power)

    def backward(self, gy, xs, y):
        return [gy * self.power * np.power(xs[0], self.power - 1.0)]

    def __repr__(self) -> str:
        return f"Pow({self.power:g})"


class Softmax(Unary):
    """
    Softmax over a vector.

    The maximum is subtracted before exponentiating, which leaves the result
    unchanged and keeps exp() finite.

    Local derivative (Jacobian-vector product):
        dL/dx = y * (dL/dy - sum(dL/dy * y))
    """

    name = 'softmax'

    def infer_shape(self, a: Shape) -> Shape:
        if len(a) != 1:
            raise ShapeError(f"{self.name}: expected a vector, got shape {a}")
        return a

    def forward(self, x):
        e = np.exp(x - x.max())
        return e / e.sum()

    def backward(self, gy, xs, y):
        return [y * (gy - np.sum(gy * y))]


# =============================================================================
# Structural
# =============================================================================

class Concat(Operator):
    """Flatten every operand and join them into one vector."""

    name = 'concat'
    arity = None

    def infer_shape(self, *shapes: Shape) -> Shape:
        return (sum(_size(s) for s in shapes),)

    def forward(self, *xs):
        return np.concatenate([x.ravel() for x in xs])

    def backward(self, gy, xs, y):
        grads = []
        offset = 0
        for x in xs:
            grads.append(gy[offset:offset + x.size].reshape(x.shape))
            offset += x.size
        return grads


class Stack(Operator):
    """Stack equally sized vectors into a matrix, one row per operand."""

    name = 'stack'
    arity = None

    def infer_shape(self, *shapes: Shape) -> Shape:
        first = shapes[0]
        if len(first) != 1:
            raise ShapeError(f"{self.name}: expected vectors, got shape {first}")
        for s in shapes[1:]:
            if s != first:
                raise ShapeError(f"{self.name}: shape mismatch {first} vs {s}")
        return (len(shapes), first[0])

    def forward(self, *xs):
        return np.stack(xs)

    def backward(self, gy, xs, y):
        return [gy[i] for i in range(len(xs))]


class Reshape(Operator):
    name = 'reshape'

    def __init__(self, rows: int, cols: int) -> None:
        self.rows = rows
        self.cols = cols

    def infer_shape(self, a: Shape) -> Shape:
        if self.rows < 1 or self.cols < 1 or self.rows * self.cols != _size(a):
            raise ShapeError(
                f"{self.name}: cannot reshape {a} into ({self.rows}, {self.cols})"
            )
        return (self.rows, self.cols)

    def forward(self, x):
        return x.reshape(self.rows, self.cols)

    def backward(self, gy, xs, y):
        return [gy.reshape(xs[0].shape)]

    def __repr__(self) -> str:
        return f"Reshape({self.rows}, {self.cols})"


class View(Operator):
    """
    Rectangular window of a matrix: x[row:row+rows, col:col+cols].

    The gradient is scattered back into a zero matrix shaped like x.
    """

    name = 'view'

    def __init__(self, row: int, col: int, rows: int, cols: int) -> None:
        self.row = row
        self.col = col
        self.rows = rows
        self.cols = cols

    def infer_shape(self, a: Shape) -> Shape:
        if len(a) != 2:
            raise ShapeError(f"{self.name}: expected a matrix, got shape {a}")
        if (self.row < 0 or self.col < 0 or self.rows < 1 or self.cols < 1
                or self.row + self.rows > a[0] or self.col + self.cols > a[1]):
            raise ShapeError(
                f"{self.name}: window ({self.row}, {self.col}, {self.rows}, {self.cols}) "
                f"out of bounds for shape {a}"
            )
        return (self.rows, self.cols)

    def forward(self, x):
        return x[self.row:self.row + self.rows, self.col:self.col + self.cols]

    def backward(self, gy, xs, y):
        gx = np.zeros_like(xs[0])
        gx[self.row:self.row + self.rows, self.col:self.col + self.cols] = gy
        return [gx]

    def __repr__(self) -> str:
        return f"View({self.row}, {self.col}, {self.rows}, {self.cols})"


class AtVec(Operator):
    """The i-th element of a vector, as a size-1 value."""

    name = 'at_vec'

    def __init__(self, i: int) -> None:
        self.i = i

    def infer_shape(self, a: Shape) -> Shape:
        if len(a) != 1 or not 0 <= self.i < a[0]:
            raise ShapeError(f"{self.name}: index {self.i} out of range for shape {a}")
        return (1,)

    def forward(self, x):
        return x[self.i:self.i + 1]

    def backward(self, gy, xs, y):
        gx = np.zeros_like(xs[0])
        gx[self.i] = gy.item()
        return [gx]

    def __repr__(self) -> str:
        return f"AtVec({self.i})"
