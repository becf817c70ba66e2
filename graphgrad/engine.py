"""
graphgrad: A Reverse-Mode Autodiff Graph Engine
===============================================

A Graph owns every node of one computation (one inference or training
example). Nodes live in an arena addressed by their index, and an operator
node refers to its operands by index. Because a node can only be built from
nodes that already exist, creation order is a topological order:

- forward evaluation sweeps the arena front to back
- backward propagation sweeps it back to front, adding each operator's
  operand gradients into the operands (a node used by N operators receives
  the sum of N contributions)

Values are computed either the moment a node is created (incremental forward)
or in bulk by Graph.forward(), which can hand independent nodes to a pool of
worker threads. The graph is cleared once the caller is done with it; using it
as a context manager guarantees that on every exit path.

Example:
    >>> with Graph(workers=1) as g:
    ...     x = g.new_variable([0.1, 0.2, 0.3, 0.0])
    ...     s = g.new_scalar(2.0, requires_grad=True)
    ...     y = g.prod_scalar(x, s)
    ...     g.forward()
    ...     g.backward(y, [-1.0, 0.5, 0.8, 0.0])
    ...     s.grad
    array([0.24])
"""

from __future__ import annotations
import logging
import threading
import weakref
import numpy as np
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from . import ops
from .config import GraphConfig
from .errors import ForeignNodeError, GraphError, MissingValueError, ShapeError


logger = logging.getLogger(__name__)

ArrayLike = Union[int, float, np.number, Sequence, np.ndarray]


def _as_array(value: Any, copy: bool = True) -> np.ndarray:
    if isinstance(value, bool) or not isinstance(value, (int, float, np.number, list, tuple, np.ndarray)):
        raise TypeError(f"node value must be numeric, got {type(value).__name__}")
    arr = np.array(value, dtype=np.float64) if copy else np.asarray(value, dtype=np.float64)
    if arr.size == 0:
        raise ShapeError("node value must not be empty")
    return np.atleast_1d(arr)


class Node:
    """
    A vertex of a Graph: a leaf holding a value, or an operator application.

    Attributes:
        index: Position in the owning graph (creation order).
        op: The Operator for operator nodes, None for leaves.
        operands: Indices of the operand nodes, empty for leaves.
        shape: Shape of the value, known as soon as the node is created.
        requires_grad: Whether gradients are propagated into this node.
        label: Optional name for debugging.
        param: The model parameter a wrapped leaf stands for, if any.
    """

    __slots__ = (
        'index', 'op', 'operands', 'shape', 'requires_grad', 'label', 'param',
        '_graph', '_value', '_grad', '_lock',
    )

    def __init__(
        self,
        graph: Graph,
        index: int,
        op: Optional[ops.Operator],
        operands: Tuple[int, ...],
        shape: Tuple[int, ...],
        requires_grad: bool,
        value: Optional[np.ndarray] = None,
        label: str = '',
        param: Any = None,
    ) -> None:
        self.index = index
        self.op = op
        self.operands = operands
        self.shape = shape
        self.requires_grad = requires_grad
        self.label = label
        self.param = param
        self._graph = weakref.ref(graph)
        self._value = value
        self._grad: Optional[np.ndarray] = None
        self._lock = threading.Lock()

    @property
    def graph(self) -> Graph:
        graph = self._graph() if self._graph is not None else None
        if graph is None:
            raise ForeignNodeError(f"{self!r} no longer belongs to a graph")
        return graph

    @property
    def is_leaf(self) -> bool:
        return self.op is None

    @property
    def value(self) -> np.ndarray:
        """Read-only value, computed on first access if still pending."""
        return self.graph.value(self)

    @property
    def grad(self) -> Optional[np.ndarray]:
        return self._grad

    def _accumulate(self, grad: np.ndarray) -> None:
        with self._lock:
            self._grad = grad.copy() if self._grad is None else self._grad + grad

    def _detach(self) -> None:
        self._graph = None
        self._value = None
        self._grad = None

    def __repr__(self) -> str:
        kind = self.label or (self.op.name if self.op is not None else 'leaf')
        return f"Node({kind}#{self.index}, shape={self.shape})"

    # =========================================================================
    # Operator Overloading
    # =========================================================================

    def _scalar(self, other: Any) -> Optional[Node]:
        if isinstance(other, (int, float, np.number)) and not isinstance(other, bool):
            return self.graph.new_scalar(other)
        return None

    def __add__(self, other: Union[Node, float]) -> Node:
        if isinstance(other, Node):
            return self.graph.add(self, other)
        s = self._scalar(other)
        return NotImplemented if s is None else self.graph.add_scalar(self, s)

    __radd__ = __add__

    def __sub__(self, other: Union[Node, float]) -> Node:
        if isinstance(other, Node):
            return self.graph.sub(self, other)
        s = self._scalar(other)
        return NotImplemented if s is None else self.graph.sub_scalar(self, s)

    def __rsub__(self, other: float) -> Node:
        s = self._scalar(other)
        return NotImplemented if s is None else self.graph.add_scalar(self.graph.neg(self), s)

    def __mul__(self, other: Union[Node, float]) -> Node:
        if isinstance(other, Node):
            return self.graph.prod(self, other)
        s = self._scalar(other)
        return NotImplemented if s is None else self.graph.prod_scalar(self, s)

    __rmul__ = __mul__

    def __truediv__(self, other: Union[Node, float]) -> Node:
        if isinstance(other, Node):
            return self.graph.div(self, other)
        s = self._scalar(other)
        return NotImplemented if s is None else self.graph.div_scalar(self, s)

    def __rtruediv__(self, other: float) -> Node:
        s = self._scalar(other)
        return NotImplemented if s is None else self.graph.prod_scalar(self.graph.pow(self, -1.0), s)

    def __pow__(self, n: Union[int, float]) -> Node:
        """
        Power with a constant exponent: out = self ** n

        Raises:
            TypeError: If n is a Node. Use exp(n * log(self)) instead.
        """
        if isinstance(n, Node):
            raise TypeError("power with a Node exponent is not supported; use exp(n * log(x))")
        if isinstance(n, bool) or not isinstance(n, (int, float, np.number)):
            return NotImplemented
        return self.graph.pow(self, n)

    def __matmul__(self, other: Node) -> Node:
        if isinstance(other, Node):
            return self.graph.mul(self, other)
        return NotImplemented

    def __neg__(self) -> Node:
        return self.graph.neg(self)


class Graph:
    """
    Owner of the nodes, values and gradients of one computation.

    A graph is single-writer with respect to forward/backward: nodes must not
    be added while either pass is running. Composition itself is serialized,
    so several threads may add nodes to the same graph.

    Args:
        config: Options; defaults to GraphConfig().
        **overrides: Individual GraphConfig fields replacing those of config.

    Example:
        >>> g = Graph(workers=4)  # batched forward, training mode
        >>> x = g.new_variable([1.0, 2.0])
        >>> y = g.reduce_sum(g.square(x))
        >>> g.forward()
        >>> g.backward(y)
        >>> x.grad
        array([2., 4.])
        >>> g.clear()
    """

    def __init__(self, config: Optional[GraphConfig] = None, **overrides: Any) -> None:
        config = config if config is not None else GraphConfig()
        if overrides:
            config = config.replace(**overrides)
        self.config = config
        self._nodes: List[Node] = []
        self._lock = threading.Lock()
        logger.debug("created graph: %s", config)

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        return f"Graph(nodes={len(self._nodes)}, config={self.config})"

    def __enter__(self) -> Graph:
        return self

    def __exit__(self, *exc_info: Any) -> bool:
        self.clear()
        return False

    @property
    def nodes(self) -> Tuple[Node, ...]:
        return tuple(self._nodes)

    # =========================================================================
    # Node Creation
    # =========================================================================

    def _check(self, node: Any) -> Node:
        if not isinstance(node, Node):
            raise TypeError(f"expected a Node, got {type(node).__name__}")
        owner = node._graph() if node._graph is not None else None
        if owner is not self or node.index >= len(self._nodes) or self._nodes[node.index] is not node:
            raise ForeignNodeError(f"{node!r} does not belong to this graph")
        return node

    def _append(self, **kwargs: Any) -> Node:
        with self._lock:
            node = Node(self, len(self._nodes), **kwargs)
            self._nodes.append(node)
        return node

    def new_variable(self, value: ArrayLike, requires_grad: bool = True, label: str = '') -> Node:
        """
        Create a leaf holding a copy of `value`.

        Args:
            value: Number, nested sequence or array.
            requires_grad: Whether backward() should compute this leaf's
                gradient. Ignored (treated as False) in inference mode.
            label: Optional name for debugging.

        Raises:
            TypeError: If value is not numeric.
            ShapeError: If value is empty.
        """
        arr = _as_array(value)
        arr.flags.writeable = False
        return self._append(
            op=None, operands=(), shape=arr.shape,
            requires_grad=requires_grad and self.config.training,
            value=arr, label=label,
        )

    def new_scalar(self, value: Union[int, float, np.number], requires_grad: bool = False, label: str = '') -> Node:
        """Create a size-1 leaf. Scalars are constants unless asked otherwise."""
        arr = _as_array(value)
        if arr.size != 1:
            raise ShapeError(f"new_scalar: expected a single number, got shape {arr.shape}")
        return self.new_variable(arr.reshape(1), requires_grad=requires_grad, label=label)

    def new_wrap(self, param: Any, label: Optional[str] = None) -> Node:
        """
        Create a leaf standing for a shared model parameter.

        The parameter's array is referenced, not copied: many graphs may read
        the same parameter concurrently. Gradients collected on the leaf are
        handed back to the parameter by the caller (see nn.Processor).
        """
        arr = _as_array(param.value, copy=False)
        return self._append(
            op=None, operands=(), shape=arr.shape,
            requires_grad=bool(param.requires_grad) and self.config.training,
            value=arr, label=label if label is not None else getattr(param, 'name', ''),
            param=param,
        )

    def apply(self, op: ops.Operator, *operands: Node, label: str = '') -> Node:
        """
        Create a node applying `op` to `operands`.

        Operands are validated before anything is added to the graph. In
        incremental mode the value is computed before returning.

        Raises:
            ShapeError: If the operator rejects the operand shapes or count.
            ForeignNodeError: If an operand belongs to another graph.
        """
        for x in operands:
            self._check(x)
        shape = op.validate(*(x.shape for x in operands))
        node = self._append(
            op=op, operands=tuple(x.index for x in operands), shape=shape,
            requires_grad=self.config.training and any(x.requires_grad for x in operands),
            label=label,
        )
        if self.config.incremental_forward:
            self._compute(node)
        return node

    # =========================================================================
    # Factory Methods
    # =========================================================================

    def add(self, x1: Node, x2: Node) -> Node:
        return self.apply(ops.Add(), x1, x2)

    def sub(self, x1: Node, x2: Node) -> Node:
        return self.apply(ops.Sub(), x1, x2)

    def prod(self, x1: Node, x2: Node) -> Node:
        """Elementwise product."""
        return self.apply(ops.Prod(), x1, x2)

    def div(self, x1: Node, x2: Node) -> Node:
        """Elementwise division."""
        return self.apply(ops.Div(), x1, x2)

    def add_scalar(self, x: Node, s: Node) -> Node:
        return self.apply(ops.AddScalar(), x, s)

    def sub_scalar(self, x: Node, s: Node) -> Node:
        return self.apply(ops.SubScalar(), x, s)

    def prod_scalar(self, x: Node, s: Node) -> Node:
        """Multiply every element of x by the size-1 node s."""
        return self.apply(ops.ProdScalar(), x, s)

    def div_scalar(self, x: Node, s: Node) -> Node:
        """Divide every element of x by the size-1 node s."""
        return self.apply(ops.DivScalar(), x, s)

    def mul(self, a: Node, b: Node) -> Node:
        """Matrix product a @ b (b may be a vector)."""
        return self.apply(ops.Mul(), a, b)

    def dot(self, x1: Node, x2: Node) -> Node:
        return self.apply(ops.Dot(), x1, x2)

    def t(self, x: Node) -> Node:
        """Transpose; a vector becomes a single row."""
        return self.apply(ops.Transpose(), x)

    def reduce_sum(self, x: Node) -> Node:
        return self.apply(ops.ReduceSum(), x)

    def reduce_mean(self, x: Node) -> Node:
        return self.apply(ops.ReduceMean(), x)

    def neg(self, x: Node) -> Node:
        return self.apply(ops.Neg(), x)

    def square(self, x: Node) -> Node:
        return self.apply(ops.Square(), x)

    def sqrt(self, x: Node) -> Node:
        return self.apply(ops.Sqrt(), x)

    def exp(self, x: Node) -> Node:
        return self.apply(ops.Exp(), x)

    def log(self, x: Node) -> Node:
        return self.apply(ops.Log(), x)

    def tanh(self, x: Node) -> Node:
        return self.apply(ops.Tanh(), x)

    def sigmoid(self, x: Node) -> Node:
        return self.apply(ops.Sigmoid(), x)

    def relu(self, x: Node) -> Node:
        return self.apply(ops.ReLU(), x)

    def abs(self, x: Node) -> Node:
        return self.apply(ops.Abs(), x)

    def pow(self, x: Node, power: float) -> Node:
        """Elementwise x ** power for a constant exponent."""
        return self.apply(ops.Pow(power), x)

    def softmax(self, x: Node) -> Node:
        return self.apply(ops.Softmax(), x)

    def concat(self, *xs: Node) -> Node:
        """Flatten and join any number of nodes into one vector."""
        return self.apply(ops.Concat(), *xs)

    def stack(self, *xs: Node) -> Node:
        """Stack equally sized vectors into a matrix, one row each."""
        return self.apply(ops.Stack(), *xs)

    def reshape(self, x: Node, rows: int, cols: int) -> Node:
        return self.apply(ops.Reshape(rows, cols), x)

    def view(self, x: Node, row: int, col: int, rows: int, cols: int) -> Node:
        """Window of the matrix x starting at (row, col)."""
        return self.apply(ops.View(row, col, rows, cols), x)

    def at_vec(self, x: Node, i: int) -> Node:
        return self.apply(ops.AtVec(i), x)

    # =========================================================================
    # Forward
    # =========================================================================

    def _compute(self, node: Node) -> None:
        with node._lock:
            if node._value is not None:
                return
            xs = [self._nodes[i]._value for i in node.operands]
            for i, x in zip(node.operands, xs):
                if x is None:
                    raise MissingValueError(f"{node!r}: operand #{i} has no value")
            y = np.asarray(node.op.forward(*xs), dtype=np.float64)
            # wrapped parameters stay writable; views of them must not follow updates
            if any(y is x or (x.flags.writeable and np.shares_memory(y, x)) for x in xs):
                y = y.copy()
            if y.shape != node.shape:
                raise GraphError(
                    f"{node.op.name}: forward produced shape {y.shape}, expected {node.shape}"
                )
            y.flags.writeable = False
            node._value = y

    def _resolve(self, node: Node) -> None:
        """Compute the value of `node` and of its pending ancestors."""
        if node._value is not None:
            return
        pending = set()
        stack = [node.index]
        while stack:
            i = stack.pop()
            if i in pending or self._nodes[i]._value is not None:
                continue
            pending.add(i)
            stack.extend(self._nodes[i].operands)
        for i in sorted(pending):
            self._compute(self._nodes[i])

    @staticmethod
    def _forward_waves(pending: List[Node]) -> List[List[Node]]:
        # A node's wave is one past the deepest wave among its pending operands.
        depth: Dict[int, int] = {}
        waves: List[List[Node]] = []
        for node in pending:
            d = max((depth[i] + 1 for i in node.operands if i in depth), default=0)
            depth[node.index] = d
            if d == len(waves):
                waves.append([])
            waves[d].append(node)
        return waves

    def forward(self) -> None:
        """
        Compute every value that is still pending.

        With more than one worker, pending nodes are grouped into waves of
        mutually independent nodes; each wave is evaluated by the thread pool
        and completes before the next one starts. Nodes that already hold a
        value are left untouched, so calling forward() again is a no-op.
        """
        with self._lock:
            pending = [n for n in self._nodes if n._value is None]
        if not pending:
            return

        workers = self.config.workers
        if workers == 1 or len(pending) == 1:
            logger.debug("forward: %d pending nodes, sequential", len(pending))
            for node in pending:
                self._compute(node)
            return

        waves = self._forward_waves(pending)
        logger.debug("forward: %d pending nodes in %d waves, %d workers",
                     len(pending), len(waves), workers)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            for wave in waves:
                if len(wave) == 1:
                    self._compute(wave[0])
                else:
                    list(pool.map(self._compute, wave))

    # =========================================================================
    # Backward
    # =========================================================================

    def _backprop(self, node: Node) -> None:
        """Push the gradient of `node` into its operands."""
        if node._grad is None:
            return
        xs = [self._nodes[i]._value for i in node.operands]
        grads = node.op.backward(node._grad, xs, node._value)
        if len(grads) != len(node.operands):
            raise GraphError(
                f"{node.op.name}: backward returned {len(grads)} gradients "
                f"for {len(node.operands)} operands"
            )
        for i, g in zip(node.operands, grads):
            operand = self._nodes[i]
            if g is None or not operand.requires_grad:
                continue
            g = np.asarray(g, dtype=np.float64)
            if g.shape != operand.shape:
                raise GraphError(
                    f"{node.op.name}: gradient of shape {g.shape} for operand "
                    f"#{i} of shape {operand.shape}"
                )
            operand._accumulate(g)

    def _backward_levels(self, nodes: List[Node], target: Node) -> List[List[Node]]:
        # Level of a node = longest path from the target through requires_grad
        # edges. All consumers of a node sit on lower levels.
        level: Dict[int, int] = {target.index: 0}
        levels: List[List[Node]] = []
        for node in reversed(nodes):
            d = level.get(node.index)
            if d is None or node.op is None:
                continue
            while len(levels) <= d:
                levels.append([])
            levels[d].append(node)
            for i in node.operands:
                if self._nodes[i].requires_grad:
                    level[i] = max(level.get(i, 0), d + 1)
        return levels

    def backward(self, node: Node, seed: Optional[ArrayLike] = None) -> None:
        """
        Propagate gradients from `node` to every ancestor requiring them.

        Gradients of operator nodes are reset at the start of each pass; leaf
        gradients keep accumulating across passes until zero_grad() or
        clear(). Operands with requires_grad=False receive nothing and are
        not traversed through that edge.

        Args:
            node: The node to differentiate (typically a scalar loss).
            seed: Gradient of the loss with respect to `node`; defaults to
                ones shaped like its value.

        Raises:
            GraphError: If the graph is in inference mode.
            ShapeError: If the seed is not shaped like the node's value.
        """
        if not self.config.training:
            raise GraphError("backward is not available on an inference graph")
        self._check(node)
        if seed is None:
            seed = np.ones(node.shape)
        else:
            seed = _as_array(seed)
            if seed.shape != node.shape:
                raise ShapeError(f"backward: seed shape {seed.shape} does not match node shape {node.shape}")
        if not node.requires_grad:
            logger.debug("backward: %r does not require gradients", node)
            return

        self._resolve(node)
        nodes = self._nodes[:node.index + 1]
        for n in self._nodes:
            if n.op is not None:
                n._grad = None
        node._accumulate(seed)

        workers = self.config.workers
        if workers == 1:
            visited = 0
            for n in reversed(nodes):
                if n.op is not None and n._grad is not None:
                    self._backprop(n)
                    visited += 1
            logger.debug("backward from #%d: %d operator nodes, sequential", node.index, visited)
            return

        levels = self._backward_levels(nodes, node)
        logger.debug("backward from #%d: %d operator nodes in %d levels, %d workers",
                     node.index, sum(len(lv) for lv in levels), len(levels), workers)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            for level in levels:
                if len(level) == 1:
                    self._backprop(level[0])
                else:
                    list(pool.map(self._backprop, level))

    def zero_grad(self) -> None:
        """Reset the gradient of every node."""
        for n in self._nodes:
            n._grad = None

    # =========================================================================
    # Accessors & Lifecycle
    # =========================================================================

    def value(self, node: Node) -> np.ndarray:
        """Read-only value of `node`, computing it first if still pending."""
        self._check(node)
        self._resolve(node)
        return node._value

    def gradient(self, node: Node) -> Optional[np.ndarray]:
        """Accumulated gradient of `node`, or None if it has none."""
        return self._check(node)._grad

    def copied_value(self, node: Node) -> np.ndarray:
        """Writable copy of the value that stays valid after clear()."""
        return np.array(self.value(node), copy=True)

    def clear(self) -> None:
        """
        Release every node, value and gradient.

        Existing Node handles are detached; the graph can be reused for a new
        computation as if freshly created.
        """
        with self._lock:
            nodes, self._nodes = self._nodes, []
        for n in nodes:
            n._detach()
        logger.debug("cleared graph: released %d nodes", len(nodes))
