"""Exceptions raised by the graph engine."""


class GraphError(Exception):
    """Base class for every error raised by graphgrad."""


class ShapeError(GraphError, ValueError):
    """
    Operands cannot be combined by an operator.

    Raised at composition time (wrong arity, incompatible shapes, bad stride,
    out-of-bounds view) before the node is added, so the graph is left as it
    was before the failing call.
    """


class MissingValueError(GraphError, RuntimeError):
    """An operand value was absent when an operator needed it."""


class ForeignNodeError(GraphError, ValueError):
    """A node that does not belong to this graph lifecycle was used."""
