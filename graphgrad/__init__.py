"""graphgrad: a reverse-mode autodiff graph engine on NumPy."""

from .config import GraphConfig, ProcessingMode
from .engine import Graph, Node
from .errors import GraphError, ShapeError, MissingValueError, ForeignNodeError
from .ops import Operator
from .gradcheck import check_gradients, check_operator, numerical_gradient
from .nn import (
    Param, Module, Processor, Linear, ScaleNorm, MLP,
    mse_loss, cross_entropy, SGD, Adam,
)

__all__ = [
    "Graph",
    "Node",
    "GraphConfig",
    "ProcessingMode",
    "Operator",
    "GraphError",
    "ShapeError",
    "MissingValueError",
    "ForeignNodeError",
    "check_gradients",
    "check_operator",
    "numerical_gradient",
    "Param",
    "Module",
    "Processor",
    "Linear",
    "ScaleNorm",
    "MLP",
    "mse_loss",
    "cross_entropy",
    "SGD",
    "Adam",
]
