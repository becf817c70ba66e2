"""
Graph Configuration
===================

Options a Graph is created with:

- workers: how many threads may evaluate independent nodes of one graph
- incremental_forward: compute each value as soon as its node is created
  (single-threaded call sites) instead of deferring to Graph.forward()
- mode: training graphs track gradients, inference graphs never do
"""

from __future__ import annotations
import os
import dataclasses
from dataclasses import dataclass, field
from enum import Enum


class ProcessingMode(Enum):
    """Whether a graph engages gradient bookkeeping."""

    TRAINING = 'training'
    INFERENCE = 'inference'


def _default_workers() -> int:
    return os.cpu_count() or 1


@dataclass(frozen=True)
class GraphConfig:
    """
    Immutable set of options for a Graph.

    Batched forward (incremental_forward=False) is the default: values are
    resolved by an explicit Graph.forward() call, which is the only strategy
    that dispatches independent branches to the worker pool.

    Attributes:
        workers: Upper bound on threads used by forward() and backward().
        incremental_forward: Compute values eagerly at composition time.
        mode: ProcessingMode.TRAINING or ProcessingMode.INFERENCE.

    Example:
        >>> cfg = GraphConfig(workers=1, incremental_forward=True)
        >>> cfg.replace(mode=ProcessingMode.INFERENCE).mode
        <ProcessingMode.INFERENCE: 'inference'>
    """

    workers: int = field(default_factory=_default_workers)
    incremental_forward: bool = False
    mode: ProcessingMode = ProcessingMode.TRAINING

    def __post_init__(self) -> None:
        if not isinstance(self.workers, int) or self.workers < 1:
            raise ValueError(f"workers must be a positive integer, got {self.workers!r}")
        if not isinstance(self.mode, ProcessingMode):
            raise ValueError(f"mode must be a ProcessingMode, got {self.mode!r}")

    @property
    def training(self) -> bool:
        return self.mode is ProcessingMode.TRAINING

    @property
    def concurrent(self) -> bool:
        return self.workers > 1

    def replace(self, **changes) -> GraphConfig:
        """Return a copy with the given fields replaced."""
        return dataclasses.replace(self, **changes)
