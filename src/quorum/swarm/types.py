# Copyright (c) Syntropy Systems
"""Descriptors passed into and out of swarm instances."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from quorum.lifecycle import MAX_STEPS, LifecycleContext

if TYPE_CHECKING:
    from quorum.models.db import ExperimentRecord, Grade

__all__ = [
    "MAX_STEPS",
    "SwarmContext",
    "SwarmExperimentResult",
    "SwarmSummary",
    "WorktreeInfo",
]


@dataclass
class WorktreeInfo:
    """One isolated working copy assigned to a swarm instance."""

    path: Path
    padded_num: str
    branch: str
    slug: str
    hypothesis: str = ""

    @property
    def label(self) -> str:
        return f"swarm:{self.padded_num}"

    @property
    def db_path(self) -> Path:
        return self.path / ".quorum" / "quorum.db"


@dataclass
class SwarmExperimentResult:
    """Outcome of one swarm instance."""

    worktree: WorktreeInfo
    experiment: Optional[ExperimentRecord]
    final_status: str
    overall_grade: Optional[Grade] = None
    cost_usd: float = 0.0
    step_count: int = 0
    error: Optional[str] = None


@dataclass
class SwarmSummary:
    """Aggregated outcome of a whole swarm run."""

    goal: str
    parallel_count: int
    results: list[SwarmExperimentResult]
    best: Optional[SwarmExperimentResult]
    total_cost_usd: float
    merged_count: int
    dead_end_count: int
    error_count: int


@dataclass
class SwarmContext(LifecycleContext):
    """Lifecycle context shared by every instance of one swarm run.

    The shutdown event is the only state shared between instances.
    """
