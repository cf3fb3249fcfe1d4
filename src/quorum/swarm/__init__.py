# Copyright (c) Syntropy Systems
"""Concurrent experiment instances in isolated worktrees."""

from quorum.swarm.aggregate import aggregate_swarm_results, import_experiment_from_worktree
from quorum.swarm.runner import run_experiment_in_worktree, run_swarm
from quorum.swarm.types import (
    MAX_STEPS,
    SwarmContext,
    SwarmExperimentResult,
    SwarmSummary,
    WorktreeInfo,
)

__all__ = [
    "MAX_STEPS",
    "SwarmContext",
    "SwarmExperimentResult",
    "SwarmSummary",
    "WorktreeInfo",
    "aggregate_swarm_results",
    "import_experiment_from_worktree",
    "run_experiment_in_worktree",
    "run_swarm",
]
