# Copyright (c) Syntropy Systems
"""Pydantic models for database records."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import field_validator

from quorum.machine import ExperimentStatus

from .base import QuorumBaseModel

Grade = Literal["sound", "good", "weak", "rejected"]
Phase = Literal["before", "after"]
DeadEndCategory = Literal["structural", "procedural"]


class ExperimentRecord(QuorumBaseModel):
    """Database experiment record."""

    id: int
    slug: str
    branch: str
    status: ExperimentStatus
    sub_type: Optional[str] = None
    hypothesis: Optional[str] = None
    grade: Optional[Grade] = None
    builder_guidance: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class DecisionRecord(QuorumBaseModel):
    """Database decision record."""

    id: int
    experiment_id: int
    description: str
    evidence_level: str
    justification: str
    status: str = "active"
    created_at: Optional[str] = None


class MetricSnapshot(QuorumBaseModel):
    """One captured metric value for an experiment phase and fixture."""

    id: int
    experiment_id: int
    phase: Phase
    fixture: str
    metric_name: str
    metric_value: float
    captured_at: Optional[str] = None


class DeadEndRecord(QuorumBaseModel):
    """Database dead-end record."""

    id: int
    experiment_id: Optional[int] = None
    approach: str
    why_failed: str
    structural_constraint: str
    sub_type: Optional[str] = None
    category: DeadEndCategory = "structural"
    created_at: Optional[str] = None


class VerificationRecord(QuorumBaseModel):
    """Database verification (component grade) record."""

    id: int
    experiment_id: int
    component: str
    grade: Grade
    provenance_intact: Optional[bool] = None
    content_correct: Optional[bool] = None
    notes: Optional[str] = None
    created_at: Optional[str] = None


class DoubtRecord(QuorumBaseModel):
    """Database doubt record."""

    id: int
    experiment_id: int
    claim_doubted: str
    evidence_level_of_claim: str
    evidence_for_doubt: str
    severity: str
    resolution: Optional[str] = None
    created_at: Optional[str] = None


class ChallengeRecord(QuorumBaseModel):
    """Database challenge record."""

    id: int
    experiment_id: int
    description: str
    reasoning: str
    created_at: Optional[str] = None


class SessionRecord(QuorumBaseModel):
    """Database session record."""

    id: int
    intent: str
    experiment_id: Optional[int] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    accomplished: Optional[str] = None
    unfinished: Optional[str] = None
    new_fragility: Optional[str] = None

    @property
    def is_open(self) -> bool:
        """Whether the session has not been ended yet."""
        return self.ended_at is None


class CircuitBreakerState(QuorumBaseModel):
    """Dead-end count for a sub_type, derived on demand."""

    sub_type: str
    failure_count: int
    tripped: bool


class SwarmRunRecord(QuorumBaseModel):
    """Database swarm run record."""

    id: int
    goal: str
    parallel_count: int
    status: str
    total_cost_usd: float = 0.0
    best_experiment_slug: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


class SwarmMemberRecord(QuorumBaseModel):
    """Database swarm member record."""

    id: int
    swarm_run_id: int
    experiment_slug: str
    worktree_path: str
    final_status: Optional[str] = None
    overall_grade: Optional[str] = None
    cost_usd: float = 0.0
    error: Optional[str] = None

    @field_validator("cost_usd", mode="before")
    @classmethod
    def _default_cost(cls, value: object) -> object:
        if value is None:
            return 0.0
        return value
