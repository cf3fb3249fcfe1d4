# Copyright (c) Syntropy Systems
"""Pydantic models for structured worker output."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field

from .base import QuorumBaseModel

EvidenceLevel = Literal[
    "proof", "test", "strong_consensus", "consensus", "analogy", "judgment"
]
GateDecision = Literal["approve", "reject", "flag"]


class DecisionOutput(QuorumBaseModel):
    description: str
    evidence_level: str
    justification: str = ""


class GradeOutput(QuorumBaseModel):
    component: str
    grade: Literal["sound", "good", "weak", "rejected"]
    provenance_intact: Optional[bool] = None
    content_correct: Optional[bool] = None
    notes: Optional[str] = None


class DoubtOutput(QuorumBaseModel):
    claim_doubted: str
    evidence_level_of_claim: str = "unknown"
    evidence_for_doubt: str = ""
    severity: Literal["minor", "moderate", "critical"]


class ChallengeOutput(QuorumBaseModel):
    description: str
    reasoning: str = ""


class DoubtResolutionOutput(QuorumBaseModel):
    doubt_id: int
    resolution: Literal["confirmed", "dismissed", "inconclusive"]


class ReframeOutput(QuorumBaseModel):
    decomposition: str = ""
    divergences: list[str] = Field(default_factory=list)
    recommendation: str = ""


class FindingOutput(QuorumBaseModel):
    approach: str
    source: str = ""
    relevance: str = ""
    contradicts_current: bool = False


class CompressionReportOutput(QuorumBaseModel):
    synthesis_delta: str = ""
    new_dead_ends: list[str] = Field(default_factory=list)
    fragility_changes: list[str] = Field(default_factory=list)


class DiagnosisOutput(QuorumBaseModel):
    root_causes: list[str] = Field(default_factory=list)
    patterns: list[str] = Field(default_factory=list)
    evidence_gaps: list[str] = Field(default_factory=list)
    investigation_directions: list[str] = Field(default_factory=list)


class AbandonOutput(QuorumBaseModel):
    """Builder's declaration that the hypothesis cannot work."""

    reason: str
    structural_constraint: str


class StructuredOutput(QuorumBaseModel):
    """Everything a worker can report, all fields optional."""

    decisions: Optional[list[DecisionOutput]] = None
    grades: Optional[list[GradeOutput]] = None
    doubts: Optional[list[DoubtOutput]] = None
    challenges: Optional[list[ChallengeOutput]] = None
    guidance: Optional[str] = None
    doubt_resolutions: Optional[list[DoubtResolutionOutput]] = None
    gate_decision: Optional[GateDecision] = None
    reason: Optional[str] = None
    stale_references: Optional[list[str]] = None
    overlapping_dead_ends: Optional[list[int]] = None
    reframe: Optional[ReframeOutput] = None
    findings: Optional[list[FindingOutput]] = None
    compression_report: Optional[CompressionReportOutput] = None
    diagnosis: Optional[DiagnosisOutput] = None
    abandon: Optional[AbandonOutput] = None

    def has_data(self) -> bool:
        """Whether any field carries usable content."""
        return bool(
            self.decisions
            or self.grades
            or self.doubts
            or self.challenges
            or self.doubt_resolutions
            or self.findings
            or self.guidance
            or self.reframe
            or self.compression_report
            or self.gate_decision
            or self.diagnosis
            or self.abandon
        )
