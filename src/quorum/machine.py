# Copyright (c) Syntropy Systems
"""Experiment lifecycle state machine and next-step policy."""
from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Callable, Literal

from quorum.errors import (
    InvalidAdminTransitionError,
    InvalidTransitionError,
    TerminalStatusError,
)

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Mapping

    from quorum.models.db import ExperimentRecord


class ExperimentStatus(str, Enum):
    """Every status an experiment can be in."""

    CLASSIFIED = "classified"
    REFRAMED = "reframed"
    GATED = "gated"
    BUILDING = "building"
    BUILT = "built"
    CHALLENGED = "challenged"
    DOUBTED = "doubted"
    SCOUTED = "scouted"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    RESOLVED = "resolved"
    COMPRESSED = "compressed"
    MERGED = "merged"
    DEAD_END = "dead_end"

    def __str__(self) -> str:
        return self.value


S = ExperimentStatus

# Successor order matters: determine_next_step falls back to the first entry.
TRANSITIONS: Mapping[ExperimentStatus, tuple[ExperimentStatus, ...]] = MappingProxyType({
    S.CLASSIFIED: (S.REFRAMED, S.GATED),
    S.REFRAMED: (S.GATED,),
    S.GATED: (S.BUILDING, S.GATED),  # self-loop when the gate rejects
    S.BUILDING: (S.BUILT, S.BUILDING),  # self-loop for rebuilds
    S.BUILT: (S.CHALLENGED, S.DOUBTED),
    S.CHALLENGED: (S.DOUBTED, S.VERIFYING),
    S.DOUBTED: (S.CHALLENGED, S.SCOUTED, S.VERIFYING),
    S.SCOUTED: (S.VERIFYING,),
    S.VERIFYING: (S.VERIFIED,),
    S.VERIFIED: (S.RESOLVED,),
    S.RESOLVED: (S.COMPRESSED, S.BUILDING, S.MERGED, S.DEAD_END),
    S.COMPRESSED: (S.MERGED, S.BUILDING),
    S.MERGED: (),
    S.DEAD_END: (),
})

AdminReason = Literal["revert", "circuit_breaker", "error_recovery", "bootstrap"]


def _abandon(current: ExperimentStatus, target: ExperimentStatus) -> bool:
    return target is S.DEAD_END and not is_terminal(current)


# Admin transitions bypass TRANSITIONS for recovery and bootstrap.
ADMIN_TRANSITIONS: Mapping[str, Callable[[ExperimentStatus, ExperimentStatus], bool]] = (
    MappingProxyType({
        "revert": _abandon,
        "circuit_breaker": _abandon,
        "error_recovery": _abandon,
        "bootstrap": lambda current, target: (
            current is S.CLASSIFIED and target is S.REFRAMED
        ),
    })
)


def valid_next(current: ExperimentStatus | str) -> tuple[ExperimentStatus, ...]:
    """Return the legal successors of a status, in declared order."""
    return TRANSITIONS[ExperimentStatus(current)]


def is_terminal(status: ExperimentStatus | str) -> bool:
    """Check if a status has no outgoing transitions."""
    return len(TRANSITIONS[ExperimentStatus(status)]) == 0


def transition(
    current: ExperimentStatus | str,
    target: ExperimentStatus | str,
) -> ExperimentStatus:
    """Validate a status change and return the target.

    Raises:
        InvalidTransitionError: target is not a legal successor of current.

    """
    current = ExperimentStatus(current)
    target = ExperimentStatus(target)
    valid = TRANSITIONS[current]
    if target not in valid:
        raise InvalidTransitionError(
            current.value, target.value, tuple(s.value for s in valid)
        )
    return target


def admin_transition(
    current: ExperimentStatus | str,
    target: ExperimentStatus | str,
    reason: str,
) -> ExperimentStatus:
    """Validate an administrative status change and return the target.

    Raises:
        InvalidAdminTransitionError: the reason is unknown or does not
            authorize the pair.

    """
    current = ExperimentStatus(current)
    target = ExperimentStatus(target)
    allowed = ADMIN_TRANSITIONS.get(reason)
    if allowed is None or not allowed(current, target):
        raise InvalidAdminTransitionError(current.value, target.value, reason)
    return target


def admin_transition_and_persist(
    conn: sqlite3.Connection,
    experiment_id: int,
    current: ExperimentStatus | str,
    target: ExperimentStatus | str,
    reason: str,
) -> ExperimentStatus:
    """Validate an admin transition and write the new status."""
    from quorum.db import update_experiment_status

    new_status = admin_transition(current, target, reason)
    update_experiment_status(conn, experiment_id, new_status)
    return new_status


def _prefer(
    valid: tuple[ExperimentStatus, ...] | list[ExperimentStatus],
    wanted: ExperimentStatus,
) -> ExperimentStatus:
    return wanted if wanted in valid else ExperimentStatus(valid[0])


def determine_next_step(
    experiment: ExperimentRecord,
    valid: tuple[ExperimentStatus, ...] | list[ExperimentStatus],
    has_doubts: bool,
    has_challenges: bool,
) -> ExperimentStatus:
    """Pick which legal successor to take next.

    Gating comes before building and doubting before verification; when a
    gate has already been satisfied the policy moves past it. Ties fall back
    to the first legal successor in table order.

    Raises:
        TerminalStatusError: there are no legal successors.

    """
    if not valid:
        raise TerminalStatusError(experiment.slug, str(experiment.status))

    status = ExperimentStatus(experiment.status)

    if status in (S.CLASSIFIED, S.REFRAMED):
        return _prefer(valid, S.GATED)

    if status is S.GATED:
        return _prefer(valid, S.BUILDING)

    if status is S.BUILT and not has_doubts:
        return _prefer(valid, S.DOUBTED)

    if status is S.DOUBTED and not has_challenges:
        return _prefer(valid, S.CHALLENGED)

    if status in (S.DOUBTED, S.CHALLENGED) and S.VERIFYING in valid:
        return S.VERIFYING

    # The build stage itself advances to built on success.
    if status is S.BUILDING:
        return _prefer(valid, S.BUILDING)

    if status is S.SCOUTED:
        return _prefer(valid, S.VERIFYING)

    if status is S.VERIFIED:
        return _prefer(valid, S.RESOLVED)

    if status is S.RESOLVED:
        return _prefer(valid, S.COMPRESSED)

    if status is S.COMPRESSED:
        return _prefer(valid, S.MERGED)

    return ExperimentStatus(valid[0])
