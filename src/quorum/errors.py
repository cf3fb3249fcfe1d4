# Copyright (c) Syntropy Systems
"""Exception types raised by quorum."""
from __future__ import annotations


class QuorumError(Exception):
    """Base class for quorum errors."""


class InvalidTransitionError(QuorumError):
    """A status change outside the transition table was requested."""

    def __init__(self, current: str, target: str, valid: tuple[str, ...]) -> None:
        self.current = current
        self.target = target
        self.valid = valid
        super().__init__(
            f"Invalid transition: {current} -> {target}. Valid: [{', '.join(valid)}]"
        )


class InvalidAdminTransitionError(QuorumError):
    """An admin reason does not authorize the requested status change."""

    def __init__(self, current: str, target: str, reason: str) -> None:
        self.current = current
        self.target = target
        self.reason = reason
        super().__init__(
            f"Invalid admin transition: {current} -> {target} (reason: {reason})"
        )


class StageExecutionError(QuorumError):
    """A lifecycle stage executor failed."""


class ConfigError(QuorumError):
    """Configuration file is missing or malformed."""


class MetricsCommandError(QuorumError):
    """The configured metrics command failed or printed invalid output."""


class ExperimentNotFoundError(QuorumError):
    """No experiment matches the given slug or id."""


class SessionError(QuorumError):
    """Session start/end requested in the wrong state."""


class TerminalStatusError(QuorumError):
    """A next step was requested for an experiment with no legal successors."""

    def __init__(self, slug: str, status: str) -> None:
        self.slug = slug
        self.status = status
        super().__init__(f"Experiment {slug} is terminal ({status})")


class GitError(QuorumError):
    """A git worktree or merge command failed."""
