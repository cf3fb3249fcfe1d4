# Copyright (c) Syntropy Systems
"""Step one experiment through the lifecycle against a single store.

Both ``quorum next`` and every swarm instance drive experiments with this
loop. The next step always comes from the policy in ``quorum.machine``; this
module only decides who performs it.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from quorum.db import (
    get_experiment_by_slug,
    has_challenges,
    has_doubts,
    insert_dead_end,
    update_experiment_status,
)
from quorum.errors import ExperimentNotFoundError, QuorumError, StageExecutionError
from quorum.machine import ExperimentStatus, determine_next_step, is_terminal, valid_next
from quorum.resolve import resolve_db_only

if TYPE_CHECKING:
    from pathlib import Path

    from quorum.config import QuorumConfig
    from quorum.models.db import ExperimentRecord, Grade
    from quorum.report import Reporter
    from quorum.resolve import Synthesiser
    from quorum.stages import StageExecutor

logger = logging.getLogger(__name__)

MAX_STEPS = 20

S = ExperimentStatus

# Step -> stage that performs it. A stage at verifying re-runs the verifier.
STATUS_STAGES = {
    S.GATED: "gate",
    S.BUILDING: "build",
    S.CHALLENGED: "challenge",
    S.DOUBTED: "doubt",
    S.SCOUTED: "scout",
    S.VERIFYING: "verify",
    S.VERIFIED: "verify",
}


@dataclass
class LifecycleContext:
    """Everything the loop needs, passed explicitly."""

    executor: StageExecutor
    reporter: Reporter
    config: QuorumConfig
    shutdown: threading.Event = field(default_factory=threading.Event)
    max_steps: int = MAX_STEPS
    synthesiser: Optional[Synthesiser] = None


@dataclass
class LifecycleOutcome:
    """Where the loop left an experiment."""

    experiment: ExperimentRecord
    steps: int
    grade: Optional[Grade] = None


def record_stage_failure(
    conn: sqlite3.Connection,
    experiment: ExperimentRecord,
    message: str,
) -> None:
    """Record a procedural dead end and force the experiment to dead_end."""
    try:
        _ = insert_dead_end(
            conn,
            experiment.id,
            message,
            message,
            message,
            experiment.sub_type,
            "procedural",
        )
        update_experiment_status(conn, experiment.id, ExperimentStatus.DEAD_END)
    except (sqlite3.Error, QuorumError):
        logger.exception("Could not record stage failure for %s", experiment.slug)


def choose_step(conn: sqlite3.Connection, experiment: ExperimentRecord) -> ExperimentStatus:
    return determine_next_step(
        experiment,
        valid_next(experiment.status),
        has_doubts(conn, experiment.id),
        has_challenges(conn, experiment.id),
    )


def _run_stage(
    ctx: LifecycleContext,
    stage: str,
    conn: sqlite3.Connection,
    experiment: ExperimentRecord,
    root: Path,
) -> None:
    try:
        ctx.executor.run_stage(stage, conn, experiment, root)
    except StageExecutionError:
        raise
    except Exception as e:
        raise StageExecutionError(str(e) or type(e).__name__) from e


def take_step(
    conn: sqlite3.Connection,
    experiment: ExperimentRecord,
    step: ExperimentStatus,
    root: Path,
    ctx: LifecycleContext,
    label: str,
) -> Optional[Grade]:
    """Perform one step.

    Returns:
        The effective grade when the step was resolution, else None.

    Raises:
        StageExecutionError: the stage executor failed, whatever it raised.

    """
    if step is S.RESOLVED:
        return resolve_db_only(conn, experiment, ctx.config, root, ctx.synthesiser, ctx.reporter)

    if step is S.COMPRESSED:
        _run_stage(ctx, "compress", conn, experiment, root)
        update_experiment_status(conn, experiment.id, S.COMPRESSED)
        return None

    if step is S.MERGED:
        update_experiment_status(conn, experiment.id, S.MERGED)
        ctx.reporter.success("Merged.", label)
        return None

    if step is S.REFRAMED:
        update_experiment_status(conn, experiment.id, S.REFRAMED)
        return None

    stage = STATUS_STAGES.get(step)
    if stage is None:
        msg = f"No stage performs step '{step}'"
        raise QuorumError(msg)
    _run_stage(ctx, stage, conn, experiment, root)
    return None


def run_lifecycle(
    conn: sqlite3.Connection,
    slug: str,
    root: Path,
    ctx: LifecycleContext,
    label: str,
    contain_failures: bool = True,
) -> LifecycleOutcome:
    """Step an experiment until it is terminal, shutdown is set, or the budget runs out.

    Shutdown is checked before each step is counted and the status is re-read
    from the store every step.

    Args:
        conn: Store holding the experiment
        slug: Experiment to drive
        root: Working tree the stages run in
        ctx: Executor, reporter, config, shutdown event and step budget
        label: Prefix for reporter messages
        contain_failures: When set, a stage failure records a procedural dead
            end and forces dead_end. Otherwise the StageExecutionError
            propagates and the status is left where the stage left it.

    Raises:
        ExperimentNotFoundError: no experiment has this slug.

    """
    experiment = get_experiment_by_slug(conn, slug)
    if experiment is None:
        msg = f"Experiment '{slug}' not found"
        raise ExperimentNotFoundError(msg)

    grade: Optional[Grade] = None
    steps = 0

    while steps < ctx.max_steps:
        if ctx.shutdown.is_set():
            ctx.reporter.warn("Shutdown requested. Stopping.", label)
            break

        steps += 1

        fresh = get_experiment_by_slug(conn, slug)
        if fresh is None:
            break
        experiment = fresh

        if is_terminal(experiment.status):
            ctx.reporter.success(f"Reached terminal: {experiment.status}", label)
            break

        step = choose_step(conn, experiment)
        ctx.reporter.info(f"[{steps}/{ctx.max_steps}] {experiment.status} -> {step}", label)

        try:
            step_grade = take_step(conn, experiment, step, root, ctx, label)
        except StageExecutionError as e:
            if not contain_failures:
                raise
            message = str(e)
            ctx.reporter.warn(f"Step failed: {message}", label)
            record_stage_failure(conn, experiment, message)
            break

        if step_grade is not None:
            grade = step_grade
        if step is S.MERGED:
            break
    else:
        ctx.reporter.warn(f"Hit max steps ({ctx.max_steps}).", label)

    final = get_experiment_by_slug(conn, slug)
    return LifecycleOutcome(
        experiment=final if final is not None else experiment,
        steps=steps,
        grade=grade,
    )
