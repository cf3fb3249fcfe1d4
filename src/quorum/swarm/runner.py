# Copyright (c) Syntropy Systems
"""Drive experiment instances through the lifecycle inside worktrees."""
from __future__ import annotations

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from typing import TYPE_CHECKING, Optional

from quorum.db import create_experiment, open_db, update_experiment_status
from quorum.lifecycle import run_lifecycle
from quorum.machine import ExperimentStatus
from quorum.swarm.types import SwarmExperimentResult

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from quorum.models.db import ExperimentRecord
    from quorum.swarm.types import SwarmContext, WorktreeInfo

logger = logging.getLogger(__name__)


def seed_experiment_log(
    root: Path,
    padded_num: str,
    slug: str,
    hypothesis: str,
    branch: str,
    sub_type: Optional[str] = None,
) -> Optional[Path]:
    """Write an experiment log from docs/experiments/_TEMPLATE.md, if present."""
    experiments_dir = root / "docs" / "experiments"
    template_path = experiments_dir / "_TEMPLATE.md"
    if not template_path.exists():
        return None
    content = template_path.read_text()
    for key, value in (
        ("title", hypothesis),
        ("hypothesis", hypothesis),
        ("branch", branch),
        ("status", "classified"),
        ("sub_type", sub_type or "unclassified"),
        ("date", date.today().isoformat()),
    ):
        content = content.replace("{{" + key + "}}", value)
    log_path = experiments_dir / f"{padded_num}-{slug}.md"
    _ = log_path.write_text(content)
    return log_path


def run_experiment_in_worktree(wt: WorktreeInfo, ctx: SwarmContext) -> SwarmExperimentResult:
    """Run one experiment from reframed to a terminal status or the step budget.

    Stage failures become a procedural dead end for this instance only. Any
    other unexpected error ends the instance with an ``error`` result. The
    instance's storage connection is always closed.
    """
    label = wt.label
    conn: Optional[sqlite3.Connection] = None
    experiment: Optional[ExperimentRecord] = None

    try:
        wt.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = open_db(wt.db_path)

        experiment = create_experiment(conn, wt.slug, wt.branch, wt.hypothesis)
        update_experiment_status(conn, experiment.id, ExperimentStatus.REFRAMED)
        _ = seed_experiment_log(wt.path, wt.padded_num, wt.slug, wt.hypothesis, wt.branch)

        ctx.reporter.info(f"Starting: {wt.hypothesis}", label)
        outcome = run_lifecycle(conn, wt.slug, wt.path, ctx, label)

        return SwarmExperimentResult(
            worktree=wt,
            experiment=outcome.experiment,
            final_status=str(outcome.experiment.status),
            overall_grade=outcome.grade,
            step_count=outcome.steps,
        )

    except Exception as e:
        logger.exception("Swarm instance %s failed", label)
        ctx.reporter.error(f"Fatal error: {e}", label)
        return SwarmExperimentResult(
            worktree=wt,
            experiment=experiment,
            final_status="error",
            error=str(e) or type(e).__name__,
        )
    finally:
        if conn is not None:
            conn.close()


def run_swarm(
    worktrees: Sequence[WorktreeInfo],
    ctx: SwarmContext,
    max_workers: Optional[int] = None,
) -> list[SwarmExperimentResult]:
    """Run every worktree's instance concurrently.

    Results come back in worktree order. An instance that raises past its own
    containment is reported as an ``error`` result; siblings keep running.
    """
    if not worktrees:
        return []

    with ThreadPoolExecutor(
        max_workers=max_workers or len(worktrees),
        thread_name_prefix="quorum-swarm",
    ) as pool:
        futures = [pool.submit(run_experiment_in_worktree, wt, ctx) for wt in worktrees]

        results: list[SwarmExperimentResult] = []
        for wt, future in zip(worktrees, futures):
            try:
                results.append(future.result())
            except Exception as e:
                logger.exception("Swarm instance %s raised", wt.label)
                results.append(
                    SwarmExperimentResult(
                        worktree=wt,
                        experiment=None,
                        final_status="error",
                        error=str(e) or type(e).__name__,
                    )
                )
    return results
