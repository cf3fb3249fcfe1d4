# Copyright (c) Syntropy Systems
"""Fold swarm instance stores back into the main project store."""
from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING, Optional

from quorum.db import get_connection, transaction
from quorum.errors import ExperimentNotFoundError, QuorumError
from quorum.swarm.types import SwarmSummary

if TYPE_CHECKING:
    from collections.abc import Sequence

    from quorum.models.db import Grade
    from quorum.report import Reporter
    from quorum.swarm.types import SwarmExperimentResult

logger = logging.getLogger(__name__)

# Tables whose rows hang off experiments.id
CHILD_TABLES = (
    "decisions",
    "doubts",
    "challenges",
    "verifications",
    "metrics",
    "dead_ends",
)

EXPERIMENT_COLUMNS = (
    "slug",
    "branch",
    "status",
    "sub_type",
    "hypothesis",
    "grade",
    "builder_guidance",
    "depends_on",
    "created_at",
    "updated_at",
)

GRADE_RANK: dict[str, int] = {"sound": 0, "good": 1, "weak": 2, "rejected": 3}


def _import_child_table(
    source: sqlite3.Connection,
    target: sqlite3.Connection,
    table: str,
    source_id: int,
    target_id: int,
) -> int:
    rows = source.execute(
        f"SELECT * FROM {table} WHERE experiment_id = ? ORDER BY id",  # noqa: S608
        (source_id,),
    ).fetchall()
    if not rows:
        return 0

    columns = [c for c in rows[0].keys() if c != "id"]
    placeholders = ", ".join("?" for _ in columns)
    insert = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"  # noqa: S608
    for row in rows:
        values = [target_id if c == "experiment_id" else row[c] for c in columns]
        _ = target.execute(insert, values)
    return len(rows)


def import_experiment_from_worktree(
    source: sqlite3.Connection,
    target: sqlite3.Connection,
    slug: str,
) -> int:
    """Copy one experiment and its child rows into the target store.

    Row ids are reassigned by the target; child rows are re-pointed at the
    new experiment id. The caller owns the transaction.

    Returns:
        The experiment's id in the target store.

    """
    row = source.execute("SELECT * FROM experiments WHERE slug = ?", (slug,)).fetchone()
    if row is None:
        msg = f"Experiment {slug} not found in source store"
        raise ExperimentNotFoundError(msg)

    placeholders = ", ".join("?" for _ in EXPERIMENT_COLUMNS)
    cursor = target.execute(
        f"INSERT INTO experiments ({', '.join(EXPERIMENT_COLUMNS)}) VALUES ({placeholders})",  # noqa: S608
        [row[c] for c in EXPERIMENT_COLUMNS],
    )
    target_id = cursor.lastrowid

    for table in CHILD_TABLES:
        _ = _import_child_table(source, target, table, row["id"], target_id)
    return target_id


def rank_results(results: Sequence[SwarmExperimentResult]) -> list[SwarmExperimentResult]:
    """Graded, error-free results ordered best first (stable)."""
    graded = [r for r in results if r.overall_grade is not None and r.error is None]
    return sorted(graded, key=lambda r: GRADE_RANK.get(r.overall_grade or "", 99))


def is_mergeable(grade: Optional[Grade]) -> bool:
    return grade in ("sound", "good")


def aggregate_swarm_results(
    main_conn: sqlite3.Connection,
    results: Sequence[SwarmExperimentResult],
    goal: str = "",
    reporter: Optional[Reporter] = None,
) -> SwarmSummary:
    """Import every instance's experiment into the main store and pick the best."""
    merged = dead_ends = errors = 0
    total_cost = 0.0

    for r in results:
        total_cost += r.cost_usd
        if r.error is not None or r.experiment is None:
            errors += 1
            continue

        try:
            source = get_connection(r.worktree.db_path)
            try:
                with transaction(main_conn):
                    _ = import_experiment_from_worktree(source, main_conn, r.worktree.slug)
            finally:
                source.close()
        except (sqlite3.Error, QuorumError) as e:
            logger.warning("Failed to import %s: %s", r.worktree.slug, e)
            if reporter is not None:
                reporter.warn(f"Failed to import {r.worktree.slug}: {e}")
            errors += 1
            continue

        if r.final_status == "merged":
            merged += 1
        elif r.final_status == "dead_end":
            dead_ends += 1

    ranked = rank_results(results)
    return SwarmSummary(
        goal=goal,
        parallel_count=len(results),
        results=list(results),
        best=ranked[0] if ranked else None,
        total_cost_usd=total_cost,
        merged_count=merged,
        dead_end_count=dead_ends,
        error_count=errors,
    )
