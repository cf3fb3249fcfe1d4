# Copyright (c) Syntropy Systems
"""quorum swarm command."""
from __future__ import annotations

import contextlib
import sqlite3
from threading import Event
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console
from rich.table import Table

from quorum.cli.common import stop_on_signals
from quorum.config import get_db_path, get_project_root, load_config, require_quorum_dir
from quorum.db import (
    add_swarm_member,
    create_swarm_run,
    get_connection,
    get_experiment_by_slug,
    transaction,
    update_swarm_member,
    update_swarm_run,
)
from quorum.errors import GitError, QuorumError
from quorum.interpreter import interpreter_from_config
from quorum.machine import ExperimentStatus, admin_transition_and_persist, is_terminal
from quorum.report import ConsoleReporter
from quorum.stages import CommandStageExecutor, CommandSynthesiser
from quorum.swarm.aggregate import aggregate_swarm_results, is_mergeable
from quorum.swarm.plan import plan_hypotheses
from quorum.swarm.runner import run_swarm
from quorum.swarm.types import SwarmContext
from quorum.swarm.worktree import (
    cleanup_orphaned_worktrees,
    cleanup_worktree,
    create_worktree,
    initialize_worktree,
    is_clean,
    merge_branch,
    slugify,
)

if TYPE_CHECKING:
    from quorum.swarm.types import SwarmSummary, WorktreeInfo

console = Console()

MIN_PARALLEL = 2


def unique_slug(conn: sqlite3.Connection, base: str, taken: set[str]) -> str:
    """Suffix a slug until it clashes with neither the store nor this run."""
    slug = base
    n = 2
    while slug in taken or get_experiment_by_slug(conn, slug) is not None:
        slug = f"{base}-{n}"
        n += 1
    taken.add(slug)
    return slug


def _retire_losers(
    conn: sqlite3.Connection,
    summary: SwarmSummary,
    reporter: ConsoleReporter,
) -> None:
    """Abandon every imported, non-terminal experiment other than the best."""
    best_slug = summary.best.worktree.slug if summary.best else None
    for r in summary.results:
        if r.worktree.slug == best_slug or r.experiment is None:
            continue
        experiment = get_experiment_by_slug(conn, r.worktree.slug)
        if experiment is None or is_terminal(experiment.status):
            continue
        try:
            _ = admin_transition_and_persist(
                conn, experiment.id, experiment.status, ExperimentStatus.DEAD_END, "error_recovery"
            )
        except QuorumError as e:
            reporter.warn(f"Could not retire {experiment.slug}: {e}")


def _print_summary(summary: SwarmSummary) -> None:
    table = Table(title=f"Swarm: {summary.goal}")
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Slug")
    table.add_column("Status")
    table.add_column("Grade")
    table.add_column("Steps", justify="right")
    table.add_column("Error", style="red", max_width=40)

    best_slug = summary.best.worktree.slug if summary.best else None
    for r in summary.results:
        marker = " [bold green]*[/bold green]" if r.worktree.slug == best_slug else ""
        table.add_row(
            r.worktree.padded_num,
            f"{r.worktree.slug}{marker}",
            r.final_status,
            r.overall_grade or "-",
            str(r.step_count),
            r.error or "",
        )
    console.print(table)
    console.print(
        f"merged: {summary.merged_count}  dead ends: {summary.dead_end_count}  "
        f"errors: {summary.error_count}"
    )


def swarm(
    goal: str = typer.Argument(..., help="What the swarm should achieve"),
    parallel: Optional[int] = typer.Option(
        None, "--parallel", "-p", help="Number of concurrent experiments (default: swarm.parallel)"
    ),
    hypotheses: Optional[list[str]] = typer.Option(
        None, "--hypothesis", "-H", help="Explicit hypothesis (repeatable); skips planning"
    ),
    max_steps: Optional[int] = typer.Option(
        None, "--max-steps", help="Step budget per experiment (default: swarm.max_steps)"
    ),
    no_merge: bool = typer.Option(False, "--no-merge", help="Do not merge the best branch"),
) -> None:
    """Run several experiments concurrently in isolated git worktrees.

    Each instance runs the full lifecycle against its own store. Results are
    imported into the main store and the best mergeable branch is merged.
    """
    try:
        quorum_dir = require_quorum_dir()
        config = load_config(quorum_dir)
    except QuorumError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    root = get_project_root(quorum_dir)
    count = parallel if parallel is not None else config.swarm.parallel
    count = max(MIN_PARALLEL, min(count, config.swarm.max_parallel))

    try:
        if not is_clean(root):
            console.print("[red]Error:[/red] Working tree has uncommitted changes")
            raise typer.Exit(1)
    except GitError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    reporter = ConsoleReporter(console)
    interpreter = interpreter_from_config(
        config.extraction.interpreter_url,
        config.extraction.interpreter_model,
        config.extraction.timeout,
    )
    executor = CommandStageExecutor(config, reporter, interpreter)

    conn = get_connection(get_db_path(quorum_dir))
    worktrees: list[WorktreeInfo] = []
    run_id: Optional[int] = None
    try:
        run_id = create_swarm_run(conn, goal, count)

        if hypotheses:
            planned = list(hypotheses)[:count]
        elif config.agents.get("planner"):
            console.print(f"[dim]Planning {count} hypotheses...[/dim]")
            try:
                planned = plan_hypotheses(goal, count, root, conn, executor)
            except QuorumError as e:
                reporter.warn(f"Planning failed, using the goal: {e}")
                planned = [goal]
        else:
            planned = [goal]

        if not planned:
            console.print("[green]Planner reports the goal is already met.[/green]")
            update_swarm_run(conn, run_id, "completed", 0.0, None)
            return

        removed = cleanup_orphaned_worktrees(root)
        if removed:
            reporter.warn(f"Removed {len(removed)} orphaned swarm worktree(s)")

        taken: set[str] = set()
        for i, hypothesis in enumerate(planned, start=1):
            slug = unique_slug(conn, slugify(hypothesis), taken)
            wt = create_worktree(root, slug, f"{i:03d}", hypothesis)
            worktrees.append(wt)
            initialize_worktree(root, wt.path)
            add_swarm_member(conn, run_id, slug, str(wt.path))

        shutdown = Event()
        ctx = SwarmContext(
            executor=executor,
            reporter=reporter,
            config=config,
            shutdown=shutdown,
            max_steps=max_steps or config.swarm.max_steps,
            synthesiser=CommandSynthesiser(executor) if config.agents.get("synthesiser") else None,
        )
        with stop_on_signals(shutdown, "Shutdown requested, finishing current steps..."):
            results = run_swarm(worktrees, ctx)

        for r in results:
            update_swarm_member(
                conn, run_id, r.worktree.slug, r.final_status, r.overall_grade, r.cost_usd, r.error
            )

        summary = aggregate_swarm_results(conn, results, goal, reporter)

        best = summary.best
        if best is not None and is_mergeable(best.overall_grade) and not no_merge:
            try:
                merge_branch(root, best.worktree.branch, f"quorum swarm: {best.worktree.hypothesis}")
                reporter.success(f"Merged {best.worktree.branch}")
            except GitError as e:
                reporter.error(f"Merge failed: {e}")

        with transaction(conn):
            _retire_losers(conn, summary, reporter)

        update_swarm_run(
            conn,
            run_id,
            "interrupted" if shutdown.is_set() else "completed",
            summary.total_cost_usd,
            best.worktree.slug if best else None,
        )
    except (QuorumError, OSError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/red] {e}")
        if run_id is not None:
            with contextlib.suppress(sqlite3.Error):
                update_swarm_run(conn, run_id, "failed", 0.0, None)
        raise typer.Exit(1) from e
    finally:
        for wt in worktrees:
            cleanup_worktree(root, wt, reporter)
        conn.close()
        if interpreter is not None:
            interpreter.close()

    _print_summary(summary)
