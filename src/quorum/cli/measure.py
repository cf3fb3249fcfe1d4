# Copyright (c) Syntropy Systems
"""quorum baseline, measure and gate commands."""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console
from rich.table import Table

from quorum.cli.common import resolve_experiment
from quorum.config import get_db_path, get_project_root, load_config, require_quorum_dir
from quorum.db import get_connection
from quorum.errors import QuorumError
from quorum.metrics import capture_metrics, check_gate_violations, compare_metrics

if TYPE_CHECKING:
    from quorum.metrics import MetricComparison

console = Console()


def _capture(slug: Optional[str], phase: str) -> None:
    try:
        quorum_dir = require_quorum_dir()
        config = load_config(quorum_dir)
    except QuorumError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(quorum_dir))
    try:
        experiment = resolve_experiment(conn, slug)
        try:
            parsed = capture_metrics(conn, experiment, phase, config, get_project_root(quorum_dir))
        except QuorumError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from e
    finally:
        conn.close()

    console.print(
        f"[green]Captured {len(parsed)} metric(s)[/green] "
        f"for [bold]{experiment.slug}[/bold] ({phase})"
    )


def baseline(
    slug: Optional[str] = typer.Argument(None, help="Experiment slug (default: latest active)"),
) -> None:
    """Capture 'before' metrics for an experiment."""
    _capture(slug, "before")


def measure(
    slug: Optional[str] = typer.Argument(None, help="Experiment slug (default: latest active)"),
) -> None:
    """Capture 'after' metrics for an experiment."""
    _capture(slug, "after")


def format_delta(c: MetricComparison) -> str:
    text = f"{c.delta:+.4g}"
    if c.regression:
        return f"[red]{text}[/red]"
    return f"[green]{text}[/green]" if c.delta != 0 else text


def gate(
    slug: Optional[str] = typer.Argument(None, help="Experiment slug (default: latest active)"),
) -> None:
    """Compare before/after metrics. Exits 1 if a gate fixture regressed."""
    try:
        quorum_dir = require_quorum_dir()
        config = load_config(quorum_dir)
    except QuorumError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(quorum_dir))
    try:
        experiment = resolve_experiment(conn, slug)
        comparisons = compare_metrics(conn, experiment.id, config)
    finally:
        conn.close()

    if not comparisons:
        console.print("[dim]No tracked metrics present in both phases[/dim]")
        return

    table = Table(title=f"Metrics: {experiment.slug}")
    table.add_column("Fixture")
    table.add_column("Metric")
    table.add_column("Before", justify="right")
    table.add_column("After", justify="right")
    table.add_column("Delta", justify="right")
    table.add_column("Gate")
    for c in comparisons:
        table.add_row(
            c.fixture,
            c.metric,
            f"{c.before:.4g}",
            f"{c.after:.4g}",
            format_delta(c),
            "[bold]gate[/bold]" if c.gate else "",
        )
    console.print(table)

    violations = check_gate_violations(comparisons)
    if violations:
        for v in violations:
            console.print(f"[red]Gate violation:[/red] {v.fixture}/{v.metric} {v.before:.4g} -> {v.after:.4g}")
        raise typer.Exit(1)
    console.print("[green]Gate passed[/green]")
