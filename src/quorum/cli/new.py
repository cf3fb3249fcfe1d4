# Copyright (c) Syntropy Systems
"""quorum new command."""
from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console

from quorum.config import get_db_path, get_project_root, load_config, require_quorum_dir
from quorum.db import create_experiment, get_connection, get_experiment_by_slug
from quorum.errors import QuorumError
from quorum.metrics import capture_metrics
from quorum.swarm.runner import seed_experiment_log
from quorum.swarm.worktree import slugify

console = Console()


def new(
    hypothesis: str = typer.Argument(..., help="What this experiment sets out to show"),
    slug: Optional[str] = typer.Option(None, "--slug", "-s", help="Experiment slug (default: from hypothesis)"),
    sub_type: Optional[str] = typer.Option(None, "--sub-type", "-t", help="Problem class, for circuit breakers"),
    depends_on: Optional[str] = typer.Option(None, "--depends-on", help="Slug of a prerequisite experiment"),
    branch: Optional[str] = typer.Option(None, "--branch", "-b", help="Git branch (default: exp/NNN-<slug>)"),
) -> None:
    """Create an experiment at 'classified'.

    Captures baseline metrics when cycle.auto_baseline_on_new_experiment is
    set and a metrics command is configured.
    """
    try:
        quorum_dir = require_quorum_dir()
        config = load_config(quorum_dir)
    except QuorumError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    slug = slug or slugify(hypothesis)
    root = get_project_root(quorum_dir)

    conn = get_connection(get_db_path(quorum_dir))
    try:
        if get_experiment_by_slug(conn, slug) is not None:
            console.print(f"[red]Error:[/red] Experiment '{slug}' already exists")
            raise typer.Exit(1)
        if depends_on and get_experiment_by_slug(conn, depends_on) is None:
            console.print(f"[red]Error:[/red] Dependency '{depends_on}' not found")
            raise typer.Exit(1)

        next_num = conn.execute("SELECT COALESCE(MAX(id), 0) + 1 AS n FROM experiments").fetchone()["n"]
        padded_num = f"{next_num:03d}"
        branch = branch or f"exp/{padded_num}-{slug}"

        experiment = create_experiment(conn, slug, branch, hypothesis, sub_type, depends_on)
        log_path = seed_experiment_log(root, padded_num, slug, hypothesis, branch, sub_type)

        console.print(f"[green]Created experiment[/green] [bold]{experiment.slug}[/bold]")
        console.print(f"  [dim]branch:[/dim] {experiment.branch}")
        if log_path is not None:
            console.print(f"  [dim]log:[/dim] {log_path}")

        if config.cycle.auto_baseline_on_new_experiment and config.metrics.command:
            try:
                parsed = capture_metrics(conn, experiment, "before", config, root)
            except QuorumError as e:
                console.print(f"[yellow]Baseline not captured:[/yellow] {e}")
            else:
                console.print(f"  [dim]baseline:[/dim] {len(parsed)} metric(s)")
    finally:
        conn.close()
