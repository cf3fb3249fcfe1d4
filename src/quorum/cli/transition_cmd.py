# Copyright (c) Syntropy Systems
"""quorum transition command."""
from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console

from quorum.cli.common import resolve_experiment
from quorum.config import get_db_path, require_quorum_dir
from quorum.db import get_connection, update_experiment_status
from quorum.errors import QuorumError
from quorum.machine import ADMIN_TRANSITIONS, ExperimentStatus, admin_transition, transition

console = Console()


def transition_cmd(
    slug: str = typer.Argument(..., help="Experiment slug"),
    target: str = typer.Argument(..., help="Target status"),
    admin: Optional[str] = typer.Option(
        None,
        "--admin",
        help=f"Administrative reason ({', '.join(ADMIN_TRANSITIONS)})",
    ),
) -> None:
    """Move an experiment to a new status.

    Without --admin only legal lifecycle transitions are accepted.
    """
    try:
        target_status = ExperimentStatus(target)
    except ValueError as e:
        console.print(f"[red]Error:[/red] Unknown status '{target}'")
        raise typer.Exit(1) from e

    try:
        quorum_dir = require_quorum_dir()
    except QuorumError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(quorum_dir))
    try:
        experiment = resolve_experiment(conn, slug)
        try:
            if admin:
                new_status = admin_transition(experiment.status, target_status, admin)
            else:
                new_status = transition(experiment.status, target_status)
            update_experiment_status(conn, experiment.id, new_status)
        except QuorumError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from e
    finally:
        conn.close()

    suffix = f" [dim](admin: {admin})[/dim]" if admin else ""
    console.print(f"[green]{experiment.slug}:[/green] {experiment.status} -> {new_status}{suffix}")
