# Copyright (c) Syntropy Systems
"""quorum session commands."""
from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console

from quorum.config import get_db_path, require_quorum_dir
from quorum.db import end_session, get_connection, get_experiment_by_slug, get_latest_experiment, start_session
from quorum.errors import QuorumError

console = Console()


def start(
    intent: str = typer.Argument(..., help="What this session is for"),
    experiment: Optional[str] = typer.Option(
        None, "--experiment", "-e", help="Experiment slug (default: latest active)"
    ),
) -> None:
    """Open a session. Only one session may be open at a time."""
    try:
        quorum_dir = require_quorum_dir()
    except QuorumError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(quorum_dir))
    try:
        if experiment:
            linked = get_experiment_by_slug(conn, experiment)
            if linked is None:
                console.print(f"[red]Error:[/red] Experiment '{experiment}' not found")
                raise typer.Exit(1)
        else:
            linked = get_latest_experiment(conn)

        try:
            session = start_session(conn, intent, linked.id if linked else None)
        except QuorumError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from e
    finally:
        conn.close()

    console.print(f"[green]Session {session.id} started:[/green] {session.intent}")
    if linked is not None:
        console.print(f"  [dim]experiment:[/dim] {linked.slug}")


def end(
    accomplished: Optional[str] = typer.Option(None, "--accomplished", "-a", help="What got done"),
    unfinished: Optional[str] = typer.Option(None, "--unfinished", "-u", help="What is left"),
    fragility: Optional[str] = typer.Option(None, "--fragility", "-f", help="Newly found fragility"),
) -> None:
    """Close the open session."""
    try:
        quorum_dir = require_quorum_dir()
    except QuorumError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(quorum_dir))
    try:
        session = end_session(conn, accomplished, unfinished, fragility)
    except QuorumError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        conn.close()

    console.print(f"[green]Session {session.id} ended.[/green]")


session_app = typer.Typer(
    help="Open and close working sessions.",
    no_args_is_help=True,
)

session_app.command(name="start")(start)
session_app.command(name="end")(end)
