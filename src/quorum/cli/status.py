# Copyright (c) Syntropy Systems
"""quorum status and breakers commands."""

import typer
from rich.console import Console
from rich.table import Table

from quorum.config import get_db_path, load_config, require_quorum_dir
from quorum.db import (
    get_active_session,
    get_all_circuit_breaker_states,
    get_connection,
    get_sessions_since_compression,
    list_active_experiments,
    list_all_experiments,
)
from quorum.errors import QuorumError

console = Console()

STATUS_STYLES = {
    "classified": "dim",
    "reframed": "dim",
    "gated": "cyan",
    "building": "yellow",
    "built": "yellow",
    "challenged": "magenta",
    "doubted": "magenta",
    "scouted": "magenta",
    "verifying": "blue",
    "verified": "blue",
    "resolved": "green",
    "compressed": "green",
    "merged": "bold green",
    "dead_end": "red",
}


def status(
    show_all: bool = typer.Option(False, "--all", "-a", help="Include merged and dead-ended experiments"),
) -> None:
    """Show active experiments, the open session and compression debt."""
    try:
        quorum_dir = require_quorum_dir()
        config = load_config(quorum_dir)
    except QuorumError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(quorum_dir))
    try:
        experiments = list_all_experiments(conn) if show_all else list_active_experiments(conn)
        session = get_active_session(conn)
        since_compression = get_sessions_since_compression(conn)
    finally:
        conn.close()

    if not experiments:
        console.print("[dim]No active experiments[/dim]")
    else:
        table = Table(title="Experiments" if show_all else "Active Experiments")
        table.add_column("ID", style="cyan", justify="right")
        table.add_column("Slug")
        table.add_column("Status")
        table.add_column("Sub-type", style="dim")
        table.add_column("Grade")
        table.add_column("Hypothesis", max_width=50)

        for exp in experiments:
            style = STATUS_STYLES.get(str(exp.status), "white")
            table.add_row(
                str(exp.id),
                exp.slug,
                f"[{style}]{exp.status}[/{style}]",
                exp.sub_type or "-",
                exp.grade or "-",
                exp.hypothesis or "-",
            )

        console.print(table)

    if session is not None:
        console.print(f"\n[bold]Session:[/bold] {session.intent} [dim](since {session.started_at})[/dim]")
    else:
        console.print("\n[dim]No open session[/dim]")

    interval = config.cycle.compression_interval
    style = "yellow" if since_compression >= interval else "dim"
    console.print(f"[{style}]Sessions since compression: {since_compression}/{interval}[/{style}]")


def breakers() -> None:
    """Show circuit breaker state per sub-type."""
    try:
        quorum_dir = require_quorum_dir()
        config = load_config(quorum_dir)
    except QuorumError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    threshold = config.cycle.circuit_breaker_threshold
    conn = get_connection(get_db_path(quorum_dir))
    try:
        states = get_all_circuit_breaker_states(conn, threshold)
    finally:
        conn.close()

    if not states:
        console.print("[dim]No dead ends recorded[/dim]")
        return

    table = Table(title=f"Circuit Breakers (threshold {threshold})")
    table.add_column("Sub-type")
    table.add_column("Dead ends", justify="right")
    table.add_column("State")
    for state in states:
        table.add_row(
            state.sub_type,
            str(state.failure_count),
            "[red]TRIPPED[/red]" if state.tripped else "[green]ok[/green]",
        )
    console.print(table)
