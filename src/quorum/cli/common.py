# Copyright (c) Syntropy Systems
"""Helpers shared by quorum CLI commands."""
from __future__ import annotations

import signal
from contextlib import contextmanager
from typing import TYPE_CHECKING, NoReturn, Optional

import typer
from rich.console import Console

from quorum.db import get_experiment_by_slug, get_latest_experiment

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Iterator
    from threading import Event

    from quorum.models.db import ExperimentRecord

console = Console()


def fail(message: str) -> NoReturn:
    """Print an error and exit with status 1."""
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(1)


def resolve_experiment(conn: sqlite3.Connection, slug: Optional[str]) -> ExperimentRecord:
    """Look up an experiment by slug, or take the latest active one."""
    if slug:
        experiment = get_experiment_by_slug(conn, slug)
        if experiment is None:
            fail(f"Experiment '{slug}' not found")
        return experiment

    experiment = get_latest_experiment(conn)
    if experiment is None:
        fail("No active experiment. Create one with 'quorum new'.")
    return experiment


@contextmanager
def stop_on_signals(shutdown: Event, message: str) -> Iterator[None]:
    """Set shutdown on SIGINT/SIGTERM for the duration of the block."""

    def _signal_handler(signum, frame):
        """Handle SIGINT/SIGTERM by asking the loop to stop."""
        console.print(f"\n[yellow]{message}[/yellow]")
        shutdown.set()

    previous = {sig: signal.signal(sig, _signal_handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            _ = signal.signal(sig, handler)
