# Copyright (c) Syntropy Systems
"""quorum next command."""
from __future__ import annotations

from threading import Event
from typing import Optional

import typer
from rich.console import Console

from quorum.cli.common import resolve_experiment, stop_on_signals
from quorum.config import get_db_path, get_project_root, load_config, require_quorum_dir
from quorum.db import get_circuit_breaker_state, get_connection, get_experiment_by_slug
from quorum.errors import QuorumError
from quorum.interpreter import interpreter_from_config
from quorum.lifecycle import LifecycleContext, choose_step, run_lifecycle, take_step
from quorum.machine import is_terminal
from quorum.report import ConsoleReporter
from quorum.stages import CommandStageExecutor, CommandSynthesiser

console = Console()


def next_cmd(
    slug: Optional[str] = typer.Argument(None, help="Experiment slug (default: latest active)"),
    auto: bool = typer.Option(False, "--auto", help="Keep stepping until terminal or out of steps"),
    max_steps: Optional[int] = typer.Option(
        None, "--max-steps", help="Step budget with --auto (default: swarm.max_steps)"
    ),
) -> None:
    """Run the next lifecycle step for an experiment.

    The step is picked by the lifecycle policy. With --auto the experiment is
    stepped until it is terminal, interrupted, or out of steps. A failing
    stage leaves the status where it was so the step can be retried.
    """
    try:
        quorum_dir = require_quorum_dir()
        config = load_config(quorum_dir)
    except QuorumError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    root = get_project_root(quorum_dir)
    reporter = ConsoleReporter(console)
    interpreter = interpreter_from_config(
        config.extraction.interpreter_url,
        config.extraction.interpreter_model,
        config.extraction.timeout,
    )
    executor = CommandStageExecutor(config, reporter, interpreter)

    conn = get_connection(get_db_path(quorum_dir))
    try:
        experiment = resolve_experiment(conn, slug)
        if is_terminal(experiment.status):
            console.print(f"Experiment {experiment.slug} is terminal ({experiment.status}).")
            return

        if experiment.sub_type:
            breaker = get_circuit_breaker_state(
                conn, experiment.sub_type, config.cycle.circuit_breaker_threshold
            )
            if breaker.tripped:
                console.print(
                    f"[red]Circuit breaker tripped[/red] for {breaker.sub_type} "
                    f"({breaker.failure_count} dead ends). Review them before continuing."
                )
                raise typer.Exit(1)

        shutdown = Event()
        ctx = LifecycleContext(
            executor=executor,
            reporter=reporter,
            config=config,
            shutdown=shutdown,
            max_steps=max_steps or config.swarm.max_steps,
            synthesiser=CommandSynthesiser(executor) if config.agents.get("synthesiser") else None,
        )

        if auto:
            with stop_on_signals(shutdown, "Stopping after the current step..."):
                outcome = run_lifecycle(
                    conn, experiment.slug, root, ctx, experiment.slug, contain_failures=False
                )
            final = outcome.experiment
        else:
            step = choose_step(conn, experiment)
            console.print(f"[bold]{experiment.slug}[/bold]: {experiment.status} -> {step}")
            _ = take_step(conn, experiment, step, root, ctx, experiment.slug)
            final = get_experiment_by_slug(conn, experiment.slug) or experiment

        console.print(f"[dim]status:[/dim] {final.status}")
    except QuorumError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        conn.close()
        if interpreter is not None:
            interpreter.close()
