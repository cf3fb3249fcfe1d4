# Copyright (c) Syntropy Systems
"""Main CLI entry point for quorum."""

import typer

from quorum.cli.init_cmd import init
from quorum.cli.measure import baseline, gate, measure
from quorum.cli.new import new
from quorum.cli.next_cmd import next_cmd
from quorum.cli.session import session_app
from quorum.cli.status import breakers, status
from quorum.cli.swarm import swarm
from quorum.cli.transition_cmd import transition_cmd

app = typer.Typer(
    name="quorum",
    help=(
        "Adversarial experiment lifecycle. Gate, build, doubt, verify, "
        "and merge only what survives."
    ),
    no_args_is_help=True,
    add_completion=False,
)

# Register commands
_ = app.command()(init)
_ = app.command()(new)
_ = app.command(name="next")(next_cmd)
_ = app.command()(status)
_ = app.command()(breakers)
_ = app.command()(baseline)
_ = app.command()(measure)
_ = app.command()(gate)
_ = app.command(name="transition")(transition_cmd)
_ = app.command()(swarm)

# Register session sub-app
app.add_typer(session_app, name="session")


if __name__ == "__main__":
    app()
