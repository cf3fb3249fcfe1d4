# Copyright (c) Syntropy Systems
"""quorum init command."""

from pathlib import Path

import typer
from rich.console import Console

from quorum.config import QuorumConfig, save_config
from quorum.db import init_db
from quorum.stages import STAGE_ROLES

console = Console()

EXPERIMENT_TEMPLATE = """\
# {{title}}

- **Hypothesis:** {{hypothesis}}
- **Branch:** {{branch}}
- **Status:** {{status}}
- **Sub-type:** {{sub_type}}
- **Created:** {{date}}

## Approach

## Decisions

## Results
"""


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
    name: str = typer.Option("", "--name", "-n", help="Project name"),
) -> None:
    """Initialize a new quorum project.

    Creates a .quorum directory with configuration and database, plus the
    docs/ layout experiments write into.
    """
    target = path.resolve()
    quorum_dir = target / ".quorum"

    if quorum_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {quorum_dir}")
        return

    quorum_dir.mkdir(parents=True)
    (quorum_dir / "runs").mkdir()

    config = QuorumConfig(project={"name": name or target.name})
    # One placeholder worker command per role, to be edited
    config.agents = {role: ["claude", "--print"] for role in sorted(set(STAGE_ROLES.values()))}
    config_path = save_config(config, quorum_dir)

    db_path = quorum_dir / "quorum.db"
    init_db(db_path)

    experiments_dir = target / "docs" / "experiments"
    experiments_dir.mkdir(parents=True, exist_ok=True)
    template_path = experiments_dir / "_TEMPLATE.md"
    if not template_path.exists():
        _ = template_path.write_text(EXPERIMENT_TEMPLATE)
    synthesis_dir = target / "docs" / "synthesis"
    synthesis_dir.mkdir(parents=True, exist_ok=True)
    for doc in ("current.md", "fragility.md"):
        if not (synthesis_dir / doc).exists():
            _ = (synthesis_dir / doc).write_text("")

    console.print(f"[green]Initialized quorum project:[/green] {quorum_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]database:[/dim] {db_path}")
    console.print(f"  [dim]template:[/dim] {template_path}")
