# Copyright (c) Syntropy Systems
"""Configuration management for quorum."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional, Union, cast

import yaml
from pydantic import Field, ValidationError

from quorum.errors import ConfigError
from quorum.models.base import QuorumBaseModel

Direction = Literal["lower_is_better", "higher_is_better", "closer_to_gt"]


class FixtureConfig(QuorumBaseModel):
    """Per-fixture settings. A regression on a gate fixture blocks merge."""

    gate: bool = False


class TrackedMetric(QuorumBaseModel):
    """Improvement direction and optional target for one metric."""

    # Unknown directions are kept so the gate can fail open on them.
    direction: Union[Direction, str] = "lower_is_better"
    target: Optional[float] = None


class MetricsConfig(QuorumBaseModel):
    """Benchmark command and the metrics it reports."""

    command: str = ""
    # Legacy configs list fixture names without per-fixture settings.
    fixtures: Union[dict[str, FixtureConfig], list[str]] = Field(default_factory=dict)
    tracked: dict[str, TrackedMetric] = Field(default_factory=dict)


class CycleConfig(QuorumBaseModel):
    """Lifecycle knobs."""

    compression_interval: int = 5
    circuit_breaker_threshold: int = 3
    auto_baseline_on_new_experiment: bool = True


class BuildConfig(QuorumBaseModel):
    """Commands run around metric capture."""

    pre_measure: Optional[str] = None
    post_measure: Optional[str] = None


class SwarmConfig(QuorumBaseModel):
    """Swarm sizing."""

    parallel: int = 3
    max_parallel: int = 8
    max_steps: int = 20


class ExtractionConfig(QuorumBaseModel):
    """Fallback interpreter used when worker output has no parseable data."""

    interpreter_url: Optional[str] = None
    interpreter_model: Optional[str] = None
    timeout: float = 60.0


@dataclass
class QuorumConfig:
    """Configuration for quorum."""

    project: dict[str, str] = field(default_factory=dict)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    build: BuildConfig = field(default_factory=BuildConfig)
    cycle: CycleConfig = field(default_factory=CycleConfig)
    swarm: SwarmConfig = field(default_factory=SwarmConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)

    # Worker command (argv) per agent role, e.g. {"builder": ["claude", "-p"]}
    agents: dict[str, list[str]] = field(default_factory=dict)

    # Grace period before SIGKILL after SIGTERM when stopping a worker (seconds)
    kill_grace_period: int = 10

    # Wall-clock limit for a single worker run (seconds); None waits forever
    agent_timeout: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> QuorumConfig:
        """Build a config from parsed YAML, validating each section."""
        config = cls()
        try:
            project = data.get("project")
            if isinstance(project, dict):
                config.project = {str(k): str(v) for k, v in project.items()}
            if isinstance(data.get("metrics"), dict):
                config.metrics = MetricsConfig.model_validate(data["metrics"])
            if isinstance(data.get("build"), dict):
                config.build = BuildConfig.model_validate(data["build"])
            if isinstance(data.get("cycle"), dict):
                config.cycle = CycleConfig.model_validate(data["cycle"])
            if isinstance(data.get("swarm"), dict):
                config.swarm = SwarmConfig.model_validate(data["swarm"])
            if isinstance(data.get("extraction"), dict):
                config.extraction = ExtractionConfig.model_validate(data["extraction"])
        except ValidationError as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigError(msg) from e

        agents = data.get("agents")
        if isinstance(agents, dict):
            for role, argv in agents.items():
                if isinstance(argv, str):
                    config.agents[str(role)] = argv.split()
                elif isinstance(argv, list):
                    config.agents[str(role)] = [str(a) for a in argv]

        kill_grace_period = data.get("kill_grace_period")
        if isinstance(kill_grace_period, (int, float)):
            config.kill_grace_period = int(kill_grace_period)

        agent_timeout = data.get("agent_timeout")
        if isinstance(agent_timeout, (int, float)) and not isinstance(agent_timeout, bool):
            config.agent_timeout = int(agent_timeout)

        return config

    def to_dict(self) -> dict[str, object]:
        """Serialize to plain data for writing config.yaml."""
        return {
            "project": dict(self.project),
            "metrics": self.metrics.model_dump(),
            "build": self.build.model_dump(),
            "cycle": self.cycle.model_dump(),
            "swarm": self.swarm.model_dump(),
            "extraction": self.extraction.model_dump(),
            "agents": dict(self.agents),
            "kill_grace_period": self.kill_grace_period,
            "agent_timeout": self.agent_timeout,
        }


def find_quorum_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .quorum directory by walking up from start_path.

    Returns None if no .quorum directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        quorum_dir = current / ".quorum"
        if quorum_dir.is_dir():
            return quorum_dir
        current = current.parent

    # Check root
    quorum_dir = current / ".quorum"
    if quorum_dir.is_dir():
        return quorum_dir

    return None


def get_global_config_dir() -> Path:
    """Get the global quorum config directory (~/.quorum)."""
    return Path.home() / ".quorum"


def load_config(quorum_dir: Path | None = None) -> QuorumConfig:
    """Load configuration from .quorum/config.yaml or defaults.

    Looks for config in:
    1. Provided quorum_dir
    2. Nearest .quorum directory walking up
    3. ~/.quorum/config.yaml
    4. Defaults
    """
    config_path = None

    if quorum_dir is not None:
        config_path = quorum_dir / "config.yaml"
    else:
        found_dir = find_quorum_dir()
        if found_dir is not None:
            config_path = found_dir / "config.yaml"
        else:
            global_config = get_global_config_dir() / "config.yaml"
            if global_config.exists():
                config_path = global_config

    if config_path is None or not config_path.exists():
        return QuorumConfig()

    try:
        with config_path.open() as f:
            data = cast("dict[str, object]", yaml.safe_load(f) or {})
    except yaml.YAMLError as e:
        msg = f"Could not parse {config_path}: {e}"
        raise ConfigError(msg) from e

    if not isinstance(data, dict):
        msg = f"{config_path} must contain a mapping"
        raise ConfigError(msg)

    return QuorumConfig.from_dict(data)


def save_config(config: QuorumConfig, quorum_dir: Path) -> Path:
    """Write config.yaml into a .quorum directory."""
    config_path = quorum_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.safe_dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
    return config_path


def get_db_path(quorum_dir: Path | None = None) -> Path:
    """Get the path to the SQLite database."""
    if quorum_dir is None:
        quorum_dir = require_quorum_dir()
    return quorum_dir / "quorum.db"


def get_project_root(quorum_dir: Path | None = None) -> Path:
    """Get the project root (the directory holding .quorum)."""
    if quorum_dir is None:
        quorum_dir = require_quorum_dir()
    return quorum_dir.parent


def require_quorum_dir() -> Path:
    """Get quorum directory or raise an error if not found."""
    quorum_dir = find_quorum_dir()
    if quorum_dir is None:
        msg = "No .quorum directory found. Run 'quorum init' first."
        raise ConfigError(msg)
    return quorum_dir
