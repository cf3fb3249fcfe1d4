# Copyright (c) Syntropy Systems
"""Tests for quorum configuration loading."""

from pathlib import Path

import pytest
import yaml

from quorum.config import (
    FixtureConfig,
    QuorumConfig,
    find_quorum_dir,
    load_config,
    require_quorum_dir,
    save_config,
)
from quorum.errors import ConfigError


def write_yaml(quorum_dir: Path, data: object) -> None:
    _ = (quorum_dir / "config.yaml").write_text(yaml.safe_dump(data))


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults_without_file(self, quorum_project: Path) -> None:
        config = load_config(quorum_project / ".quorum")

        assert config.cycle.compression_interval == 5
        assert config.cycle.circuit_breaker_threshold == 3
        assert config.swarm.max_steps == 20
        assert config.agents == {}

    def test_sections_parsed(self, quorum_project: Path) -> None:
        write_yaml(
            quorum_project / ".quorum",
            {
                "project": {"name": "meshfix"},
                "metrics": {
                    "command": "python bench.py --json",
                    "fixtures": {"ubracket": {"gate": True}, "sig1": {"gate": False}},
                    "tracked": {"free_edges": {"direction": "lower_is_better", "target": 0}},
                },
                "cycle": {"circuit_breaker_threshold": 5},
                "agents": {"builder": ["claude", "-p"], "critic": "claude --print"},
                "kill_grace_period": 3,
                "agent_timeout": 900,
            },
        )

        config = load_config(quorum_project / ".quorum")

        assert config.project == {"name": "meshfix"}
        assert config.metrics.fixtures == {
            "ubracket": FixtureConfig(gate=True),
            "sig1": FixtureConfig(gate=False),
        }
        assert config.metrics.tracked["free_edges"].target == 0
        assert config.cycle.circuit_breaker_threshold == 5
        assert config.cycle.compression_interval == 5
        assert config.agents == {"builder": ["claude", "-p"], "critic": ["claude", "--print"]}
        assert config.kill_grace_period == 3
        assert config.agent_timeout == 900

    def test_legacy_fixture_list(self, quorum_project: Path) -> None:
        write_yaml(quorum_project / ".quorum", {"metrics": {"fixtures": ["ubracket", "sig1"]}})
        assert load_config(quorum_project / ".quorum").metrics.fixtures == ["ubracket", "sig1"]

    def test_invalid_target_rejected(self, quorum_project: Path) -> None:
        write_yaml(
            quorum_project / ".quorum",
            {"metrics": {"tracked": {"free_edges": {"target": "zero"}}}},
        )
        with pytest.raises(ConfigError):
            _ = load_config(quorum_project / ".quorum")

    def test_non_mapping_rejected(self, quorum_project: Path) -> None:
        _ = (quorum_project / ".quorum" / "config.yaml").write_text("- just\n- a list\n")
        with pytest.raises(ConfigError, match="mapping"):
            _ = load_config(quorum_project / ".quorum")

    def test_retired_cycle_keys_ignored(self, quorum_project: Path) -> None:
        write_yaml(
            quorum_project / ".quorum",
            {
                "cycle": {
                    "require_doubt_before_verify": False,
                    "require_challenge_before_verify": True,
                    "compression_interval": 7,
                }
            },
        )

        config = load_config(quorum_project / ".quorum")

        assert config.cycle.compression_interval == 7
        assert "require_doubt_before_verify" not in config.to_dict()["cycle"]
        assert not hasattr(config.cycle, "require_challenge_before_verify")

    def test_round_trip_through_save(self, quorum_project: Path) -> None:
        config = QuorumConfig(project={"name": "meshfix"})
        config.agents = {"builder": ["claude", "-p"]}
        _ = save_config(config, quorum_project / ".quorum")

        loaded = load_config(quorum_project / ".quorum")
        assert loaded.project == {"name": "meshfix"}
        assert loaded.agents == {"builder": ["claude", "-p"]}


class TestFindQuorumDir:
    """Tests for locating the project directory."""

    def test_walks_up(self, quorum_project: Path) -> None:
        nested = quorum_project / "a" / "b"
        nested.mkdir(parents=True)
        assert find_quorum_dir(nested) == (quorum_project / ".quorum").resolve()

    def test_require_raises_outside_project(self, temp_dir: Path, monkeypatch) -> None:
        monkeypatch.chdir(temp_dir)
        with pytest.raises(ConfigError, match="quorum init"):
            _ = require_quorum_dir()
