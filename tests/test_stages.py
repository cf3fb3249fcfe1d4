# Copyright (c) Syntropy Systems
"""Tests for the command-backed stage executor."""

import json
import sqlite3
import sys
from pathlib import Path

import pytest

from quorum.config import QuorumConfig
from quorum.db import (
    create_experiment,
    get_experiment_by_slug,
    get_verifications_by_experiment,
    insert_doubt,
    list_dead_ends,
    list_decisions,
    update_experiment_status,
)
from quorum.errors import StageExecutionError
from quorum.models.db import ExperimentRecord
from quorum.report import CollectingReporter
from quorum.stages import CommandStageExecutor, read_truncated


def make_worker(root: Path, output: str, exit_code: int = 0) -> list[str]:
    """Write a worker script that prints canned output; return its argv."""
    output_path = root / "worker_output.txt"
    _ = output_path.write_text(output)
    script = root / "worker.py"
    _ = script.write_text(
        "import sys\n"
        f"sys.stdout.write(open({str(output_path)!r}).read())\n"
        f"sys.exit({exit_code})\n"
    )
    return [sys.executable, str(script)]


def experiment_at(conn: sqlite3.Connection, status: str, slug: str = "exp") -> ExperimentRecord:
    exp = create_experiment(conn, slug, f"exp/001-{slug}", "Stitching closes gaps", "topology")
    update_experiment_status(conn, exp.id, status)
    fresh = get_experiment_by_slug(conn, slug)
    assert fresh is not None
    return fresh


def executor_for(role: str, argv: list[str]) -> tuple[CommandStageExecutor, CollectingReporter]:
    config = QuorumConfig()
    config.agents = {role: argv}
    reporter = CollectingReporter()
    return CommandStageExecutor(config, reporter), reporter


class TestSpawn:
    """Tests for running worker commands."""

    def test_missing_agent_command(self, db_connection: sqlite3.Connection, quorum_project: Path) -> None:
        exp = experiment_at(db_connection, "reframed")
        executor = CommandStageExecutor(QuorumConfig())

        with pytest.raises(StageExecutionError, match="agents.gatekeeper"):
            executor.run_stage("gate", db_connection, exp, quorum_project)

    def test_non_zero_exit(self, db_connection: sqlite3.Connection, quorum_project: Path) -> None:
        exp = experiment_at(db_connection, "reframed")
        executor, _ = executor_for("gatekeeper", make_worker(quorum_project, "oops", exit_code=2))

        with pytest.raises(StageExecutionError, match="exited with code 2"):
            executor.run_stage("gate", db_connection, exp, quorum_project)

        fresh = get_experiment_by_slug(db_connection, "exp")
        assert fresh is not None
        assert fresh.status == "reframed"

    def test_worker_timeout(self, db_connection: sqlite3.Connection, quorum_project: Path) -> None:
        exp = experiment_at(db_connection, "reframed")
        config = QuorumConfig()
        config.agents = {"gatekeeper": [sys.executable, "-c", "import time; time.sleep(60)"]}
        config.agent_timeout = 1
        config.kill_grace_period = 1

        with pytest.raises(StageExecutionError, match="timed out after 1s"):
            CommandStageExecutor(config).run_stage("gate", db_connection, exp, quorum_project)

    def test_unknown_stage(self, db_connection: sqlite3.Connection, quorum_project: Path) -> None:
        exp = experiment_at(db_connection, "reframed")
        with pytest.raises(StageExecutionError, match="Unknown stage"):
            CommandStageExecutor(QuorumConfig()).run_stage("polish", db_connection, exp, quorum_project)

    def test_illegal_stage_for_status(self, db_connection: sqlite3.Connection, quorum_project: Path) -> None:
        from quorum.errors import InvalidTransitionError

        exp = experiment_at(db_connection, "reframed")
        executor, _ = executor_for("verifier", make_worker(quorum_project, ""))
        with pytest.raises(InvalidTransitionError):
            executor.run_stage("verify", db_connection, exp, quorum_project)

    def test_context_and_log_written(self, db_connection: sqlite3.Connection, quorum_project: Path) -> None:
        exp = experiment_at(db_connection, "reframed")
        output = '<!-- quorum-json {"gate_decision": "approve", "reason": "fine"} -->'
        executor, _ = executor_for("gatekeeper", make_worker(quorum_project, output))

        executor.run_stage("gate", db_connection, exp, quorum_project)

        run_dir = quorum_project / ".quorum" / "runs" / "exp" / "01-gatekeeper"
        context = json.loads((run_dir / "context.json").read_text())
        assert context["experiment"]["slug"] == "exp"
        assert (run_dir / "output.log").read_text() == output

        fresh = get_experiment_by_slug(db_connection, "exp")
        assert fresh is not None
        assert fresh.status == "gated"


class TestStages:
    """Tests for individual stage behavior."""

    def test_gate_reject_is_reported(self, db_connection: sqlite3.Connection, quorum_project: Path) -> None:
        exp = experiment_at(db_connection, "reframed")
        output = '<!-- quorum-json {"gate_decision": "reject", "reason": "overlaps dead end 3"} -->'
        executor, reporter = executor_for("gatekeeper", make_worker(quorum_project, output))

        executor.run_stage("gate", db_connection, exp, quorum_project)

        assert any("overlaps dead end 3" in m for m in reporter.messages("warn"))
        fresh = get_experiment_by_slug(db_connection, "exp")
        assert fresh is not None
        assert fresh.status == "gated"
        assert list_dead_ends(db_connection, experiment_id=exp.id) == []

    def test_build_records_decisions(self, db_connection: sqlite3.Connection, quorum_project: Path) -> None:
        exp = experiment_at(db_connection, "gated")
        output = "[test] sig1 passes after stitching\n"
        executor, _ = executor_for("builder", make_worker(quorum_project, output))

        executor.run_stage("build", db_connection, exp, quorum_project)

        fresh = get_experiment_by_slug(db_connection, "exp")
        assert fresh is not None
        assert fresh.status == "built"
        decisions = list_decisions(db_connection, exp.id)
        assert [(d.evidence_level, d.description) for d in decisions] == [
            ("test", "sig1 passes after stitching")
        ]

    def test_build_abandon_dead_ends(self, db_connection: sqlite3.Connection, quorum_project: Path) -> None:
        exp = experiment_at(db_connection, "gated")
        executor, reporter = executor_for(
            "builder", make_worker(quorum_project, "HYPOTHESIS INVALID: the kernel has no hook\n")
        )

        executor.run_stage("build", db_connection, exp, quorum_project)

        fresh = get_experiment_by_slug(db_connection, "exp")
        assert fresh is not None
        assert fresh.status == "dead_end"
        dead_ends = list_dead_ends(db_connection, experiment_id=exp.id)
        assert [(d.why_failed, d.category, d.sub_type) for d in dead_ends] == [
            ("the kernel has no hook", "structural", "topology")
        ]
        assert any("abandoned" in m for m in reporter.messages("warn"))

    def test_verify_stores_grades_and_resolutions(
        self, db_connection: sqlite3.Connection, quorum_project: Path
    ) -> None:
        exp = experiment_at(db_connection, "scouted")
        doubt_id = insert_doubt(db_connection, exp.id, "claim", "test", "evidence", "moderate")
        payload = {
            "grades": [{"component": "stitcher", "grade": "good", "notes": "sig2 untested"}],
            "doubt_resolutions": [{"doubt_id": doubt_id, "resolution": "confirmed"}],
        }
        output = f"<!-- quorum-json {json.dumps(payload)} -->"
        executor, _ = executor_for("verifier", make_worker(quorum_project, output))

        executor.run_stage("verify", db_connection, exp, quorum_project)

        fresh = get_experiment_by_slug(db_connection, "exp")
        assert fresh is not None
        assert fresh.status == "verified"
        verifications = get_verifications_by_experiment(db_connection, exp.id)
        assert [(v.component, v.grade) for v in verifications] == [("stitcher", "good")]
        resolved = db_connection.execute("SELECT resolution FROM doubts WHERE id = ?", (doubt_id,)).fetchone()
        assert resolved["resolution"] == "confirmed"

    def test_missing_structured_output_warns(self, db_connection: sqlite3.Connection, quorum_project: Path) -> None:
        exp = experiment_at(db_connection, "built")
        executor, reporter = executor_for("critic", make_worker(quorum_project, "Looks fine to me."))

        executor.run_stage("doubt", db_connection, exp, quorum_project)

        fresh = get_experiment_by_slug(db_connection, "exp")
        assert fresh is not None
        assert fresh.status == "doubted"
        assert any("No structured data from critic" in m for m in reporter.messages("warn"))

    def test_experiment_log_found_by_slug(self, db_connection: sqlite3.Connection, quorum_project: Path) -> None:
        exp = experiment_at(db_connection, "built")
        assert exp.id == 1
        experiments = quorum_project / "docs" / "experiments"
        experiments.mkdir(parents=True)
        _ = (experiments / "001-expanded.md").write_text("# Someone else's log\n")
        _ = (experiments / "002-exp.md").write_text("# Stitching log\nsig1 closed.\n")
        executor, _ = executor_for("critic", make_worker(quorum_project, "Looks fine to me."))

        executor.run_stage("doubt", db_connection, exp, quorum_project)

        run_dir = quorum_project / ".quorum" / "runs" / "exp" / "01-critic"
        context = json.loads((run_dir / "context.json").read_text())
        assert context["experiment_doc"] == "# Stitching log\nsig1 closed.\n"

    def test_missing_experiment_log_warns(self, db_connection: sqlite3.Connection, quorum_project: Path) -> None:
        exp = experiment_at(db_connection, "built")
        executor, reporter = executor_for("critic", make_worker(quorum_project, "Looks fine to me."))

        executor.run_stage("doubt", db_connection, exp, quorum_project)

        assert any("No experiment log for exp" in m for m in reporter.messages("warn"))

    def test_verify_reruns_from_verifying(self, db_connection: sqlite3.Connection, quorum_project: Path) -> None:
        exp = experiment_at(db_connection, "verifying")
        payload = {"grades": [{"component": "stitcher", "grade": "sound"}]}
        output = f"<!-- quorum-json {json.dumps(payload)} -->"
        executor, _ = executor_for("verifier", make_worker(quorum_project, output))

        executor.run_stage("verify", db_connection, exp, quorum_project)

        fresh = get_experiment_by_slug(db_connection, "exp")
        assert fresh is not None
        assert fresh.status == "verified"

    def test_compress_appends_synthesis(self, db_connection: sqlite3.Connection, quorum_project: Path) -> None:
        exp = experiment_at(db_connection, "resolved")
        synthesis = quorum_project / "docs" / "synthesis" / "current.md"
        synthesis.parent.mkdir(parents=True)
        _ = synthesis.write_text("Known: stitching works.\n")
        payload = {"compression_report": {"synthesis_delta": "Stitching needs a tolerance of 1e-6."}}
        executor, _ = executor_for("compressor", make_worker(quorum_project, f"<!-- quorum-json {json.dumps(payload)} -->"))

        executor.run_stage("compress", db_connection, exp, quorum_project)

        assert synthesis.read_text() == "Known: stitching works.\n\nStitching needs a tolerance of 1e-6.\n"
        row = db_connection.execute("SELECT COUNT(*) AS n FROM compressions").fetchone()
        assert row["n"] == 1


class TestReadTruncated:
    """Tests for context file reading."""

    def test_missing_file(self, temp_dir: Path) -> None:
        assert read_truncated(temp_dir / "nope.md", 10) == ""

    def test_truncates(self, temp_dir: Path) -> None:
        path = temp_dir / "long.md"
        _ = path.write_text("a" * 20)
        assert read_truncated(path, 5) == "aaaaa\n[TRUNCATED]"
