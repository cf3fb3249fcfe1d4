# Copyright (c) Syntropy Systems
"""Tests for the swarm runner and result aggregation."""

import sqlite3
import threading
from pathlib import Path

from quorum.config import QuorumConfig
from quorum.db import (
    create_experiment,
    get_connection,
    get_experiment_by_slug,
    get_verifications_by_experiment,
    insert_challenge,
    insert_doubt,
    insert_verification,
    list_dead_ends,
    update_experiment_status,
)
from quorum.errors import StageExecutionError
from quorum.models.db import ExperimentRecord
from quorum.report import CollectingReporter
from quorum.swarm.aggregate import aggregate_swarm_results, is_mergeable, rank_results
from quorum.swarm.plan import parse_plan
from quorum.swarm.runner import run_experiment_in_worktree, run_swarm
from quorum.swarm.types import MAX_STEPS, SwarmContext, SwarmExperimentResult, WorktreeInfo
from quorum.swarm.worktree import slugify

STAGE_TARGETS = {
    "gate": "gated",
    "build": "built",
    "challenge": "challenged",
    "doubt": "doubted",
    "scout": "scouted",
    "verify": "verified",
}


class ScriptedExecutor:
    """Advances each stage to its target status and records what a worker would."""

    def __init__(self, grade: str = "sound", fail_slugs: tuple[str, ...] = ()) -> None:
        self.grade = grade
        self.fail_slugs = fail_slugs
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def run_stage(self, stage: str, conn: sqlite3.Connection, experiment: ExperimentRecord, root: Path) -> None:
        with self._lock:
            self.calls.append((experiment.slug, stage))
        if experiment.slug in self.fail_slugs:
            msg = f"{stage} worker exited with code 1"
            raise StageExecutionError(msg)
        if stage == "doubt":
            _ = insert_doubt(conn, experiment.id, "claim", "test", "evidence", "minor")
        elif stage == "challenge":
            _ = insert_challenge(conn, experiment.id, "edge case", "reasoning")
        elif stage == "verify":
            _ = insert_verification(conn, experiment.id, "core", self.grade)
        update_experiment_status(conn, experiment.id, STAGE_TARGETS[stage])


class StuckBuildExecutor:
    """Gates, then keeps the experiment in building forever."""

    def run_stage(self, stage: str, conn: sqlite3.Connection, experiment: ExperimentRecord, root: Path) -> None:
        target = "gated" if stage == "gate" else "building"
        update_experiment_status(conn, experiment.id, target)


class FailingCompressExecutor(ScriptedExecutor):
    """Leaves verification at resolved so compression runs next, then fails it."""

    def run_stage(self, stage: str, conn: sqlite3.Connection, experiment: ExperimentRecord, root: Path) -> None:
        if stage == "compress":
            msg = "compressor worker exited with code 3"
            raise StageExecutionError(msg)
        super().run_stage(stage, conn, experiment, root)
        if stage == "verify":
            update_experiment_status(conn, experiment.id, "resolved")


def make_worktree(base: Path, num: int, slug: str) -> WorktreeInfo:
    path = base / f"wt-{num:03d}"
    path.mkdir(parents=True)
    return WorktreeInfo(
        path=path,
        padded_num=f"{num:03d}",
        branch=f"swarm/{num:03d}-{slug}",
        slug=slug,
        hypothesis=f"Hypothesis for {slug}",
    )


def read_experiment(wt: WorktreeInfo) -> ExperimentRecord:
    conn = get_connection(wt.db_path)
    try:
        experiment = get_experiment_by_slug(conn, wt.slug)
        assert experiment is not None
        return experiment
    finally:
        conn.close()


class TestRunExperimentInWorktree:
    """Tests for a single swarm instance."""

    def test_full_lifecycle_merges(self, temp_dir: Path) -> None:
        """A cooperative executor carries the experiment to merged."""
        wt = make_worktree(temp_dir, 1, "happy")
        executor = ScriptedExecutor()
        ctx = SwarmContext(executor=executor, reporter=CollectingReporter(), config=QuorumConfig())

        result = run_experiment_in_worktree(wt, ctx)

        assert result.error is None
        assert result.final_status == "merged"
        assert result.overall_grade == "sound"
        assert [stage for _, stage in executor.calls] == ["gate", "build", "doubt", "challenge", "verify"]
        assert read_experiment(wt).status == "merged"

    def test_seeds_log_from_template(self, temp_dir: Path) -> None:
        wt = make_worktree(temp_dir, 1, "logged")
        experiments_dir = wt.path / "docs" / "experiments"
        experiments_dir.mkdir(parents=True)
        _ = (experiments_dir / "_TEMPLATE.md").write_text("# {{title}}\nbranch: {{branch}}\n")
        ctx = SwarmContext(executor=ScriptedExecutor(), reporter=CollectingReporter(), config=QuorumConfig())

        _ = run_experiment_in_worktree(wt, ctx)

        log = (experiments_dir / "001-logged.md").read_text()
        assert log == "# Hypothesis for logged\nbranch: swarm/001-logged\n"

    def test_failing_stage_dead_ends_once(self, temp_dir: Path) -> None:
        """A throwing executor yields dead_end after one stage and one dead end."""
        wt = make_worktree(temp_dir, 1, "broken")
        reporter = CollectingReporter()
        ctx = SwarmContext(
            executor=ScriptedExecutor(fail_slugs=("broken",)),
            reporter=reporter,
            config=QuorumConfig(),
        )

        result = run_experiment_in_worktree(wt, ctx)

        assert result.final_status == "dead_end"
        assert result.step_count == 1
        assert result.error is None

        conn = get_connection(wt.db_path)
        try:
            dead_ends = list_dead_ends(conn)
        finally:
            conn.close()
        assert len(dead_ends) == 1
        assert dead_ends[0].category == "procedural"
        assert dead_ends[0].approach == "gate worker exited with code 1"
        assert dead_ends[0].structural_constraint == "gate worker exited with code 1"
        assert reporter.messages("warn", label="swarm:001") == ["Step failed: gate worker exited with code 1"]

    def test_failing_compress_is_contained(self, temp_dir: Path) -> None:
        wt = make_worktree(temp_dir, 1, "squeeze")
        executor = FailingCompressExecutor()
        ctx = SwarmContext(executor=executor, reporter=CollectingReporter(), config=QuorumConfig())

        result = run_experiment_in_worktree(wt, ctx)

        assert result.error is None
        assert result.final_status == "dead_end"
        assert executor.calls[-1] == ("squeeze", "verify")

        conn = get_connection(wt.db_path)
        try:
            dead_ends = list_dead_ends(conn)
        finally:
            conn.close()
        assert [(d.category, d.approach) for d in dead_ends] == [
            ("procedural", "compressor worker exited with code 3")
        ]

    def test_self_loop_stops_at_step_budget(self, temp_dir: Path) -> None:
        wt = make_worktree(temp_dir, 1, "stuck")
        reporter = CollectingReporter()
        ctx = SwarmContext(executor=StuckBuildExecutor(), reporter=reporter, config=QuorumConfig())

        result = run_experiment_in_worktree(wt, ctx)

        assert result.step_count == MAX_STEPS == 20
        assert result.final_status == "building"
        assert result.error is None
        assert any("max steps" in m for m in reporter.messages("warn"))

    def test_shutdown_checked_before_first_step(self, temp_dir: Path) -> None:
        wt = make_worktree(temp_dir, 1, "halted")
        executor = ScriptedExecutor()
        reporter = CollectingReporter()
        ctx = SwarmContext(executor=executor, reporter=reporter, config=QuorumConfig())
        ctx.shutdown.set()

        result = run_experiment_in_worktree(wt, ctx)

        assert result.step_count == 0
        assert result.final_status == "reframed"
        assert executor.calls == []
        assert not any("max steps" in m for m in reporter.messages("warn"))

    def test_unexpected_error_becomes_error_result(self, temp_dir: Path) -> None:
        wt = make_worktree(temp_dir, 1, "clash")
        # A file where the .quorum directory should be makes setup fail
        _ = (wt.path / ".quorum").write_text("not a directory")
        ctx = SwarmContext(executor=ScriptedExecutor(), reporter=CollectingReporter(), config=QuorumConfig())

        result = run_experiment_in_worktree(wt, ctx)

        assert result.final_status == "error"
        assert result.error is not None
        assert result.experiment is None


class TestRunSwarm:
    """Tests for concurrent instances."""

    def test_failure_does_not_affect_sibling(self, temp_dir: Path) -> None:
        broken = make_worktree(temp_dir, 1, "broken")
        healthy = make_worktree(temp_dir, 2, "healthy")
        executor = ScriptedExecutor(fail_slugs=("broken",))
        ctx = SwarmContext(executor=executor, reporter=CollectingReporter(), config=QuorumConfig())

        results = run_swarm([broken, healthy], ctx)

        assert [r.worktree.slug for r in results] == ["broken", "healthy"]
        assert results[0].final_status == "dead_end"
        assert results[1].final_status == "merged"
        assert results[1].overall_grade == "sound"

    def test_empty(self) -> None:
        ctx = SwarmContext(executor=ScriptedExecutor(), reporter=CollectingReporter(), config=QuorumConfig())
        assert run_swarm([], ctx) == []


class TestAggregate:
    """Tests for folding instance stores into the main store."""

    def test_import_remaps_ids_and_picks_best(self, temp_dir: Path, db_connection: sqlite3.Connection) -> None:
        # Occupy id 1 in the main store so imported ids must be remapped
        _ = create_experiment(db_connection, "existing", "exp/001-existing")

        sound = make_worktree(temp_dir, 1, "sound-one")
        weak = make_worktree(temp_dir, 2, "weak-one")
        broken = make_worktree(temp_dir, 3, "broken")

        sound_ctx = SwarmContext(executor=ScriptedExecutor("sound"), reporter=CollectingReporter(), config=QuorumConfig())
        weak_ctx = SwarmContext(
            executor=ScriptedExecutor("weak", fail_slugs=("broken",)),
            reporter=CollectingReporter(),
            config=QuorumConfig(),
            max_steps=6,
        )
        results = [
            run_experiment_in_worktree(sound, sound_ctx),
            run_experiment_in_worktree(weak, weak_ctx),
            run_experiment_in_worktree(broken, weak_ctx),
        ]

        summary = aggregate_swarm_results(db_connection, results, goal="close gaps")

        assert summary.best is not None
        assert summary.best.worktree.slug == "sound-one"
        assert summary.merged_count == 1
        assert summary.dead_end_count == 1
        assert summary.error_count == 0
        assert summary.parallel_count == 3

        imported = get_experiment_by_slug(db_connection, "sound-one")
        assert imported is not None
        assert imported.id != 1
        verifications = get_verifications_by_experiment(db_connection, imported.id)
        assert [(v.component, v.grade) for v in verifications] == [("core", "sound")]

        weak_imported = get_experiment_by_slug(db_connection, "weak-one")
        assert weak_imported is not None
        assert weak_imported.status == "building"
        assert weak_imported.builder_guidance is not None

        dead = list_dead_ends(db_connection)
        assert [d.approach for d in dead] == ["gate worker exited with code 1"]

    def test_error_results_are_counted(self, temp_dir: Path, db_connection: sqlite3.Connection) -> None:
        wt = make_worktree(temp_dir, 1, "lost")
        results = [SwarmExperimentResult(worktree=wt, experiment=None, final_status="error", error="boom")]

        summary = aggregate_swarm_results(db_connection, results)

        assert summary.error_count == 1
        assert summary.best is None

    def test_ranking(self, temp_dir: Path) -> None:
        def result(slug: str, grade) -> SwarmExperimentResult:
            wt = WorktreeInfo(path=temp_dir / slug, padded_num="001", branch=slug, slug=slug)
            return SwarmExperimentResult(worktree=wt, experiment=None, final_status="x", overall_grade=grade)

        ranked = rank_results([result("a", "weak"), result("b", None), result("c", "good"), result("d", "sound")])
        assert [r.worktree.slug for r in ranked] == ["d", "c", "a"]
        assert is_mergeable("good") is True
        assert is_mergeable("weak") is False


class TestPlanAndSlugs:
    """Tests for hypothesis planning helpers."""

    def test_parse_plan(self) -> None:
        plan = parse_plan('<!-- quorum-json {"goal_met": false, "hypotheses": ["a", "b"]} -->')
        assert plan is not None
        assert plan.hypotheses == ["a", "b"]
        assert parse_plan("no block") is None

    def test_slugify(self) -> None:
        assert slugify("Stitch open edges before Remeshing!") == "stitch-open-edges-before-remeshing"
        assert slugify("???") == "experiment"
        assert len(slugify("x" * 100)) == 40
