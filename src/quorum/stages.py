# Copyright (c) Syntropy Systems
"""Lifecycle stage executors backed by worker agent commands."""
from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Callable, Optional, Protocol

from quorum.db import (
    get_challenges_by_experiment,
    get_confirmed_doubts,
    get_doubts_by_experiment,
    get_experiment_by_id,
    get_metrics_by_experiment_and_phase,
    get_sessions_since_compression,
    insert_challenge,
    insert_dead_end,
    insert_decision,
    insert_doubt,
    insert_verification,
    list_dead_ends,
    record_compression,
    update_doubt_resolution,
    update_experiment_status,
)
from quorum.errors import MetricsCommandError, StageExecutionError
from quorum.extract import ExtractionResult, extract_structured_data, validate_for_role
from quorum.machine import ExperimentStatus, admin_transition_and_persist, transition
from quorum.metrics import capture_metrics
from quorum.runner import AgentRunner

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Sequence
    from pathlib import Path

    from quorum.config import QuorumConfig
    from quorum.interpreter import Interpreter
    from quorum.models.db import DoubtRecord, ExperimentRecord, VerificationRecord
    from quorum.models.output import StructuredOutput
    from quorum.report import Reporter
    from quorum.runner import AgentResult

logger = logging.getLogger(__name__)

STAGES = ("gate", "build", "challenge", "doubt", "scout", "verify", "compress")

STAGE_ROLES = {
    "gate": "gatekeeper",
    "build": "builder",
    "challenge": "adversary",
    "doubt": "critic",
    "scout": "scout",
    "verify": "verifier",
    "compress": "compressor",
}

CONTEXT_LIMITS = {"synthesis": 30_000, "fragility": 15_000, "experiment_doc": 15_000}


class StageExecutor(Protocol):
    """Performs one lifecycle stage and persists the resulting status.

    Raises on failure; the caller observes only success or failure.
    """

    def run_stage(
        self,
        stage: str,
        conn: sqlite3.Connection,
        experiment: ExperimentRecord,
        root: Path,
    ) -> None:
        ...


def read_truncated(path: Path, limit: int) -> str:
    """Read a text file, empty if missing, cut to limit characters."""
    if not path.exists():
        return ""
    text = path.read_text(errors="replace")
    if len(text) > limit:
        return text[:limit] + "\n[TRUNCATED]"
    return text


def find_experiment_log(root: Path, slug: str) -> Optional[Path]:
    """Find docs/experiments/NNN-<slug>.md whatever its number."""
    experiments_dir = root / "docs" / "experiments"
    if not experiments_dir.is_dir():
        return None
    pattern = re.compile(rf"\d+-{re.escape(slug)}\.md")
    matches = sorted(p for p in experiments_dir.iterdir() if pattern.fullmatch(p.name))
    return matches[0] if matches else None


def ingest_structured_output(
    conn: sqlite3.Connection,
    experiment_id: int,
    output: Optional[StructuredOutput],
) -> dict[str, int]:
    """Store the records a worker reported. Returns counts per kind."""
    counts: dict[str, int] = {}
    if output is None:
        return counts

    for d in output.decisions or []:
        _ = insert_decision(conn, experiment_id, d.description, d.evidence_level, d.justification)
    for g in output.grades or []:
        _ = insert_verification(
            conn, experiment_id, g.component, g.grade,
            g.provenance_intact, g.content_correct, g.notes,
        )
    for d in output.doubts or []:
        _ = insert_doubt(
            conn, experiment_id, d.claim_doubted, d.evidence_level_of_claim,
            d.evidence_for_doubt, d.severity,
        )
    for c in output.challenges or []:
        _ = insert_challenge(conn, experiment_id, c.description, c.reasoning)
    for r in output.doubt_resolutions or []:
        update_doubt_resolution(conn, r.doubt_id, r.resolution)

    for kind in ("decisions", "grades", "doubts", "challenges", "doubt_resolutions"):
        items = getattr(output, kind)
        if items:
            counts[kind] = len(items)
    return counts


class CommandStageExecutor:
    """Runs the configured worker command for each stage's role.

    Each invocation gets a context JSON file and an output log under
    ``.quorum/runs/<slug>/``. The worker's output goes through the
    extraction tiers and the resulting records are stored before the
    stage's status is written.
    """

    config: QuorumConfig
    reporter: Optional[Reporter]
    interpreter: Optional[Interpreter]

    def __init__(
        self,
        config: QuorumConfig,
        reporter: Optional[Reporter] = None,
        interpreter: Optional[Interpreter] = None,
    ) -> None:
        self.config = config
        self.reporter = reporter
        self.interpreter = interpreter
        self._handlers: dict[str, Callable[[sqlite3.Connection, ExperimentRecord, Path], None]] = {
            "gate": self._gate,
            "build": self._build,
            "challenge": self._simple("adversary", ExperimentStatus.CHALLENGED),
            "doubt": self._simple("critic", ExperimentStatus.DOUBTED),
            "scout": self._simple("scout", ExperimentStatus.SCOUTED),
            "verify": self._verify,
            "compress": self._compress,
        }

    def run_stage(
        self,
        stage: str,
        conn: sqlite3.Connection,
        experiment: ExperimentRecord,
        root: Path,
    ) -> None:
        handler = self._handlers.get(stage)
        if handler is None:
            msg = f"Unknown stage: {stage} (expected one of {', '.join(STAGES)})"
            raise StageExecutionError(msg)
        handler(conn, experiment, root)

    # --- Worker plumbing ---

    def _info(self, message: str, label: str) -> None:
        if self.reporter is not None:
            self.reporter.info(message, label)

    def _warn(self, message: str, label: str) -> None:
        if self.reporter is not None:
            self.reporter.warn(message, label)

    def spawn(
        self,
        role: str,
        label: str,
        root: Path,
        task: str,
        context: dict[str, object],
    ) -> tuple[AgentResult, ExtractionResult]:
        """Run the worker for a role and extract its structured output.

        Raises:
            StageExecutionError: no command is configured for the role or the
                worker exited non-zero.

        """
        argv = self.config.agents.get(role)
        if not argv:
            msg = f"No worker command configured for role '{role}' (agents.{role})"
            raise StageExecutionError(msg)

        base = root / ".quorum" / "runs" / label
        attempt = len(list(base.glob(f"*-{role}"))) + 1 if base.exists() else 1
        run_dir = base / f"{attempt:02d}-{role}"
        run_dir.mkdir(parents=True, exist_ok=True)

        context_path = run_dir / "context.json"
        _ = context_path.write_text(json.dumps(context, indent=2, default=str))
        prompt = f"Read the context at {context_path}. {task}"

        logger.debug("Running %s worker for %s in %s", role, label, run_dir)
        runner = AgentRunner(
            [*argv, prompt],
            workdir=root,
            log_path=run_dir / "output.log",
            env={
                "QUORUM_ROLE": role,
                "QUORUM_LABEL": label,
                "QUORUM_CONTEXT": str(context_path),
            },
        )
        try:
            result = runner.run(
                timeout=self.config.agent_timeout,
                grace_period=self.config.kill_grace_period,
            )
        except OSError as e:
            msg = f"Could not start {role} worker: {e}"
            raise StageExecutionError(msg) from e

        if result.timed_out:
            msg = f"{role} worker timed out after {self.config.agent_timeout}s (log: {result.log_path})"
            raise StageExecutionError(msg)
        if not result.ok:
            msg = f"{role} worker exited with code {result.exit_code} (log: {result.log_path})"
            raise StageExecutionError(msg)

        extracted = extract_structured_data(role, result.output, self.interpreter)
        if extracted.output is None:
            self._warn(f"No structured data from {role}; continuing without it.", label)
        else:
            valid, missing = validate_for_role(role, extracted.output)
            if not valid:
                self._warn(f"{role} output missing {', '.join(missing)}", label)
        return result, extracted

    def _base_context(
        self,
        conn: sqlite3.Connection,
        experiment: ExperimentRecord,
        root: Path,
    ) -> dict[str, object]:
        synthesis_dir = root / "docs" / "synthesis"
        dead_ends = list_dead_ends(conn, sub_type=experiment.sub_type)
        return {
            "experiment": experiment.model_dump(mode="json", exclude={"builder_guidance"}),
            "dead_ends": [
                {
                    "approach": d.approach,
                    "why_failed": d.why_failed,
                    "structural_constraint": d.structural_constraint,
                    "category": d.category,
                }
                for d in dead_ends
            ],
            "synthesis": read_truncated(synthesis_dir / "current.md", CONTEXT_LIMITS["synthesis"]),
            "fragility": read_truncated(synthesis_dir / "fragility.md", CONTEXT_LIMITS["fragility"]),
        }

    def _refresh(self, conn: sqlite3.Connection, experiment: ExperimentRecord) -> ExperimentRecord:
        fresh = get_experiment_by_id(conn, experiment.id)
        return fresh if fresh is not None else experiment

    def _capture(
        self,
        conn: sqlite3.Connection,
        experiment: ExperimentRecord,
        phase: str,
        root: Path,
    ) -> None:
        if not self.config.metrics.command:
            return
        try:
            parsed = capture_metrics(conn, experiment, phase, self.config, root)
        except MetricsCommandError as e:
            self._warn(f"Could not capture {phase} metrics: {e}", experiment.slug)
            return
        if parsed:
            self._info(f"Captured {len(parsed)} {phase} metric(s).", experiment.slug)

    # --- Stages ---

    def _gate(self, conn: sqlite3.Connection, experiment: ExperimentRecord, root: Path) -> None:
        _ = transition(experiment.status, ExperimentStatus.GATED)
        task = (
            f'Gate-check hypothesis for experiment {experiment.slug}:\n"{experiment.hypothesis}"\n\n'
            "Check: (a) stale references, (b) overlap with structural dead-ends, "
            "(c) scope. Output gate_decision as approve, reject or flag with a reason."
        )
        _, extracted = self.spawn(
            "gatekeeper", experiment.slug, root, task, self._base_context(conn, experiment, root)
        )
        _ = ingest_structured_output(conn, experiment.id, extracted.output)

        decision = "approve"
        reason = ""
        if extracted.output is not None:
            decision = extracted.output.gate_decision or "approve"
            reason = extracted.output.reason or ""
        if decision == "reject":
            self._warn(f"Gate rejected {experiment.slug}: {reason}", experiment.slug)
        elif decision == "flag":
            self._warn(f"Gate flagged concerns for {experiment.slug}: {reason}", experiment.slug)
        update_experiment_status(conn, experiment.id, ExperimentStatus.GATED)

    def _build(self, conn: sqlite3.Connection, experiment: ExperimentRecord, root: Path) -> None:
        _ = transition(experiment.status, ExperimentStatus.BUILDING)

        if not get_metrics_by_experiment_and_phase(conn, experiment.id, "before"):
            self._capture(conn, experiment, "before", root)

        update_experiment_status(conn, experiment.id, ExperimentStatus.BUILDING)
        experiment = self._refresh(conn, experiment)

        confirmed = get_confirmed_doubts(conn, experiment.id)
        if experiment.builder_guidance:
            task = (
                "Previous attempt was weak. Here is guidance for this attempt:\n"
                f"{experiment.builder_guidance}\n\nBuild the experiment: {experiment.hypothesis}"
            )
        else:
            task = f"Build the experiment: {experiment.hypothesis}"
        if confirmed:
            task += "\n\n## Confirmed Doubts (MUST address)\n"
            task += "".join(
                f"- [{d.severity}] {d.claim_doubted}: {d.evidence_for_doubt}\n" for d in confirmed
            )
        task += (
            "\n\nNote: metrics are captured automatically. Do not claim specific numbers "
            "unless quoting captured output."
        )

        context = self._base_context(conn, experiment, root)
        context["builder_guidance"] = experiment.builder_guidance
        context["confirmed_doubts"] = [d.model_dump(mode="json") for d in confirmed]

        _, extracted = self.spawn("builder", experiment.slug, root, task, context)
        _ = ingest_structured_output(conn, experiment.id, extracted.output)

        abandon = extracted.output.abandon if extracted.output is not None else None
        if abandon is not None:
            _ = insert_dead_end(
                conn,
                experiment.id,
                experiment.hypothesis or experiment.slug,
                abandon.reason,
                abandon.structural_constraint,
                experiment.sub_type,
                "structural",
            )
            _ = admin_transition_and_persist(
                conn, experiment.id, ExperimentStatus.BUILDING, ExperimentStatus.DEAD_END, "revert"
            )
            self._warn(f"Builder abandoned {experiment.slug}: {abandon.reason}", experiment.slug)
            return

        self._capture(conn, experiment, "after", root)
        update_experiment_status(conn, experiment.id, ExperimentStatus.BUILT)

    def _simple(
        self,
        role: str,
        target: ExperimentStatus,
    ) -> Callable[[sqlite3.Connection, ExperimentRecord, Path], None]:
        """Stage that runs one worker, stores its records and moves to target."""
        tasks = {
            "adversary": "Construct adversarial test cases for experiment {slug}: {hypothesis}",
            "critic": (
                "Doubt the work in experiment {slug}: {hypothesis}. "
                "Produce a doubt document with evidence for each doubt."
            ),
            "scout": (
                "Search for alternative approaches to the problem in experiment {slug}: "
                "{hypothesis}. Look for contradictory approaches and known limitations."
            ),
        }

        def handler(conn: sqlite3.Connection, experiment: ExperimentRecord, root: Path) -> None:
            _ = transition(experiment.status, target)
            context = self._base_context(conn, experiment, root)
            doc = find_experiment_log(root, experiment.slug)
            if doc is None:
                self._warn(f"No experiment log for {experiment.slug} under docs/experiments", experiment.slug)
                context["experiment_doc"] = ""
            else:
                context["experiment_doc"] = read_truncated(doc, CONTEXT_LIMITS["experiment_doc"])
            task = tasks[role].format(slug=experiment.slug, hypothesis=experiment.hypothesis)
            _, extracted = self.spawn(role, experiment.slug, root, task, context)
            _ = ingest_structured_output(conn, experiment.id, extracted.output)
            update_experiment_status(conn, experiment.id, target)

        return handler

    def _verify(self, conn: sqlite3.Connection, experiment: ExperimentRecord, root: Path) -> None:
        if experiment.status != ExperimentStatus.VERIFYING:
            _ = transition(experiment.status, ExperimentStatus.VERIFYING)
            update_experiment_status(conn, experiment.id, ExperimentStatus.VERIFYING)

        context = self._base_context(conn, experiment, root)
        context["doubts"] = [d.model_dump(mode="json") for d in get_doubts_by_experiment(conn, experiment.id)]
        context["challenges"] = [
            c.model_dump(mode="json") for c in get_challenges_by_experiment(conn, experiment.id)
        ]
        context["metrics"] = {
            phase: [
                {"fixture": m.fixture, "metric": m.metric_name, "value": m.metric_value}
                for m in get_metrics_by_experiment_and_phase(conn, experiment.id, phase)
            ]
            for phase in ("before", "after")
        }
        task = (
            f"Verify experiment {experiment.slug}: {experiment.hypothesis}. Grade each "
            "component sound, good, weak or rejected, and resolve each doubt by id."
        )
        _, extracted = self.spawn("verifier", experiment.slug, root, task, context)
        _ = ingest_structured_output(conn, experiment.id, extracted.output)
        update_experiment_status(conn, experiment.id, ExperimentStatus.VERIFIED)

    def _compress(self, conn: sqlite3.Connection, experiment: ExperimentRecord, root: Path) -> None:
        synthesis_path = root / "docs" / "synthesis" / "current.md"
        before = synthesis_path.read_text() if synthesis_path.exists() else ""
        task = (
            "Compress the project synthesis: fold in what this experiment established, "
            "drop superseded content, and report new dead ends and fragility changes."
        )
        _, extracted = self.spawn(
            "compressor", experiment.slug, root, task, self._base_context(conn, experiment, root)
        )
        report = extracted.output.compression_report if extracted.output is not None else None
        after = before
        if report is not None and report.synthesis_delta:
            synthesis_path.parent.mkdir(parents=True, exist_ok=True)
            after = f"{before.rstrip()}\n\n{report.synthesis_delta}\n".lstrip()
            _ = synthesis_path.write_text(after)
        record_compression(conn, get_sessions_since_compression(conn), len(before), len(after))


class CommandSynthesiser:
    """Runs the configured ``synthesiser`` worker to write builder guidance."""

    def __init__(self, executor: CommandStageExecutor) -> None:
        self.executor = executor

    def synthesise(
        self,
        experiment: ExperimentRecord,
        verifications: Sequence[VerificationRecord],
        confirmed_doubts: Sequence[DoubtRecord],
        root: Path,
    ) -> str:
        context: dict[str, object] = {
            "experiment": experiment.model_dump(mode="json"),
            "verification_report": [v.model_dump(mode="json") for v in verifications],
            "confirmed_doubts": [d.model_dump(mode="json") for d in confirmed_doubts],
        }
        task = (
            "Synthesise the verification report and confirmed doubts into specific, "
            "actionable guidance for the builder's next attempt. Mark approaches that "
            "cannot work as '[DEAD-APPROACH] approach: reason'."
        )
        result, _ = self.executor.spawn("synthesiser", experiment.slug, root, task, context)
        return result.output
