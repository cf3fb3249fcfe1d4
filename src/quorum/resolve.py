# Copyright (c) Syntropy Systems
"""Resolution: turn verification grades and metrics into the next status."""
from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Optional, Protocol

from quorum.db import (
    get_confirmed_doubts,
    get_verifications_by_experiment,
    insert_dead_end,
    insert_verification,
    set_experiment_grade,
    store_builder_guidance,
    transaction,
    update_experiment_status,
)
from quorum.errors import QuorumError
from quorum.extract import extract_structured_data
from quorum.machine import ExperimentStatus, transition
from quorum.metrics import check_gate_violations, compare_metrics

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Sequence
    from pathlib import Path

    from quorum.config import QuorumConfig
    from quorum.models.db import DoubtRecord, ExperimentRecord, Grade, VerificationRecord
    from quorum.report import Reporter

logger = logging.getLogger(__name__)

GUIDANCE_MAX_CHARS = 12_000

# Worst first
GRADE_ORDER: tuple[Grade, ...] = ("rejected", "weak", "good", "sound")

_ITERATION_RE = re.compile(r"### Iteration (\d+)")
_SECTION_SPLIT_RE = re.compile(r"(?=^### Iteration \d+)", re.MULTILINE)
_DEAD_APPROACH_RE = re.compile(r"\[DEAD-APPROACH\]\s*(.+?):\s*(.+)")


class Synthesiser(Protocol):
    """Produces builder guidance from a weak verification."""

    def synthesise(
        self,
        experiment: ExperimentRecord,
        verifications: Sequence[VerificationRecord],
        confirmed_doubts: Sequence[DoubtRecord],
        root: Path,
    ) -> str:
        ...


def accumulate_guidance(existing: Optional[str], new_guidance: str) -> str:
    """Prepend a new guidance iteration, keeping earlier ones below it.

    Older iterations are dropped first once the text exceeds
    GUIDANCE_MAX_CHARS.
    """
    numbers = [int(n) for n in _ITERATION_RE.findall(existing or "")]
    iteration = max(numbers, default=0) + 1

    new_block = f"### Iteration {iteration} (latest)\n{new_guidance}"
    if not existing:
        return new_block

    cleaned = existing.replace(" (latest)", "")
    accumulated = f"{new_block}\n\n---\n\n{cleaned}"
    if len(accumulated) <= GUIDANCE_MAX_CHARS:
        return accumulated

    result = ""
    for section in _SECTION_SPLIT_RE.split(accumulated):
        if result and len(result) + len(section) > GUIDANCE_MAX_CHARS:
            result += "\n\n[Earlier iterations truncated]"
            break
        result += section
    return result


def parse_dead_approaches(output: str) -> list[tuple[str, str]]:
    """Find ``[DEAD-APPROACH] approach: reason`` lines."""
    return [
        (m.group(1).strip(), m.group(2).strip())
        for m in _DEAD_APPROACH_RE.finditer(output)
    ]


def worst_grade(verifications: Sequence[VerificationRecord]) -> Grade:
    """Pick the lowest grade present.

    Raises:
        ValueError: no verifications were given.

    """
    if not verifications:
        msg = "Cannot determine grade from an empty verification set"
        raise ValueError(msg)
    present = {v.grade for v in verifications}
    for grade in GRADE_ORDER:
        if grade in present:
            return grade
    return "sound"


def grade_guidance(verifications: Sequence[VerificationRecord]) -> str:
    """Builder guidance derived from the grades alone."""
    lines = ["Address these verification findings before the next attempt:"]
    for v in verifications:
        if v.grade in ("weak", "rejected"):
            lines.append(f"- {v.component} ({v.grade}): {v.notes or 'no notes'}")
    if len(lines) == 1:
        lines.append("- Verification was weak without component detail; strengthen evidence.")
    return "\n".join(lines)


def append_to_fragility_map(root: Path, slug: str, gaps: str) -> None:
    path = root / "docs" / "synthesis" / "fragility.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    content = path.read_text() if path.exists() else ""
    path.write_text(f"{content}\n## From experiment: {slug}\n{gaps}\n")


def _synthesise(
    synthesiser: Optional[Synthesiser],
    experiment: ExperimentRecord,
    verifications: Sequence[VerificationRecord],
    confirmed: Sequence[DoubtRecord],
    root: Path,
) -> tuple[str, str]:
    """Return (guidance, raw synthesiser output)."""
    if synthesiser is None:
        return grade_guidance(verifications), ""
    try:
        raw = synthesiser.synthesise(experiment, verifications, confirmed, root)
    except QuorumError as e:
        logger.warning("Synthesiser failed for %s: %s", experiment.slug, e)
        return grade_guidance(verifications), ""
    extracted = extract_structured_data("synthesiser", raw)
    if extracted.output is not None and extracted.output.guidance:
        return extracted.output.guidance, raw
    return (raw.strip() or grade_guidance(verifications)), raw


def resolve_db_only(
    conn: sqlite3.Connection,
    experiment: ExperimentRecord,
    config: QuorumConfig,
    root: Path,
    synthesiser: Optional[Synthesiser] = None,
    reporter: Optional[Reporter] = None,
) -> Grade:
    """Grade a verified experiment and move it on, without touching git.

    sound/good merge, weak cycles back to building with guidance, rejected
    dead-ends. A gate-fixture regression turns a passing grade into weak.

    Returns:
        The effective grade.

    """
    _ = transition(experiment.status, ExperimentStatus.RESOLVED)

    def warn(message: str) -> None:
        if reporter is not None:
            reporter.warn(message, experiment.slug)

    def info(message: str) -> None:
        if reporter is not None:
            reporter.info(message, experiment.slug)

    verifications = get_verifications_by_experiment(conn, experiment.id)
    if not verifications:
        warn(f"No verification records for {experiment.slug}. Defaulting to weak.")
        _ = insert_verification(
            conn, experiment.id, "auto-default", "weak",
            notes="No structured verification output. Auto-defaulted to weak.",
        )
        verifications = get_verifications_by_experiment(conn, experiment.id)

    grade = worst_grade(verifications)
    violations = check_gate_violations(compare_metrics(conn, experiment.id, config))

    if violations and grade in ("sound", "good"):
        warn("Gate fixture regression detected, blocking merge:")
        for v in violations:
            warn(f"  {v.fixture} / {v.metric}: {v.before} -> {v.after} ({v.delta:+g})")
        guidance = (
            "Gate fixture regression blocks merge. Fix these regressions before re-attempting:\n"
            + "\n".join(f"- {v.fixture} / {v.metric}: was {v.before}, now {v.after}" for v in violations)
        )
        update_experiment_status(conn, experiment.id, ExperimentStatus.RESOLVED)
        _ = transition(ExperimentStatus.RESOLVED, ExperimentStatus.BUILDING)
        with transaction(conn):
            store_builder_guidance(
                conn, experiment.id, accumulate_guidance(experiment.builder_guidance, guidance)
            )
            set_experiment_grade(conn, experiment.id, "weak")
            update_experiment_status(conn, experiment.id, ExperimentStatus.BUILDING)
        warn(f"Experiment {experiment.slug} cycling back: gate fixture(s) regressed.")
        return "weak"

    update_experiment_status(conn, experiment.id, ExperimentStatus.RESOLVED)

    if grade in ("sound", "good"):
        if grade == "good":
            gaps = "\n".join(
                f"- **{v.component}**: {v.notes or 'minor gaps'}"
                for v in verifications
                if v.grade == "good"
            )
            append_to_fragility_map(root, experiment.slug, gaps)
        _ = transition(ExperimentStatus.RESOLVED, ExperimentStatus.MERGED)
        with transaction(conn):
            set_experiment_grade(conn, experiment.id, grade)
            update_experiment_status(conn, experiment.id, ExperimentStatus.MERGED)
        if reporter is not None:
            reporter.success(
                f"Experiment {experiment.slug} resolved ({grade}), git merge deferred.",
                experiment.slug,
            )

    elif grade == "weak":
        confirmed = get_confirmed_doubts(conn, experiment.id)
        guidance, raw = _synthesise(synthesiser, experiment, verifications, confirmed, root)
        accumulated = accumulate_guidance(experiment.builder_guidance, guidance)
        rejected = [v for v in verifications if v.grade == "rejected"]
        dead_approaches = parse_dead_approaches(raw)

        _ = transition(ExperimentStatus.RESOLVED, ExperimentStatus.BUILDING)
        with transaction(conn):
            store_builder_guidance(conn, experiment.id, accumulated)
            set_experiment_grade(conn, experiment.id, grade)
            update_experiment_status(conn, experiment.id, ExperimentStatus.BUILDING)
            for rc in rejected:
                _ = insert_dead_end(
                    conn,
                    experiment.id,
                    f"{rc.component} (iteration within {experiment.slug})",
                    rc.notes or "rejected by verifier",
                    f"Component {rc.component} rejected: {rc.notes or 'approach does not work'}",
                    experiment.sub_type,
                    "structural",
                )
            for approach, reason in dead_approaches:
                _ = insert_dead_end(
                    conn, experiment.id, approach, reason, reason, experiment.sub_type, "structural"
                )
        if rejected:
            info(f"Registered {len(rejected)} component-level dead-end(s) from weak verification.")
        if dead_approaches:
            info(f"Registered {len(dead_approaches)} dead approach(es) from synthesiser.")
        warn(f"Experiment {experiment.slug} cycling back (weak). Guidance accumulated.")

    else:
        why_failed = "; ".join(v.notes or "rejected" for v in verifications if v.grade == "rejected")
        _ = transition(ExperimentStatus.RESOLVED, ExperimentStatus.DEAD_END)
        with transaction(conn):
            _ = insert_dead_end(
                conn,
                experiment.id,
                experiment.hypothesis or experiment.slug,
                why_failed,
                f"Approach rejected: {why_failed}",
                experiment.sub_type,
                "structural",
            )
            set_experiment_grade(conn, experiment.id, grade)
            update_experiment_status(conn, experiment.id, ExperimentStatus.DEAD_END)
        info(f"Experiment {experiment.slug} dead-ended (rejected). Constraint recorded.")

    return grade
