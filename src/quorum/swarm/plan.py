# Copyright (c) Syntropy Systems
"""Hypothesis planning for a swarm run."""
from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Optional

from pydantic import Field, ValidationError

from quorum.db import list_dead_ends
from quorum.extract import extract_json_block
from quorum.models.base import QuorumBaseModel
from quorum.stages import CONTEXT_LIMITS, read_truncated

if TYPE_CHECKING:
    import sqlite3
    from pathlib import Path

    from quorum.stages import CommandStageExecutor

logger = logging.getLogger(__name__)

MIN_HYPOTHESIS_LENGTH = 10


class PlanOutput(QuorumBaseModel):
    """Planner verdict embedded in its quorum-json block."""

    goal_met: bool = False
    hypotheses: list[str] = Field(default_factory=list)


def parse_plan(text: str) -> Optional[PlanOutput]:
    """Read the planner's quorum-json block, or None if it is missing or invalid."""
    payload = extract_json_block(text)
    if payload is None:
        return None
    try:
        return PlanOutput.model_validate(json.loads(payload))
    except (json.JSONDecodeError, ValidationError):
        return None


def plan_hypotheses(
    goal: str,
    count: int,
    root: Path,
    conn: sqlite3.Connection,
    executor: CommandStageExecutor,
) -> list[str]:
    """Ask the ``planner`` worker for diverse hypotheses.

    Returns an empty list when the planner says the goal is already met, and
    the goal itself as the single hypothesis when the planner's answer
    cannot be read.
    """
    dead_ends = list_dead_ends(conn)
    dead_end_lines = "\n".join(
        f"- [{d.category}] {d.approach}: {d.why_failed} [constraint: {d.structural_constraint}]"
        for d in dead_ends
    )
    synthesis_dir = root / "docs" / "synthesis"
    task = (
        f"Plan a parallel swarm for this goal: {goal}\n\n"
        "Decide whether the goal has already been met. If not, generate exactly "
        f"{count} diverse hypotheses, each attacking the problem from a different "
        "angle and none repeating a structural dead end.\n\n"
        "Your last line must be:\n"
        '<!-- quorum-json {"goal_met": false, "hypotheses": ["...", "..."]} -->'
    )
    context: dict[str, object] = {
        "goal": goal,
        "synthesis": read_truncated(synthesis_dir / "current.md", CONTEXT_LIMITS["synthesis"]),
        "fragility": read_truncated(synthesis_dir / "fragility.md", CONTEXT_LIMITS["fragility"]),
        "dead_ends": dead_end_lines,
    }
    result, _ = executor.spawn("planner", "swarm-plan", root, task, context)

    plan = parse_plan(result.output)
    if plan is None:
        logger.warning("Planner did not return structured hypotheses; using the goal.")
        return [goal]
    if plan.goal_met:
        return []
    hypotheses = [h for h in plan.hypotheses if len(h) > MIN_HYPOTHESIS_LENGTH]
    return hypotheses[:count] or [goal]
