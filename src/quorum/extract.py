# Copyright (c) Syntropy Systems
"""Tiered extraction of structured records from worker output.

Worker agents are asked to embed a ``<!-- quorum-json ... -->`` block in their
output, but they do not always manage it. Extraction therefore tries, in
order:

1. the exact JSON block,
2. role-aware regular expressions over the prose,
3. an optional external interpreter (small model behind HTTP).

The first tier that yields usable data wins; the result records which tier
that was. Failure at every tier is reported as "no data", never raised.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from pydantic import ValidationError

from quorum.models.output import (
    AbandonOutput,
    DecisionOutput,
    DoubtOutput,
    GradeOutput,
    StructuredOutput,
)

if TYPE_CHECKING:
    from quorum.interpreter import Interpreter

logger = logging.getLogger(__name__)

INTERPRETER_MAX_CHARS = 8000
REGEX_JUSTIFICATION = "Extracted via regex, review"

_BLOCK_RE = re.compile(r"<!--\s*quorum-json\s*\n?([\s\S]*?)-->")

_LEVELS = "proof|test|strong_consensus|consensus|analogy|judgment"
_DECISION_MARKER_RE = re.compile(
    r"(?:^|\n)\s*[-*]\s*\*?\*?(?:Decision|DECISION)\*?\*?:\s*(.+?)(?:\n|$)"
    rf".*?(?:Evidence|EVIDENCE|Level):\s*({_LEVELS})",
    re.IGNORECASE,
)
_INLINE_TAG_RE = re.compile(rf"\[({_LEVELS})\]\s*(.+?)(?:\n|$)", re.IGNORECASE)

_GRADE_RE = re.compile(
    r"^\s*(?:[-*]\s*)?\*{0,2}([^\n:*][^\n:]*?)\*{0,2}\s*[:–—]\s*"
    r"\*{0,2}(sound|good|weak|rejected)\*{0,2}\s*\.?\s*$",
    re.IGNORECASE | re.MULTILINE,
)

_DOUBT_RE = re.compile(
    r"\b(?:Doubt|DOUBT|Claim doubted|CLAIM)\s*(?:\d+)?[:.]?\s*(.+?)(?:\n|$)"
    r"[\s\S]*?(?:Severity|SEVERITY)\s*[:=]\s*(minor|moderate|critical)",
    re.IGNORECASE,
)

_ABANDON_TAG_RE = re.compile(r"^\s*\[abandon\]\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE)
_STRUCTURAL_RE = re.compile(
    r"^\s*(?:[-*]\s*)?structural constraint\s*:\s*(.+?)\s*$",
    re.IGNORECASE | re.MULTILINE,
)
_HYPOTHESIS_INVALID_RE = re.compile(r"HYPOTHESIS INVALID:\s*(.+?)\s*(?:\n|$)")

EXTRACTION_SCHEMA = """{
  "decisions": [{ "description": "string", "evidence_level": "proof|test|strong_consensus|consensus|analogy|judgment", "justification": "string" }],
  "grades": [{ "component": "string", "grade": "sound|good|weak|rejected", "provenance_intact": true, "content_correct": true, "notes": "string" }],
  "doubts": [{ "claim_doubted": "string", "evidence_level_of_claim": "string", "evidence_for_doubt": "string", "severity": "minor|moderate|critical" }],
  "guidance": "string (actionable builder guidance)",
  "doubt_resolutions": [{ "doubt_id": 0, "resolution": "confirmed|dismissed|inconclusive" }]
}"""

_ROLE_SCHEMAS = {
    "builder": '{"decisions": [{"description": "string", "evidence_level": "proof|test|strong_consensus|consensus|analogy|judgment", "justification": "string"}]}',
    "critic": '{"doubts": [{"claim_doubted": "string", "evidence_level_of_claim": "string", "evidence_for_doubt": "string", "severity": "minor|moderate|critical"}]}',
    "adversary": '{"challenges": [{"description": "string", "reasoning": "string"}]}',
    "verifier": '{"grades": [{"component": "string", "grade": "sound|good|weak|rejected", "provenance_intact": true, "content_correct": true, "notes": "string"}], "doubt_resolutions": [{"doubt_id": 0, "resolution": "confirmed|dismissed|inconclusive"}]}',
    "gatekeeper": '{"gate_decision": "approve|reject|flag", "reason": "string", "stale_references": ["string"], "overlapping_dead_ends": [0]}',
    "reframer": '{"reframe": {"decomposition": "string", "divergences": ["string"], "recommendation": "string"}}',
    "scout": '{"findings": [{"approach": "string", "source": "string", "relevance": "string", "contradicts_current": true}]}',
    "compressor": '{"compression_report": {"synthesis_delta": "string", "new_dead_ends": ["string"], "fragility_changes": ["string"]}}',
    "diagnostician": '{"diagnosis": {"root_causes": ["string"], "patterns": ["string"], "evidence_gaps": ["string"], "investigation_directions": ["string"]}}',
}

ROLE_REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "builder": ("decisions",),
    "critic": ("doubts",),
    "adversary": ("challenges",),
    "verifier": ("grades",),
    "gatekeeper": ("gate_decision",),
    "reframer": ("reframe",),
    "scout": ("findings",),
    "compressor": ("compression_report",),
    "diagnostician": ("diagnosis",),
}


@dataclass(frozen=True)
class ExtractionResult:
    """Outcome of the tier chain. tier is None when nothing was extracted."""

    tier: Optional[int]
    output: Optional[StructuredOutput]

    @property
    def ok(self) -> bool:
        return self.output is not None


def get_extraction_schema(role: str) -> str:
    """Get the JSON shape a role is expected to produce."""
    return _ROLE_SCHEMAS.get(role, EXTRACTION_SCHEMA)


def validate_for_role(role: str, output: StructuredOutput) -> tuple[bool, list[str]]:
    """Check that the fields a role must produce are present and non-empty.

    Returns (valid, missing field names). Unknown roles are always valid.
    """
    required = ROLE_REQUIRED_FIELDS.get(role, ())
    missing = [name for name in required if not getattr(output, name, None)]
    return len(missing) == 0, missing


def extract_json_block(text: str) -> Optional[str]:
    """Return the payload of the first quorum-json block, stripped."""
    match = _BLOCK_RE.search(text)
    if match is None:
        return None
    return match.group(1).strip()


def parse_structured(payload: str) -> Optional[StructuredOutput]:
    """Parse a JSON string into StructuredOutput, or None if it is unusable."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    try:
        return StructuredOutput.model_validate(data)
    except ValidationError:
        return None


def _extract_abandon(text: str) -> Optional[AbandonOutput]:
    tag = _ABANDON_TAG_RE.search(text)
    if tag is not None:
        constraint = _STRUCTURAL_RE.search(text, tag.end())
        if constraint is not None:
            return AbandonOutput(
                reason=tag.group(1).strip(),
                structural_constraint=constraint.group(1).strip(),
            )

    invalid = _HYPOTHESIS_INVALID_RE.search(text)
    if invalid is not None:
        reason = invalid.group(1).strip()
        return AbandonOutput(reason=reason, structural_constraint=reason)
    return None


def extract_via_patterns(role: str, text: str) -> StructuredOutput:
    """Scan prose for decisions, grades, doubts and builder abandon markers.

    Always returns a result; check ``has_data()`` to see whether anything
    matched.
    """
    decisions: list[DecisionOutput] = []
    for match in _DECISION_MARKER_RE.finditer(text):
        decisions.append(
            DecisionOutput(
                description=match.group(1).strip(),
                evidence_level=match.group(2).lower().strip(),
                justification=REGEX_JUSTIFICATION,
            )
        )
    for match in _INLINE_TAG_RE.finditer(text):
        description = match.group(2).strip()
        if any(d.description == description for d in decisions):
            continue
        decisions.append(
            DecisionOutput(
                description=description,
                evidence_level=match.group(1).lower(),
                justification=REGEX_JUSTIFICATION,
            )
        )

    grades: list[GradeOutput] = []
    for match in _GRADE_RE.finditer(text):
        component = match.group(1).strip()
        if any(g.component == component for g in grades):
            continue
        grades.append(GradeOutput(component=component, grade=match.group(2).lower()))

    doubts = [
        DoubtOutput(
            claim_doubted=match.group(1).strip(),
            evidence_level_of_claim="unknown",
            evidence_for_doubt="Extracted via regex, review original document",
            severity=match.group(2).lower(),
        )
        for match in _DOUBT_RE.finditer(text)
    ]

    abandon = _extract_abandon(text) if role == "builder" else None

    return StructuredOutput(
        decisions=decisions or None,
        grades=grades or None,
        doubts=doubts or None,
        abandon=abandon,
    )


# --- Tier chain ---

Tier = Callable[[str, str], Optional[StructuredOutput]]


def _tier_json_block(role: str, text: str) -> Optional[StructuredOutput]:
    payload = extract_json_block(text)
    if payload is None:
        logger.warning("No quorum-json block found in %s output. Falling back.", role)
        return None
    parsed = parse_structured(payload)
    if parsed is None:
        logger.warning("Malformed JSON in quorum-json block for %s. Falling back.", role)
        return None
    if role == "builder" and parsed.abandon is None:
        # Abandon markers live in prose even when the block is well formed.
        abandon = _extract_abandon(text)
        if abandon is not None:
            parsed = parsed.model_copy(update={"abandon": abandon})
    if not parsed.has_data():
        logger.warning("Empty quorum-json block in %s output. Falling back.", role)
        return None
    return parsed


def _tier_patterns(role: str, text: str) -> Optional[StructuredOutput]:
    result = extract_via_patterns(role, text)
    if not result.has_data():
        logger.warning("Pattern fallback found nothing for %s.", role)
        return None
    logger.warning("Used pattern fallback for %s. Review extracted data.", role)
    return result


def _make_interpreter_tier(interpreter: Interpreter) -> Tier:
    def _tier_interpreter(role: str, text: str) -> Optional[StructuredOutput]:
        truncated = text
        if len(text) > INTERPRETER_MAX_CHARS:
            truncated = text[:INTERPRETER_MAX_CHARS] + "\n[truncated]"
        try:
            raw = interpreter.interpret(role, truncated, get_extraction_schema(role))
        except Exception as e:  # noqa: BLE001
            logger.warning("Interpreter extraction failed for %s: %s", role, e)
            return None
        if not raw:
            return None
        parsed = parse_structured(raw.strip())
        if parsed is None or not parsed.has_data():
            return None
        return parsed

    return _tier_interpreter


def extract_structured_data(
    role: str,
    text: str,
    interpreter: Optional[Interpreter] = None,
) -> ExtractionResult:
    """Run the tier chain over a worker's output.

    Args:
        role: Producing worker role (builder, critic, verifier, ...)
        text: Raw worker output
        interpreter: Optional fallback for the last tier

    Returns:
        The first tier's result that carried data, tagged with its tier number.

    """
    tiers: list[Tier] = [_tier_json_block, _tier_patterns]
    if interpreter is not None:
        tiers.append(_make_interpreter_tier(interpreter))

    for number, tier in enumerate(tiers, start=1):
        output = tier(role, text)
        if output is not None:
            return ExtractionResult(tier=number, output=output)

    logger.error(
        "Failed to extract structured data from %s output. Manual review required.",
        role,
    )
    return ExtractionResult(tier=None, output=None)
