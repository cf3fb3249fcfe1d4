# Copyright (c) Syntropy Systems
"""Tests for tiered extraction of worker output."""

from typing import Optional

from quorum.extract import (
    INTERPRETER_MAX_CHARS,
    extract_json_block,
    extract_structured_data,
    extract_via_patterns,
    validate_for_role,
)
from quorum.interpreter import InterpreterError
from quorum.models.output import StructuredOutput


class FakeInterpreter:
    """Returns a canned answer and remembers what it was asked."""

    def __init__(self, answer: Optional[str] = None, error: Optional[Exception] = None) -> None:
        self.answer = answer
        self.error = error
        self.calls: list[tuple[str, str]] = []

    def interpret(self, role: str, text: str, schema: str) -> Optional[str]:
        self.calls.append((role, text))
        if self.error is not None:
            raise self.error
        return self.answer


class TestJsonBlock:
    """Tests for tier 1."""

    def test_well_formed_block(self) -> None:
        text = (
            "Built the thing.\n"
            '<!-- quorum-json {"decisions": [{"description": "Use mesh repair", '
            '"evidence_level": "test", "justification": "passes fixtures"}]} -->'
        )
        result = extract_structured_data("builder", text)

        assert result.tier == 1
        assert result.output is not None
        assert result.output.decisions is not None
        assert [d.description for d in result.output.decisions] == ["Use mesh repair"]
        assert result.output.decisions[0].evidence_level == "test"

    def test_block_on_own_line(self) -> None:
        text = '<!-- quorum-json\n{"guidance": "try again"}\n-->'
        assert extract_json_block(text) == '{"guidance": "try again"}'

    def test_malformed_json_falls_through_to_patterns(self) -> None:
        text = (
            '<!-- quorum-json {"decisions": [oops -->\n'
            "[judgment] Keep the old tolerance\n"
        )
        result = extract_structured_data("builder", text)

        assert result.tier == 2
        assert result.output is not None
        assert result.output.decisions is not None
        assert result.output.decisions[0].evidence_level == "judgment"

    def test_malformed_json_with_nothing_else_reports_no_data(self) -> None:
        result = extract_structured_data("builder", "<!-- quorum-json {nope -->")

        assert result.tier is None
        assert result.output is None
        assert result.ok is False

    def test_empty_block_falls_through_to_patterns(self) -> None:
        text = "<!-- quorum-json {} -->\n[judgment] Use a cache\n[test] Suite passes\n"
        result = extract_structured_data("builder", text)

        assert result.tier == 2
        assert result.output is not None
        assert result.output.decisions is not None
        assert [d.description for d in result.output.decisions] == ["Use a cache", "Suite passes"]

    def test_block_without_usable_fields_reports_no_data(self) -> None:
        result = extract_structured_data("critic", '<!-- quorum-json {"doubts": [], "mood": "fine"} -->')

        assert result.tier is None
        assert result.ok is False

    def test_resolutions_alone_are_usable(self) -> None:
        text = '<!-- quorum-json {"doubt_resolutions": [{"doubt_id": 4, "resolution": "dismissed"}]} -->'
        result = extract_structured_data("verifier", text)

        assert result.tier == 1
        assert result.output is not None
        assert result.output.doubt_resolutions is not None
        assert result.output.doubt_resolutions[0].doubt_id == 4

    def test_builder_prose_abandon_joins_block(self) -> None:
        text = (
            "HYPOTHESIS INVALID: the kernel has no hook\n"
            '<!-- quorum-json {"decisions": [{"description": "stop", "evidence_level": "proof"}]} -->'
        )
        result = extract_structured_data("builder", text)

        assert result.tier == 1
        assert result.output is not None
        assert result.output.abandon is not None
        assert result.output.abandon.reason == "the kernel has no hook"


class TestPatterns:
    """Tests for tier 2."""

    def test_tagged_decisions_in_source_order(self) -> None:
        text = (
            "[judgment] Prefer the simple heuristic\n"
            "[test] Fixture sig1 passes\n"
            "[analogy] Same trick worked for stitching\n"
        )
        result = extract_structured_data("builder", text)

        assert result.tier == 2
        assert result.output is not None
        assert result.output.decisions is not None
        assert [(d.evidence_level, d.description) for d in result.output.decisions] == [
            ("judgment", "Prefer the simple heuristic"),
            ("test", "Fixture sig1 passes"),
            ("analogy", "Same trick worked for stitching"),
        ]

    def test_grades(self) -> None:
        text = "mesh repair: sound\n- **edge stitching**: weak\n"
        output = extract_via_patterns("verifier", text)

        assert output.grades is not None
        assert [(g.component, g.grade) for g in output.grades] == [
            ("mesh repair", "sound"),
            ("edge stitching", "weak"),
        ]

    def test_doubts(self) -> None:
        text = (
            "Doubt 1: The fixture set is too small\n"
            "Only three shapes were tried.\n"
            "Severity: critical\n"
        )
        output = extract_via_patterns("critic", text)

        assert output.doubts is not None
        assert len(output.doubts) == 1
        assert output.doubts[0].claim_doubted == "The fixture set is too small"
        assert output.doubts[0].severity == "critical"

    def test_doubt_heading_must_start_a_word(self) -> None:
        text = "This is undoubtedly the right tolerance.\nSeverity: minor\n"
        output = extract_via_patterns("critic", text)

        assert output.doubts is None

    def test_abandon_tag_only_for_builder(self) -> None:
        text = (
            "[ABANDON] Tolerance cannot be tightened further\n"
            "Structural constraint: float precision of the kernel\n"
        )
        builder = extract_via_patterns("builder", text)
        critic = extract_via_patterns("critic", text)

        assert builder.abandon is not None
        assert builder.abandon.reason == "Tolerance cannot be tightened further"
        assert builder.abandon.structural_constraint == "float precision of the kernel"
        assert critic.abandon is None

    def test_hypothesis_invalid_only_for_builder(self) -> None:
        text = "HYPOTHESIS INVALID: no such API exists\n"

        builder = extract_structured_data("builder", text)
        verifier = extract_structured_data("verifier", text)

        assert builder.tier == 2
        assert builder.output is not None
        assert builder.output.abandon is not None
        assert verifier.tier is None

    def test_no_matches_has_no_data(self) -> None:
        assert extract_via_patterns("builder", "Nothing structured here.").has_data() is False


class TestInterpreterTier:
    """Tests for tier 3."""

    def test_interpreter_used_when_others_fail(self) -> None:
        interpreter = FakeInterpreter('{"guidance": "narrow the scope"}')
        result = extract_structured_data("synthesiser", "Plain prose only.", interpreter)

        assert result.tier == 3
        assert result.output is not None
        assert result.output.guidance == "narrow the scope"
        assert interpreter.calls == [("synthesiser", "Plain prose only.")]

    def test_interpreter_not_called_when_tier_one_succeeds(self) -> None:
        interpreter = FakeInterpreter('{"guidance": "unused"}')
        result = extract_structured_data(
            "builder", '<!-- quorum-json {"guidance": "from block"} -->', interpreter
        )
        assert result.tier == 1
        assert interpreter.calls == []

    def test_long_text_is_truncated(self) -> None:
        interpreter = FakeInterpreter(None)
        _ = extract_structured_data("builder", "x" * (INTERPRETER_MAX_CHARS + 50), interpreter)

        _, sent = interpreter.calls[0]
        assert sent.endswith("\n[truncated]")
        assert len(sent) == INTERPRETER_MAX_CHARS + len("\n[truncated]")

    def test_interpreter_failure_is_no_data(self) -> None:
        interpreter = FakeInterpreter(error=InterpreterError("connection refused"))
        result = extract_structured_data("builder", "Plain prose only.", interpreter)

        assert result.tier is None
        assert result.output is None

    def test_interpreter_empty_object_is_no_data(self) -> None:
        result = extract_structured_data("builder", "prose", FakeInterpreter("{}"))
        assert result.tier is None

    def test_interpreter_garbage_is_no_data(self) -> None:
        result = extract_structured_data("builder", "prose", FakeInterpreter("not json"))
        assert result.ok is False


class TestValidateForRole:
    """Tests for role-required fields."""

    def test_missing_fields_reported(self) -> None:
        valid, missing = validate_for_role("verifier", StructuredOutput(guidance="x"))
        assert valid is False
        assert missing == ["grades"]

    def test_unknown_role_always_valid(self) -> None:
        assert validate_for_role("planner", StructuredOutput()) == (True, [])
