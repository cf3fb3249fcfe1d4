# Copyright (c) Syntropy Systems
"""Before/after metric comparison and the regression gate."""
from __future__ import annotations

import json
import logging
import math
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Union

from quorum.db import get_metrics_by_experiment_and_phase, insert_metric
from quorum.errors import MetricsCommandError

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Mapping, Sequence
    from pathlib import Path

    from quorum.config import FixtureConfig, QuorumConfig
    from quorum.models.db import ExperimentRecord

logger = logging.getLogger(__name__)

METRICS_TIMEOUT = 60.0


@dataclass(frozen=True)
class MetricComparison:
    """One (fixture, metric) pair compared across phases."""

    fixture: str
    metric: str
    before: float
    after: float
    delta: float
    regression: bool
    gate: bool = False


@dataclass(frozen=True)
class ParsedMetric:
    """One value read from the metrics command output."""

    fixture: str
    metric_name: str
    metric_value: float


def is_regression(
    before: float,
    after: float,
    direction: str,
    target: Optional[float] = None,
) -> bool:
    """Check whether moving from before to after is a regression.

    Unknown directions never regress, and closer_to_gt without a target
    cannot be judged so it never regresses either.
    """
    if direction == "lower_is_better":
        return after > before
    if direction == "higher_is_better":
        return after < before
    if direction == "closer_to_gt":
        if target is None:
            return False
        return abs(after - target) > abs(before - target)
    return False


def is_gate_fixture(
    fixtures: Union[Mapping[str, FixtureConfig], Sequence[str]],
    name: str,
) -> bool:
    """Check whether a fixture blocks merges on regression.

    The legacy list form carries no per-fixture flags and never gates.
    """
    if isinstance(fixtures, (list, tuple)):
        return False
    fixture = fixtures.get(name)  # type: ignore[union-attr]
    return bool(fixture is not None and fixture.gate)


def compare_metrics(
    conn: sqlite3.Connection,
    experiment_id: int,
    config: QuorumConfig,
) -> list[MetricComparison]:
    """Compare every tracked metric present in both phases."""
    before = get_metrics_by_experiment_and_phase(conn, experiment_id, "before")
    after = get_metrics_by_experiment_and_phase(conn, experiment_id, "after")

    before_values = {(m.fixture, m.metric_name): m.metric_value for m in before}
    after_values = {(m.fixture, m.metric_name): m.metric_value for m in after}

    # Fixtures in first-seen order across both phases
    fixtures = list(dict.fromkeys(m.fixture for m in [*before, *after]))

    comparisons: list[MetricComparison] = []
    for fixture in fixtures:
        for metric, tracked in config.metrics.tracked.items():
            key = (fixture, metric)
            if key not in before_values or key not in after_values:
                continue
            b = before_values[key]
            a = after_values[key]
            comparisons.append(
                MetricComparison(
                    fixture=fixture,
                    metric=metric,
                    before=b,
                    after=a,
                    delta=a - b,
                    regression=is_regression(b, a, tracked.direction, tracked.target),
                    gate=is_gate_fixture(config.metrics.fixtures, fixture),
                )
            )
    return comparisons


def check_gate_violations(comparisons: Sequence[MetricComparison]) -> list[MetricComparison]:
    """Return the comparisons that must block a merge."""
    return [c for c in comparisons if c.gate and c.regression]


def parse_metrics_output(text: str) -> list[ParsedMetric]:
    """Parse ``{"fixtures": {name: {metric: value}}}`` into metric tuples.

    Non-numeric values (booleans included), non-finite numbers and integers
    too large for a float are skipped.

    Raises:
        MetricsCommandError: the text is not valid JSON.

    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        msg = f"Metrics output is not valid JSON: {e}"
        raise MetricsCommandError(msg) from e

    results: list[ParsedMetric] = []
    if not isinstance(data, dict):
        return results
    fixtures = data.get("fixtures")
    if not isinstance(fixtures, dict):
        return results

    for fixture, metrics in fixtures.items():
        if not isinstance(metrics, dict):
            continue
        for name, value in metrics.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            try:
                number = float(value)
            except OverflowError:
                continue
            if not math.isfinite(number):
                continue
            results.append(ParsedMetric(str(fixture), str(name), number))
    return results


def _run_hook(command: str, cwd: Path) -> None:
    try:
        _ = subprocess.run(  # noqa: S602
            command,
            shell=True,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=METRICS_TIMEOUT,
            check=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("Build hook %r failed: %s", command, e)


def capture_metrics(
    conn: sqlite3.Connection,
    experiment: ExperimentRecord,
    phase: str,
    config: QuorumConfig,
    cwd: Path,
) -> list[ParsedMetric]:
    """Run the metrics command and store its values for one phase.

    The command and the build hooks are shell strings, run from cwd.

    Raises:
        MetricsCommandError: no command configured, the command failed, or
            its output could not be parsed.

    """
    command = config.metrics.command
    if not command:
        msg = "No metrics command configured (metrics.command in config.yaml)"
        raise MetricsCommandError(msg)

    if config.build.pre_measure:
        _run_hook(config.build.pre_measure, cwd)

    try:
        proc = subprocess.run(  # noqa: S602
            command,
            shell=True,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=METRICS_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        msg = f"Metrics command failed: {e}"
        raise MetricsCommandError(msg) from e

    if proc.returncode != 0:
        msg = f"Metrics command exited with {proc.returncode}: {proc.stderr.strip()}"
        raise MetricsCommandError(msg)

    parsed = parse_metrics_output(proc.stdout.strip())
    for m in parsed:
        insert_metric(conn, experiment.id, phase, m.fixture, m.metric_name, m.metric_value)

    if config.build.post_measure:
        _run_hook(config.build.post_measure, cwd)

    return parsed
