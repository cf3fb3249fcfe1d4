# Copyright (c) Syntropy Systems
"""SQLite database layer with WAL mode and atomic operations."""
from __future__ import annotations

import contextlib
import math
import sqlite3
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from quorum.errors import (
    ExperimentNotFoundError,
    InvalidTransitionError,
    SessionError,
)
from quorum.machine import TRANSITIONS, ExperimentStatus, is_terminal
from quorum.models.db import (
    ChallengeRecord,
    CircuitBreakerState,
    DeadEndRecord,
    DecisionRecord,
    DoubtRecord,
    ExperimentRecord,
    MetricSnapshot,
    SessionRecord,
    SwarmMemberRecord,
    SwarmRunRecord,
    VerificationRecord,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

# SQL schema for quorum database
SCHEMA = """
-- Experiments (one unit of hypothesis-driven work)
CREATE TABLE IF NOT EXISTS experiments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    slug TEXT UNIQUE NOT NULL,
    branch TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'classified',
    sub_type TEXT,
    hypothesis TEXT,
    grade TEXT CHECK(grade IN ('sound', 'good', 'weak', 'rejected')),
    builder_guidance TEXT,
    depends_on TEXT,  -- slug of prerequisite experiment
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS decisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id INTEGER REFERENCES experiments(id),
    description TEXT NOT NULL,
    evidence_level TEXT NOT NULL CHECK(
        evidence_level IN ('proof', 'test', 'strong_consensus',
                           'consensus', 'analogy', 'judgment')
    ),
    justification TEXT NOT NULL,
    status TEXT DEFAULT 'active',  -- active, overturned, superseded
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id INTEGER REFERENCES experiments(id),
    phase TEXT NOT NULL CHECK(phase IN ('before', 'after')),
    fixture TEXT NOT NULL,
    metric_name TEXT NOT NULL,
    metric_value REAL NOT NULL,
    captured_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    UNIQUE(experiment_id, phase, fixture, metric_name)
);

CREATE TABLE IF NOT EXISTS dead_ends (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id INTEGER REFERENCES experiments(id),
    approach TEXT NOT NULL,
    why_failed TEXT NOT NULL,
    structural_constraint TEXT NOT NULL,
    sub_type TEXT,
    category TEXT DEFAULT 'structural' CHECK(category IN ('structural', 'procedural')),
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS verifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id INTEGER REFERENCES experiments(id),
    component TEXT NOT NULL,
    grade TEXT NOT NULL CHECK(grade IN ('sound', 'good', 'weak', 'rejected')),
    provenance_intact INTEGER,
    content_correct INTEGER,
    notes TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS doubts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id INTEGER REFERENCES experiments(id),
    claim_doubted TEXT NOT NULL,
    evidence_level_of_claim TEXT NOT NULL,
    evidence_for_doubt TEXT NOT NULL,
    severity TEXT NOT NULL CHECK(severity IN ('minor', 'moderate', 'critical')),
    resolution TEXT CHECK(resolution IN ('confirmed', 'dismissed', 'inconclusive')),
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS challenges (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id INTEGER REFERENCES experiments(id),
    description TEXT NOT NULL,
    reasoning TEXT NOT NULL,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    intent TEXT NOT NULL,
    experiment_id INTEGER REFERENCES experiments(id),
    started_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    ended_at TEXT,
    accomplished TEXT,
    unfinished TEXT,
    new_fragility TEXT
);

CREATE TABLE IF NOT EXISTS compressions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_count_since_last INTEGER,
    synthesis_size_before INTEGER,
    synthesis_size_after INTEGER,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

-- Swarm bookkeeping (main project store only)
CREATE TABLE IF NOT EXISTS swarm_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    goal TEXT NOT NULL,
    parallel_count INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'running',  -- running, completed, failed
    total_cost_usd REAL DEFAULT 0,
    best_experiment_slug TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS swarm_members (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    swarm_run_id INTEGER REFERENCES swarm_runs(id),
    experiment_slug TEXT NOT NULL,
    worktree_path TEXT NOT NULL,
    final_status TEXT,
    overall_grade TEXT,
    cost_usd REAL DEFAULT 0,
    error TEXT
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_experiments_status ON experiments(status);
CREATE INDEX IF NOT EXISTS idx_decisions_experiment ON decisions(experiment_id);
CREATE INDEX IF NOT EXISTS idx_metrics_experiment ON metrics(experiment_id, phase);
CREATE INDEX IF NOT EXISTS idx_dead_ends_sub_type ON dead_ends(sub_type);
CREATE INDEX IF NOT EXISTS idx_doubts_experiment ON doubts(experiment_id);
CREATE INDEX IF NOT EXISTS idx_challenges_experiment ON challenges(experiment_id);
CREATE INDEX IF NOT EXISTS idx_swarm_members_run ON swarm_members(swarm_run_id);
"""

TERMINAL_STATUSES = tuple(s.value for s, succ in TRANSITIONS.items() if not succ)


def get_connection(db_path: Path | str) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode for concurrent readers/writers
    - busy_timeout to wait for locks instead of failing immediately
    - Row factory for dict-like access
    - check_same_thread=False so a swarm instance may hand its connection
      to stage executors running on the same worker thread pool
    """
    conn = sqlite3.connect(
        str(db_path), timeout=5.0, isolation_level=None, check_same_thread=False
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path | str) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def open_db(db_path: Path | str) -> sqlite3.Connection:
    """Open a connection, creating the schema if needed."""
    conn = get_connection(db_path)
    conn.executescript(SCHEMA)
    return conn


@contextlib.contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block of writes inside BEGIN IMMEDIATE ... COMMIT."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def utcnow() -> str:
    """Get current UTC time as ISO format string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


# --- Experiment Operations ---

def create_experiment(
    conn: sqlite3.Connection,
    slug: str,
    branch: str,
    hypothesis: Optional[str] = None,
    sub_type: Optional[str] = None,
    depends_on: Optional[str] = None,
) -> ExperimentRecord:
    """Create a new experiment at 'classified' and return it."""
    cursor = conn.execute(
        """
        INSERT INTO experiments (slug, branch, hypothesis, sub_type, depends_on, status)
        VALUES (?, ?, ?, ?, ?, 'classified')
        """,
        (slug, branch, hypothesis, sub_type, depends_on),
    )
    experiment = get_experiment_by_id(conn, cursor.lastrowid)
    if experiment is None:
        raise ExperimentNotFoundError(f"Experiment {slug} vanished after insert")
    return experiment


def get_experiment_by_id(conn: sqlite3.Connection, experiment_id: int) -> Optional[ExperimentRecord]:
    """Get an experiment by ID."""
    row = conn.execute(
        "SELECT * FROM experiments WHERE id = ?",
        (experiment_id,),
    ).fetchone()
    return ExperimentRecord.model_validate(dict(row)) if row else None


def get_experiment_by_slug(conn: sqlite3.Connection, slug: str) -> Optional[ExperimentRecord]:
    """Get an experiment by slug."""
    row = conn.execute(
        "SELECT * FROM experiments WHERE slug = ?",
        (slug,),
    ).fetchone()
    return ExperimentRecord.model_validate(dict(row)) if row else None


def update_experiment_status(
    conn: sqlite3.Connection,
    experiment_id: int,
    status: ExperimentStatus | str,
) -> None:
    """
    Write an experiment's status in a single statement.

    A terminal status is never overwritten; writing the same terminal
    status again is a no-op.
    """
    new_status = ExperimentStatus(status)
    placeholders = ", ".join("?" for _ in TERMINAL_STATUSES)
    cursor = conn.execute(
        f"""
        UPDATE experiments SET status = ?, updated_at = ?
        WHERE id = ? AND (status NOT IN ({placeholders}) OR status = ?)
        """,  # noqa: S608
        (new_status.value, utcnow(), experiment_id, *TERMINAL_STATUSES, new_status.value),
    )
    if cursor.rowcount == 0:
        current = get_experiment_by_id(conn, experiment_id)
        if current is None:
            raise ExperimentNotFoundError(f"Experiment #{experiment_id} not found")
        if is_terminal(current.status):
            raise InvalidTransitionError(current.status.value, new_status.value, ())


def set_experiment_grade(conn: sqlite3.Connection, experiment_id: int, grade: str) -> None:
    """Record the overall grade from resolution."""
    conn.execute(
        "UPDATE experiments SET grade = ?, updated_at = ? WHERE id = ?",
        (grade, utcnow(), experiment_id),
    )


def store_builder_guidance(conn: sqlite3.Connection, experiment_id: int, guidance: str) -> None:
    """Replace the accumulated builder guidance for an experiment."""
    conn.execute(
        "UPDATE experiments SET builder_guidance = ?, updated_at = ? WHERE id = ?",
        (guidance, utcnow(), experiment_id),
    )


def list_active_experiments(conn: sqlite3.Connection) -> list[ExperimentRecord]:
    """Get all experiments that have not reached a terminal status."""
    placeholders = ", ".join("?" for _ in TERMINAL_STATUSES)
    rows = conn.execute(
        f"""
        SELECT * FROM experiments WHERE status NOT IN ({placeholders})
        ORDER BY created_at DESC, id DESC
        """,  # noqa: S608
        TERMINAL_STATUSES,
    ).fetchall()
    return [ExperimentRecord.model_validate(dict(row)) for row in rows]


def list_all_experiments(conn: sqlite3.Connection) -> list[ExperimentRecord]:
    """Get all experiments in creation order."""
    rows = conn.execute("SELECT * FROM experiments ORDER BY id").fetchall()
    return [ExperimentRecord.model_validate(dict(row)) for row in rows]


def get_latest_experiment(conn: sqlite3.Connection) -> Optional[ExperimentRecord]:
    """Get the most recently created non-terminal experiment."""
    active = list_active_experiments(conn)
    return active[0] if active else None


# --- Decision Operations ---

def insert_decision(
    conn: sqlite3.Connection,
    experiment_id: int,
    description: str,
    evidence_level: str,
    justification: str,
) -> int:
    """Record a builder decision and return its ID."""
    cursor = conn.execute(
        """
        INSERT INTO decisions (experiment_id, description, evidence_level, justification)
        VALUES (?, ?, ?, ?)
        """,
        (experiment_id, description, evidence_level, justification),
    )
    return cursor.lastrowid


def list_decisions(conn: sqlite3.Connection, experiment_id: int) -> list[DecisionRecord]:
    """Get an experiment's decisions in insertion order."""
    rows = conn.execute(
        "SELECT * FROM decisions WHERE experiment_id = ? ORDER BY id",
        (experiment_id,),
    ).fetchall()
    return [DecisionRecord.model_validate(dict(row)) for row in rows]


# --- Metric Operations ---

def insert_metric(
    conn: sqlite3.Connection,
    experiment_id: int,
    phase: str,
    fixture: str,
    metric_name: str,
    metric_value: float,
) -> None:
    """
    Store one metric snapshot.

    Re-capturing the same (experiment, phase, fixture, metric) replaces the
    earlier value.
    """
    if not math.isfinite(metric_value):
        raise ValueError(f"Metric {fixture}/{metric_name} is not finite: {metric_value}")
    conn.execute(
        """
        INSERT INTO metrics (experiment_id, phase, fixture, metric_name, metric_value, captured_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(experiment_id, phase, fixture, metric_name) DO UPDATE SET
            metric_value = excluded.metric_value,
            captured_at = excluded.captured_at
        """,
        (experiment_id, phase, fixture, metric_name, float(metric_value), utcnow()),
    )


def get_metrics_by_experiment_and_phase(
    conn: sqlite3.Connection,
    experiment_id: int,
    phase: str,
) -> list[MetricSnapshot]:
    """Get all snapshots captured for one experiment phase."""
    rows = conn.execute(
        """
        SELECT * FROM metrics WHERE experiment_id = ? AND phase = ?
        ORDER BY fixture, metric_name
        """,
        (experiment_id, phase),
    ).fetchall()
    return [MetricSnapshot.model_validate(dict(row)) for row in rows]


# --- Dead End Operations ---

def insert_dead_end(
    conn: sqlite3.Connection,
    experiment_id: Optional[int],
    approach: str,
    why_failed: str,
    structural_constraint: str,
    sub_type: Optional[str] = None,
    category: str = "structural",
) -> int:
    """Record a dead end and return its ID."""
    cursor = conn.execute(
        """
        INSERT INTO dead_ends (experiment_id, approach, why_failed, structural_constraint,
                               sub_type, category)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (experiment_id, approach, why_failed, structural_constraint, sub_type, category),
    )
    return cursor.lastrowid


def list_dead_ends(
    conn: sqlite3.Connection,
    sub_type: Optional[str] = None,
    category: Optional[str] = None,
    experiment_id: Optional[int] = None,
) -> list[DeadEndRecord]:
    """Get dead ends with optional filtering."""
    query = "SELECT * FROM dead_ends WHERE 1=1"
    params: list[object] = []

    if sub_type:
        query += " AND sub_type = ?"
        params.append(sub_type)

    if category:
        query += " AND category = ?"
        params.append(category)

    if experiment_id is not None:
        query += " AND experiment_id = ?"
        params.append(experiment_id)

    query += " ORDER BY id"

    rows = conn.execute(query, params).fetchall()
    return [DeadEndRecord.model_validate(dict(row)) for row in rows]


def search_dead_ends(conn: sqlite3.Connection, term: str) -> list[DeadEndRecord]:
    """Find dead ends mentioning a term in any text field."""
    pattern = f"%{term}%"
    rows = conn.execute(
        """
        SELECT * FROM dead_ends
        WHERE approach LIKE ? OR why_failed LIKE ? OR structural_constraint LIKE ?
        ORDER BY id
        """,
        (pattern, pattern, pattern),
    ).fetchall()
    return [DeadEndRecord.model_validate(dict(row)) for row in rows]


# --- Circuit Breakers (derived from dead ends) ---

def get_circuit_breaker_state(
    conn: sqlite3.Connection,
    sub_type: str,
    threshold: int,
) -> CircuitBreakerState:
    """Count a sub_type's dead ends and report whether the breaker is tripped."""
    row = conn.execute(
        "SELECT COUNT(*) AS count FROM dead_ends WHERE sub_type = ?",
        (sub_type,),
    ).fetchone()
    count = row["count"] if row else 0
    return CircuitBreakerState(sub_type=sub_type, failure_count=count, tripped=count >= threshold)


def get_all_circuit_breaker_states(
    conn: sqlite3.Connection,
    threshold: int,
) -> list[CircuitBreakerState]:
    """Get breaker state for every sub_type that has dead ends."""
    rows = conn.execute(
        """
        SELECT sub_type, COUNT(*) AS failure_count FROM dead_ends
        WHERE sub_type IS NOT NULL
        GROUP BY sub_type
        ORDER BY sub_type
        """
    ).fetchall()
    return [
        CircuitBreakerState(
            sub_type=row["sub_type"],
            failure_count=row["failure_count"],
            tripped=row["failure_count"] >= threshold,
        )
        for row in rows
    ]


# --- Verification Operations ---

def insert_verification(
    conn: sqlite3.Connection,
    experiment_id: int,
    component: str,
    grade: str,
    provenance_intact: Optional[bool] = None,
    content_correct: Optional[bool] = None,
    notes: Optional[str] = None,
) -> int:
    """Record a component grade and return its ID."""
    cursor = conn.execute(
        """
        INSERT INTO verifications (experiment_id, component, grade, provenance_intact,
                                   content_correct, notes)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            experiment_id,
            component,
            grade,
            None if provenance_intact is None else int(provenance_intact),
            None if content_correct is None else int(content_correct),
            notes,
        ),
    )
    return cursor.lastrowid


def get_verifications_by_experiment(
    conn: sqlite3.Connection,
    experiment_id: int,
) -> list[VerificationRecord]:
    """Get an experiment's component grades in insertion order."""
    rows = conn.execute(
        "SELECT * FROM verifications WHERE experiment_id = ? ORDER BY id",
        (experiment_id,),
    ).fetchall()
    return [VerificationRecord.model_validate(dict(row)) for row in rows]


# --- Doubt and Challenge Operations ---

def insert_doubt(
    conn: sqlite3.Connection,
    experiment_id: int,
    claim_doubted: str,
    evidence_level_of_claim: str,
    evidence_for_doubt: str,
    severity: str,
) -> int:
    """Record a doubt and return its ID."""
    cursor = conn.execute(
        """
        INSERT INTO doubts (experiment_id, claim_doubted, evidence_level_of_claim,
                            evidence_for_doubt, severity)
        VALUES (?, ?, ?, ?, ?)
        """,
        (experiment_id, claim_doubted, evidence_level_of_claim, evidence_for_doubt, severity),
    )
    return cursor.lastrowid


def get_doubts_by_experiment(conn: sqlite3.Connection, experiment_id: int) -> list[DoubtRecord]:
    """Get an experiment's doubts in insertion order."""
    rows = conn.execute(
        "SELECT * FROM doubts WHERE experiment_id = ? ORDER BY id",
        (experiment_id,),
    ).fetchall()
    return [DoubtRecord.model_validate(dict(row)) for row in rows]


def get_confirmed_doubts(conn: sqlite3.Connection, experiment_id: int) -> list[DoubtRecord]:
    """Get doubts the verifier confirmed."""
    return [
        d for d in get_doubts_by_experiment(conn, experiment_id)
        if d.resolution == "confirmed"
    ]


def update_doubt_resolution(conn: sqlite3.Connection, doubt_id: int, resolution: str) -> None:
    """Record how the verifier resolved a doubt."""
    conn.execute(
        "UPDATE doubts SET resolution = ? WHERE id = ?",
        (resolution, doubt_id),
    )


def has_doubts(conn: sqlite3.Connection, experiment_id: int) -> bool:
    """Check whether any doubt has been recorded for an experiment."""
    row = conn.execute(
        "SELECT EXISTS(SELECT 1 FROM doubts WHERE experiment_id = ?) AS present",
        (experiment_id,),
    ).fetchone()
    return bool(row["present"])


def insert_challenge(
    conn: sqlite3.Connection,
    experiment_id: int,
    description: str,
    reasoning: str,
) -> int:
    """Record an adversarial challenge and return its ID."""
    cursor = conn.execute(
        "INSERT INTO challenges (experiment_id, description, reasoning) VALUES (?, ?, ?)",
        (experiment_id, description, reasoning),
    )
    return cursor.lastrowid


def get_challenges_by_experiment(
    conn: sqlite3.Connection,
    experiment_id: int,
) -> list[ChallengeRecord]:
    """Get an experiment's challenges in insertion order."""
    rows = conn.execute(
        "SELECT * FROM challenges WHERE experiment_id = ? ORDER BY id",
        (experiment_id,),
    ).fetchall()
    return [ChallengeRecord.model_validate(dict(row)) for row in rows]


def has_challenges(conn: sqlite3.Connection, experiment_id: int) -> bool:
    """Check whether any challenge has been recorded for an experiment."""
    row = conn.execute(
        "SELECT EXISTS(SELECT 1 FROM challenges WHERE experiment_id = ?) AS present",
        (experiment_id,),
    ).fetchone()
    return bool(row["present"])


# --- Session Operations ---

def start_session(
    conn: sqlite3.Connection,
    intent: str,
    experiment_id: Optional[int] = None,
) -> SessionRecord:
    """
    Open a session.

    Uses BEGIN IMMEDIATE so two processes cannot both see "no open session"
    and insert. Raises SessionError if a session is already open.
    """
    with transaction(conn):
        existing = conn.execute(
            "SELECT id, intent FROM sessions WHERE ended_at IS NULL LIMIT 1"
        ).fetchone()
        if existing is not None:
            raise SessionError(
                f"Session already active: \"{existing['intent']}\" (id: {existing['id']})"
            )
        cursor = conn.execute(
            "INSERT INTO sessions (intent, experiment_id, started_at) VALUES (?, ?, ?)",
            (intent, experiment_id, utcnow()),
        )
        session_id = cursor.lastrowid

    row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
    return SessionRecord.model_validate(dict(row))


def end_session(
    conn: sqlite3.Connection,
    accomplished: Optional[str] = None,
    unfinished: Optional[str] = None,
    new_fragility: Optional[str] = None,
) -> SessionRecord:
    """Close the open session. Raises SessionError if none is open."""
    with transaction(conn):
        active = conn.execute(
            "SELECT id FROM sessions WHERE ended_at IS NULL LIMIT 1"
        ).fetchone()
        if active is None:
            raise SessionError("No active session to end.")
        conn.execute(
            """
            UPDATE sessions
            SET ended_at = ?, accomplished = ?, unfinished = ?, new_fragility = ?
            WHERE id = ? AND ended_at IS NULL
            """,
            (utcnow(), accomplished, unfinished, new_fragility, active["id"]),
        )

    row = conn.execute("SELECT * FROM sessions WHERE id = ?", (active["id"],)).fetchone()
    return SessionRecord.model_validate(dict(row))


def get_active_session(conn: sqlite3.Connection) -> Optional[SessionRecord]:
    """Get the open session, if any."""
    row = conn.execute(
        "SELECT * FROM sessions WHERE ended_at IS NULL ORDER BY started_at DESC LIMIT 1"
    ).fetchone()
    return SessionRecord.model_validate(dict(row)) if row else None


def get_sessions_since_compression(conn: sqlite3.Connection) -> int:
    """Count sessions started after the last compression."""
    last = conn.execute(
        "SELECT created_at FROM compressions ORDER BY id DESC LIMIT 1"
    ).fetchone()
    if last is None:
        row = conn.execute("SELECT COUNT(*) AS count FROM sessions").fetchone()
    else:
        row = conn.execute(
            "SELECT COUNT(*) AS count FROM sessions WHERE started_at > ?",
            (last["created_at"],),
        ).fetchone()
    return row["count"]


def record_compression(
    conn: sqlite3.Connection,
    session_count_since_last: int,
    synthesis_size_before: int,
    synthesis_size_after: int,
) -> None:
    """Record a synthesis compression pass."""
    conn.execute(
        """
        INSERT INTO compressions (session_count_since_last, synthesis_size_before,
                                  synthesis_size_after, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (session_count_since_last, synthesis_size_before, synthesis_size_after, utcnow()),
    )


# --- Swarm Operations ---

def create_swarm_run(conn: sqlite3.Connection, goal: str, parallel_count: int) -> int:
    """Create a swarm run record and return its ID."""
    cursor = conn.execute(
        "INSERT INTO swarm_runs (goal, parallel_count) VALUES (?, ?)",
        (goal, parallel_count),
    )
    return cursor.lastrowid


def update_swarm_run(
    conn: sqlite3.Connection,
    swarm_run_id: int,
    status: str,
    total_cost_usd: float,
    best_experiment_slug: Optional[str],
) -> None:
    """Mark a swarm run finished."""
    conn.execute(
        """
        UPDATE swarm_runs
        SET status = ?, total_cost_usd = ?, best_experiment_slug = ?, completed_at = ?
        WHERE id = ?
        """,
        (status, total_cost_usd, best_experiment_slug, utcnow(), swarm_run_id),
    )


def get_swarm_run(conn: sqlite3.Connection, swarm_run_id: int) -> Optional[SwarmRunRecord]:
    """Get a swarm run by ID."""
    row = conn.execute("SELECT * FROM swarm_runs WHERE id = ?", (swarm_run_id,)).fetchone()
    return SwarmRunRecord.model_validate(dict(row)) if row else None


def add_swarm_member(
    conn: sqlite3.Connection,
    swarm_run_id: int,
    experiment_slug: str,
    worktree_path: str,
) -> None:
    """Register one swarm instance."""
    conn.execute(
        """
        INSERT INTO swarm_members (swarm_run_id, experiment_slug, worktree_path)
        VALUES (?, ?, ?)
        """,
        (swarm_run_id, experiment_slug, worktree_path),
    )


def update_swarm_member(
    conn: sqlite3.Connection,
    swarm_run_id: int,
    experiment_slug: str,
    final_status: str,
    overall_grade: Optional[str],
    cost_usd: float,
    error: Optional[str],
) -> None:
    """Record one swarm instance's outcome."""
    conn.execute(
        """
        UPDATE swarm_members
        SET final_status = ?, overall_grade = ?, cost_usd = ?, error = ?
        WHERE swarm_run_id = ? AND experiment_slug = ?
        """,
        (final_status, overall_grade, cost_usd, error, swarm_run_id, experiment_slug),
    )


def get_swarm_members(conn: sqlite3.Connection, swarm_run_id: int) -> list[SwarmMemberRecord]:
    """Get the members of a swarm run."""
    rows = conn.execute(
        "SELECT * FROM swarm_members WHERE swarm_run_id = ? ORDER BY id",
        (swarm_run_id,),
    ).fetchall()
    return [SwarmMemberRecord.model_validate(dict(row)) for row in rows]
