# Copyright (c) Syntropy Systems
"""Concurrency tests for quorum."""

from __future__ import annotations

import contextlib
import threading
from pathlib import Path

from quorum.db import (
    create_experiment,
    get_connection,
    get_experiment_by_slug,
    get_metrics_by_experiment_and_phase,
    insert_metric,
    start_session,
    update_experiment_status,
)
from quorum.errors import InvalidTransitionError, SessionError


class TestConcurrentSessions:
    """Test that racing session starts open exactly one session."""

    def test_only_one_session_wins(self, quorum_project: Path) -> None:
        db_path = quorum_project / ".quorum" / "quorum.db"
        num_threads = 8
        barrier = threading.Barrier(num_threads)
        opened: list[int] = []
        refused: list[str] = []
        errors: list[str] = []
        lock = threading.Lock()

        def opener(n: int) -> None:
            conn = get_connection(db_path)
            try:
                barrier.wait()
                session = start_session(conn, f"intent {n}")
                with lock:
                    opened.append(session.id)
            except SessionError as e:
                with lock:
                    refused.append(str(e))
            except Exception as e:  # noqa: BLE001
                with lock:
                    errors.append(f"{type(e).__name__}: {e}")
            finally:
                conn.close()

        threads = [threading.Thread(target=opener, args=(i,)) for i in range(num_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(opened) == 1
        assert len(refused) == num_threads - 1


class TestConcurrentWrites:
    """Test independent writers against one store."""

    def test_parallel_metric_capture(self, quorum_project: Path) -> None:
        """Each thread writes its own fixture; no row is lost."""
        db_path = quorum_project / ".quorum" / "quorum.db"
        conn = get_connection(db_path)
        exp = create_experiment(conn, "shared", "exp/001-shared")
        conn.close()

        num_threads = 6
        errors: list[str] = []
        lock = threading.Lock()

        def writer(n: int) -> None:
            conn = get_connection(db_path)
            try:
                for i in range(10):
                    insert_metric(conn, exp.id, "after", f"fixture-{n}", f"m{i}", float(i))
            except Exception as e:  # noqa: BLE001
                with lock:
                    errors.append(str(e))
            finally:
                conn.close()

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(num_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        conn = get_connection(db_path)
        try:
            assert len(get_metrics_by_experiment_and_phase(conn, exp.id, "after")) == num_threads * 10
        finally:
            conn.close()

    def test_terminal_status_survives_racing_writers(self, quorum_project: Path) -> None:
        """Once one writer lands a terminal status, later writes cannot undo it."""
        db_path = quorum_project / ".quorum" / "quorum.db"
        conn = get_connection(db_path)
        exp = create_experiment(conn, "race", "exp/001-race")
        update_experiment_status(conn, exp.id, "dead_end")
        conn.close()

        def writer() -> None:
            conn = get_connection(db_path)
            try:
                with contextlib.suppress(InvalidTransitionError):
                    update_experiment_status(conn, exp.id, "building")
            finally:
                conn.close()

        threads = [threading.Thread(target=writer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        conn = get_connection(db_path)
        try:
            final = get_experiment_by_slug(conn, "race")
        finally:
            conn.close()
        assert final is not None
        assert final.status == "dead_end"
