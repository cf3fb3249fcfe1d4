# Copyright (c) Syntropy Systems
"""Spawns worker agents and collects their output."""
from __future__ import annotations

import contextlib
import ctypes
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


def setup_pdeathsig() -> None:
    """Kill the worker if quorum dies first. Linux only."""
    if sys.platform != "linux":
        return
    try:
        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        pr_set_pdeathsig = 1
        libc.prctl(pr_set_pdeathsig, signal.SIGKILL)
    except (AttributeError, OSError):
        return


def pdeathsig_hook() -> Optional[Callable[[], None]]:
    """Return setup_pdeathsig when it is safe to pass as preexec_fn.

    preexec_fn is not fork-safe once other threads exist, so swarm workers
    start their agents without it.
    """
    if sys.platform != "linux" or threading.active_count() > 1:
        return None
    return setup_pdeathsig


def stop_process_group(process: subprocess.Popen[bytes], grace_period: float) -> int:
    """SIGTERM the worker's process group, SIGKILL it after grace_period.

    Returns:
        The exit code (negative signal number when killed).

    """
    if process.poll() is not None:
        return process.returncode
    try:
        pgid = os.getpgid(process.pid)
    except ProcessLookupError:
        return process.wait()

    with contextlib.suppress(ProcessLookupError):
        os.killpg(pgid, signal.SIGTERM)
    with contextlib.suppress(subprocess.TimeoutExpired):
        return process.wait(timeout=grace_period)

    logger.warning("Worker %d ignored SIGTERM, sending SIGKILL", process.pid)
    with contextlib.suppress(ProcessLookupError):
        os.killpg(pgid, signal.SIGKILL)
    return process.wait()


@dataclass(frozen=True)
class AgentResult:
    """Exit status and captured output of one worker invocation."""

    exit_code: int
    output: str
    log_path: Path
    duration: float
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class AgentRunner:
    """Runs one worker agent to completion in its own process group.

    stdout and stderr are interleaved into ``log_path``, which is read back
    once the worker exits. The worker gets no stdin: everything it needs is
    in its argv and the ``QUORUM_*`` environment variables.
    """

    def __init__(
        self,
        argv: list[str],
        workdir: Path,
        log_path: Path,
        env: Optional[dict[str, str]] = None,
    ) -> None:
        self.argv = argv
        self.workdir = workdir
        self.log_path = log_path
        self.env = {**os.environ, **(env or {})}

    def run(self, timeout: Optional[float] = None, grace_period: float = 10.0) -> AgentResult:
        """Start the worker and block until it exits or timeout elapses.

        A timed-out or interrupted worker has its whole process group
        stopped before this returns or re-raises.

        Raises:
            OSError: the worker executable could not be started.

        """
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()
        timed_out = False

        with self.log_path.open("w") as log:
            process = subprocess.Popen(  # noqa: S603
                self.argv,
                stdout=log,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                env=self.env,
                cwd=str(self.workdir),
                start_new_session=True,
                preexec_fn=pdeathsig_hook(),  # noqa: PLW1509
            )
            try:
                exit_code = process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("Worker %s timed out after %ss", self.argv[0], timeout)
                timed_out = True
                exit_code = stop_process_group(process, grace_period)
            except BaseException:
                _ = stop_process_group(process, grace_period)
                raise

        return AgentResult(
            exit_code=exit_code,
            output=self.log_path.read_text(errors="replace"),
            log_path=self.log_path,
            duration=time.monotonic() - started,
            timed_out=timed_out,
        )
