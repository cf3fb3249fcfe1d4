# Copyright (c) Syntropy Systems
"""Reporting sinks for status events emitted by library code."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Literal, Optional, Protocol

from rich.console import Console
from rich.markup import escape

Level = Literal["info", "warn", "success", "error"]


class Reporter(Protocol):
    """One-way sink for status events."""

    def info(self, message: str, label: Optional[str] = None) -> None: ...

    def warn(self, message: str, label: Optional[str] = None) -> None: ...

    def success(self, message: str, label: Optional[str] = None) -> None: ...

    def error(self, message: str, label: Optional[str] = None) -> None: ...


_STYLES: dict[Level, str] = {
    "info": "[dim]{label}[/dim]{message}",
    "warn": "[yellow]{label}Warning:[/yellow] {message}",
    "success": "[green]{label}[/green]{message}",
    "error": "[red]{label}Error:[/red] {message}",
}


class ConsoleReporter:
    """Renders events to a rich console, prefixing the instance label."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console()
        self._lock = threading.Lock()

    def _emit(self, level: Level, message: str, label: Optional[str]) -> None:
        prefix = f"[{label}] " if label else ""
        line = _STYLES[level].format(label=escape(prefix), message=escape(message))
        with self._lock:
            self.console.print(line)

    def info(self, message: str, label: Optional[str] = None) -> None:
        self._emit("info", message, label)

    def warn(self, message: str, label: Optional[str] = None) -> None:
        self._emit("warn", message, label)

    def success(self, message: str, label: Optional[str] = None) -> None:
        self._emit("success", message, label)

    def error(self, message: str, label: Optional[str] = None) -> None:
        self._emit("error", message, label)


@dataclass(frozen=True)
class ReportEvent:
    level: Level
    message: str
    label: Optional[str] = None


class CollectingReporter:
    """Keeps events in memory; thread-safe."""

    def __init__(self) -> None:
        self.events: list[ReportEvent] = []
        self._lock = threading.Lock()

    def _add(self, level: Level, message: str, label: Optional[str]) -> None:
        with self._lock:
            self.events.append(ReportEvent(level, message, label))

    def info(self, message: str, label: Optional[str] = None) -> None:
        self._add("info", message, label)

    def warn(self, message: str, label: Optional[str] = None) -> None:
        self._add("warn", message, label)

    def success(self, message: str, label: Optional[str] = None) -> None:
        self._add("success", message, label)

    def error(self, message: str, label: Optional[str] = None) -> None:
        self._add("error", message, label)

    def messages(self, level: Optional[Level] = None, label: Optional[str] = None) -> list[str]:
        """Messages matching the given level and label filters."""
        with self._lock:
            return [
                e.message
                for e in self.events
                if (level is None or e.level == level) and (label is None or e.label == label)
            ]
