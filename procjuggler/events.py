"""Lifecycle events shared by the process layer and the state stores."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProcessState(str, enum.Enum):
    """Lifecycle states of a managed process."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"
    RESTARTING = "restarting"
    GIVING_UP = "giving-up"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Event:
    """Base of all lifecycle events; ``project_id`` is the config project key."""

    project_id: str


@dataclass(frozen=True)
class StartedEvent(Event):
    """A child process started successfully."""

    pid: int
    at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class ExitedEvent(Event):
    """A child process exited; ``signal`` is the signal name or empty for code exits."""

    code: int
    signal: str = ""
    at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class StateChangedEvent(Event):
    """The process moved to a new lifecycle state."""

    state: str


@dataclass(frozen=True)
class LogLineEvent(Event):
    """One line of terminal output, possibly holding ANSI escapes."""

    data: bytes
    is_partial: bool = False
    at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class RestartingEvent(Event):
    """The restart policy scheduled a restart after ``delay`` seconds."""

    attempt: int
    delay: float