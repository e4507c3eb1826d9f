"""Live runtime state of every project, updated from lifecycle events."""

from __future__ import annotations

import dataclasses
import queue
import threading
from collections.abc import Iterable
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .events import (
    Event,
    ExitedEvent,
    ProcessState,
    RestartingEvent,
    StartedEvent,
    StateChangedEvent,
)


@dataclass
class ProjectRuntime:
    """What is currently known about one project's process."""

    project_id: str
    state: str = ProcessState.IDLE.value
    pid: int = 0
    started_at: Optional[datetime] = None
    restart_attempts: int = 0
    exit_code: int = 0
    exit_signal: str = ""
    last_restart_at: Optional[datetime] = None


class RuntimeStore:
    """Project runtimes keyed by id, with coalescing change notifications."""

    def __init__(self) -> None:
        self._runtimes: dict[str, ProjectRuntime] = {}
        self._subs: list[queue.Queue[None]] = []
        self._lock = threading.Lock()

    def subscribe(self) -> queue.Queue[None]:
        """Return a queue that receives ``None`` after changes.

        It holds at most one pending notification; a slow reader misses ticks.
        """
        sub: queue.Queue[None] = queue.Queue(maxsize=1)
        with self._lock:
            self._subs.append(sub)
        return sub

    def _notify(self) -> None:
        with self._lock:
            subs = list(self._subs)
        for sub in subs:
            with suppress(queue.Full):
                sub.put_nowait(None)

    def _get_or_init(self, project_id: str) -> ProjectRuntime:
        runtime = self._runtimes.get(project_id)
        if runtime is None:
            runtime = ProjectRuntime(project_id)
            self._runtimes[project_id] = runtime
        return runtime

    def seed(self, ids: Iterable[str]) -> None:
        """Add idle entries for ``ids``; existing entries are kept as they are."""
        with self._lock:
            for project_id in ids:
                self._get_or_init(project_id)
        self._notify()

    def delete(self, ids: Iterable[str]) -> None:
        """Remove the given ids; unknown ids are ignored."""
        doomed = list(ids)
        if not doomed:
            return
        with self._lock:
            for project_id in doomed:
                self._runtimes.pop(project_id, None)
        self._notify()

    def apply(self, event: Event) -> None:
        """Update the store from a lifecycle event."""
        with self._lock:
            if isinstance(event, StartedEvent):
                runtime = self._get_or_init(event.project_id)
                runtime.state = ProcessState.RUNNING.value
                runtime.pid = event.pid
                runtime.started_at = event.at
            elif isinstance(event, ExitedEvent):
                runtime = self._get_or_init(event.project_id)
                runtime.pid = 0
                runtime.exit_code = event.code
                runtime.exit_signal = event.signal
            elif isinstance(event, StateChangedEvent):
                runtime = self._get_or_init(event.project_id)
                runtime.state = str(event.state)
            elif isinstance(event, RestartingEvent):
                runtime = self._get_or_init(event.project_id)
                runtime.restart_attempts = event.attempt
                runtime.last_restart_at = datetime.now(timezone.utc)
        self._notify()

    def snapshot(self) -> list[ProjectRuntime]:
        """Return copies of all runtimes sorted by project id."""
        with self._lock:
            copies = [dataclasses.replace(r) for r in self._runtimes.values()]
        return sorted(copies, key=lambda r: r.project_id)

    def get(self, project_id: str) -> Optional[ProjectRuntime]:
        """Return a copy of the runtime of ``project_id``, or None."""
        with self._lock:
            runtime = self._runtimes.get(project_id)
            return dataclasses.replace(runtime) if runtime is not None else None