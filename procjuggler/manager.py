"""Owning every project's process and fanning their events into one queue."""

from __future__ import annotations

import json
import queue
import threading
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Optional

from .child import Child, LogSink, _Writer
from .config import Config, Project
from .events import Event
from .terminal import PtyProcess

EVENTS_BUF_SIZE = 256
CLOSE_TIMEOUT = 10.0


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _unknown_project(project_id: str) -> KeyError:
    return KeyError(f"manager: unknown project {_quote(project_id)}")


@dataclass
class ReloadResult:
    """What changed between the old and the new configuration."""

    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    stopped: list[str] = field(default_factory=list)


def _project_changed(a: Project, b: Project) -> bool:
    """Whether two project definitions differ in a way that needs a restart."""
    return (
        a.path != b.path
        or a.cmd != b.cmd
        or str(a.restart) != str(b.restart)
        or a.env_file != b.env_file
        or dict(a.env) != dict(b.env)
    )


class Manager:
    """Creates children on demand and offers per-project and group operations."""

    def __init__(self, config: Config, sink: LogSink) -> None:
        self._config = config
        self._sink = sink
        self._children: dict[str, Child] = {}
        self._events: queue.Queue[Event] = queue.Queue(maxsize=EVENTS_BUF_SIZE)
        self._lock = threading.Lock()
        self._closed = False

    def events(self) -> queue.Queue[Event]:
        """Return the queue all children publish their events to."""
        return self._events

    def config(self) -> Config:
        """Return the configuration currently in effect."""
        with self._lock:
            return self._config

    def has_child(self, project_id: str) -> bool:
        """Whether a child has been created for ``project_id``."""
        with self._lock:
            return project_id in self._children

    def _existing(self, project_id: str) -> Child:
        with self._lock:
            child = self._children.get(project_id)
        if child is None:
            raise _unknown_project(project_id)
        return child

    def _get_or_create(self, project_id: str) -> Child:
        with self._lock:
            child = self._children.get(project_id)
            if child is not None:
                return child
            project = self._config.projects.get(project_id)
            if project is None:
                raise _unknown_project(project_id)
            child = Child(project_id, project, self._config.settings, self._sink, self._events)
            self._children[project_id] = child
            return child

    def start(self, project_id: str) -> None:
        """Start the process of ``project_id``."""
        self._get_or_create(project_id).start()

    def stop(self, project_id: str, grace: float = 0.0) -> None:
        """Stop ``project_id`` gracefully.

        The child uses the configured shutdown grace; ``grace`` is accepted for
        callers that pass one explicitly.
        """
        self._existing(project_id).stop()

    def restart(self, project_id: str) -> None:
        """Stop and start ``project_id`` again without backoff."""
        self._get_or_create(project_id).restart()

    def start_group(self, name: str, delay: float = 0.0) -> None:
        """Start every member of group ``name``, ``delay`` seconds apart."""
        with self._lock:
            members = self._config.groups.get(name)
        if members is None:
            raise KeyError(f"manager: unknown group {_quote(name)}")
        for index, project_id in enumerate(members):
            if index > 0 and delay > 0:
                time.sleep(delay)
            try:
                self.start(project_id)
            except (KeyError, OSError, ValueError, RuntimeError) as exc:
                raise RuntimeError(
                    f"manager: start group {_quote(name)} member {_quote(project_id)}: {exc}"
                ) from exc

    def _stop_quietly(self, project_id: str) -> None:
        with suppress(KeyError, OSError):
            self.stop(project_id)

    def stop_all(self, timeout: Optional[float] = None) -> None:
        """Stop all children in parallel, waiting at most ``timeout`` seconds."""
        with self._lock:
            ids = list(self._children)
        threads = [
            threading.Thread(target=self._stop_quietly, args=(pid,), daemon=True) for pid in ids
        ]
        for thread in threads:
            thread.start()
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)

    def close(self) -> None:
        """Stop every child and wait for their output threads to finish."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.stop_all(CLOSE_TIMEOUT)
        with self._lock:
            children = list(self._children.values())
        for child in children:
            child.wait_finished()

    def resize(self, project_id: str, cols: int, rows: int) -> None:
        """Resize the terminal of ``project_id``; unknown projects are ignored."""
        with self._lock:
            child = self._children.get(project_id)
        if child is not None:
            child.resize(cols, rows)

    def attach(self, project_id: str) -> PtyProcess:
        """Return the running terminal of ``project_id``."""
        return self._existing(project_id).attach()

    def subscribe(self, project_id: str, writer: _Writer) -> Callable[[], None]:
        """Copy the terminal output of ``project_id`` to ``writer``; returns an unsubscribe function."""
        return self._existing(project_id).subscribe(writer)

    def reload(self, new_config: Optional[Config]) -> ReloadResult:
        """Switch to ``new_config`` and report the differences.

        Removed projects that have a child are stopped and forgotten. Changed
        projects are only reported; they pick up the change on their next start.
        """
        if new_config is None:
            return ReloadResult()

        with self._lock:
            old_projects = dict(self._config.projects) if self._config is not None else {}
            known = set(self._children)
            self._config = new_config

        result = ReloadResult()
        result.removed = [pid for pid in old_projects if pid not in new_config.projects]
        result.added = [pid for pid in new_config.projects if pid not in old_projects]
        result.changed = [
            pid
            for pid, old in old_projects.items()
            if pid in new_config.projects and _project_changed(old, new_config.projects[pid])
        ]

        for pid in result.removed:
            if pid not in known:
                continue
            with self._lock:
                child = self._children.get(pid)
            if child is None:
                continue
            with suppress(OSError):
                child.stop()
            with self._lock:
                self._children.pop(pid, None)
            result.stopped.append(pid)
        return result