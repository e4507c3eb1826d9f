"""Per-project log pipelines: line splitting, an in-memory ring and a log file."""

from __future__ import annotations

import os
import sys
import threading
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Optional

from .ansi import strip_ansi
from .config import Settings
from .linebuffer import Line, LineBuffer
from .ringbuffer import RingBuffer
from .rotator import Rotator

DEFAULT_CAPACITY = 1000


@dataclass
class LogEntry:
    """The log pipeline of one project; ``rotator`` is None if the file could not be opened."""

    ring: RingBuffer[Line]
    rotator: Optional[Rotator]
    _lines: LineBuffer = field(default_factory=LineBuffer, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def _split(self, data: bytes) -> list[Line]:
        with self._lock:
            return self._lines.feed(data)


class Registry:
    """Creates log pipelines on first use and routes raw output into them."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._entries: dict[str, LogEntry] = {}
        self._lock = threading.Lock()

    def get(self, project_id: str) -> LogEntry:
        """Return the pipeline of ``project_id``, creating it if needed.

        ``settings.log_dir`` must already be expanded.
        """
        with self._lock:
            entry = self._entries.get(project_id)
            if entry is not None:
                return entry
            capacity = self.settings.log_buffer_lines
            if capacity <= 0:
                capacity = DEFAULT_CAPACITY
            log_path = os.path.join(self.settings.log_dir, f"{project_id}.log")
            rotator: Optional[Rotator]
            try:
                rotator = Rotator(
                    log_path, self.settings.log_rotate_size_mb, self.settings.log_rotate_keep
                )
            except OSError as exc:
                print(f"procs: registry: open rotator for {project_id}: {exc}", file=sys.stderr)
                rotator = None
            entry = LogEntry(ring=RingBuffer(capacity), rotator=rotator)
            self._entries[project_id] = entry
            return entry

    def write_raw(self, project_id: str, data: bytes) -> None:
        """Split raw output into lines, keep them in the ring and log them without ANSI escapes."""
        entry = self.get(project_id)
        for line in entry._split(data):
            entry.ring.push(line)
            if entry.rotator is not None:
                stripped = strip_ansi(line.data.decode("utf-8", errors="replace"))
                with suppress(OSError):
                    entry.rotator.write((stripped + "\n").encode("utf-8"))

    def clear_buffer(self, project_id: str) -> None:
        """Empty the in-memory lines of ``project_id``; log files are untouched."""
        with self._lock:
            entry = self._entries.get(project_id)
        if entry is not None:
            entry.ring.clear()

    def close(self) -> None:
        """Close every log file."""
        with self._lock:
            entries = list(self._entries.values())
        for entry in entries:
            if entry.rotator is not None:
                with suppress(OSError):
                    entry.rotator.close()