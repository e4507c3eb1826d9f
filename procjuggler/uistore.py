"""Transient interface state: selection, log filter, scrolling, overlays and toasts."""

from __future__ import annotations

import enum
import queue
import re
import threading
import time
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Optional


class OverlayKind(str, enum.Enum):
    """Which modal overlay is shown."""

    NONE = ""
    HELP = "help"
    FILTER = "filter"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Toast:
    """A short notification; ``at`` is a monotonic timestamp, ``duration`` in seconds."""

    message: str
    at: float = field(default_factory=time.monotonic)
    duration: float = 0.0

    def expired(self, now: float) -> bool:
        """Whether the toast has outlived its duration; a non-positive duration never expires."""
        return self.duration > 0 and now - self.at >= self.duration


@dataclass(frozen=True)
class UISnapshot:
    """A point-in-time copy of the interface state."""

    selected_id: str
    filter_text: str
    filter_regex: Optional[re.Pattern[str]]
    filter_error: Optional[str]
    log_scroll: int
    sticky_bottom: bool
    overlay: OverlayKind
    toasts: tuple[Toast, ...]


class UIStore:
    """Holds interface state and notifies subscribers after each change.

    Each subscriber queue holds at most one pending notification.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._selected_id = ""
        self._filter_text = ""
        self._filter_regex: Optional[re.Pattern[str]] = None
        self._filter_error: Optional[str] = None
        self._log_scroll = 0
        self._sticky_bottom = True
        self._overlay = OverlayKind.NONE
        self._toasts: list[Toast] = []
        self._subs: list[queue.Queue[None]] = []

    def subscribe(self) -> queue.Queue[None]:
        """Return a queue that receives ``None`` after changes, coalescing bursts."""
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

    def set_selected_id(self, project_id: str) -> None:
        """Select the project ``project_id``."""
        with self._lock:
            self._selected_id = project_id
        self._notify()

    def set_filter(self, text: str) -> None:
        """Set the log filter and compile it as a regular expression.

        An empty text clears the filter. An invalid pattern leaves no compiled
        filter, records the error and raises ``ValueError``.
        """
        error: Optional[ValueError] = None
        with self._lock:
            self._filter_text = text
            if not text:
                self._filter_regex = None
                self._filter_error = None
            else:
                try:
                    self._filter_regex = re.compile(text)
                    self._filter_error = None
                except re.error as exc:
                    self._filter_regex = None
                    self._filter_error = f"invalid filter regex {text!r}: {exc}"
                    error = ValueError(self._filter_error)
                    error.__cause__ = exc
        self._notify()
        if error is not None:
            raise error

    def set_log_scroll(self, n: int) -> None:
        """Set the log scroll offset, clamped to zero or more."""
        with self._lock:
            self._log_scroll = max(0, n)
        self._notify()

    def set_sticky_bottom(self, value: bool) -> None:
        """Choose whether the log view follows new output."""
        with self._lock:
            self._sticky_bottom = bool(value)
        self._notify()

    def set_overlay(self, overlay: OverlayKind) -> None:
        """Show ``overlay``, or none."""
        with self._lock:
            self._overlay = OverlayKind(overlay)
        self._notify()

    def push_toast(self, message: str, duration: float) -> None:
        """Add a toast that lasts ``duration`` seconds; zero or less lasts forever."""
        with self._lock:
            self._toasts.append(Toast(message, time.monotonic(), duration))
        self._notify()

    def pop_expired_toasts(self) -> None:
        """Drop toasts whose duration has elapsed."""
        now = time.monotonic()
        with self._lock:
            self._toasts = [toast for toast in self._toasts if not toast.expired(now)]

    def snapshot(self) -> UISnapshot:
        """Return a copy of the current state."""
        with self._lock:
            return UISnapshot(
                selected_id=self._selected_id,
                filter_text=self._filter_text,
                filter_regex=self._filter_regex,
                filter_error=self._filter_error,
                log_scroll=self._log_scroll,
                sticky_bottom=self._sticky_bottom,
                overlay=self._overlay,
                toasts=tuple(self._toasts),
            )