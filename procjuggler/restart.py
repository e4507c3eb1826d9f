"""The restart policy deciding whether and when a crashed process restarts."""

from __future__ import annotations

import enum
import threading
from collections.abc import Iterable
from datetime import datetime, timezone


class Action(enum.Enum):
    """What the policy decided after an exit."""

    NONE = "none"
    RESTART = "restart"
    GIVE_UP = "give-up"


class Policy:
    """Thread-safe restart state machine.

    Delays are in seconds. A run that lasts ``reset_after`` seconds clears the
    attempt counter.
    """

    def __init__(
        self,
        mode: str,
        backoffs_ms: Iterable[int],
        max_attempts: int,
        reset_after_ms: int,
    ) -> None:
        self.mode = mode
        self.backoffs = [ms / 1000.0 for ms in backoffs_ms]
        self.max_attempts = max_attempts
        self.reset_after = reset_after_ms / 1000.0
        self._lock = threading.Lock()
        self._attempts = 0
        self._reset_timer: threading.Timer | None = None

    def _cancel_timer(self) -> None:
        if self._reset_timer is not None:
            self._reset_timer.cancel()
            self._reset_timer = None

    def _reset_attempts(self) -> None:
        with self._lock:
            self._attempts = 0

    def on_start(self) -> datetime:
        """Record a start, arm the stable-run reset timer and return the start time."""
        with self._lock:
            self._cancel_timer()
            if self.reset_after > 0:
                timer = threading.Timer(self.reset_after, self._reset_attempts)
                timer.daemon = True
                timer.start()
                self._reset_timer = timer
        return datetime.now(timezone.utc)

    def on_exit(
        self, code: int, signal_name: str = "", exited_at: datetime | None = None
    ) -> tuple[Action, float]:
        """Decide what to do after an exit; returns the action and its delay."""
        with self._lock:
            self._cancel_timer()
            if code == 0:
                self._attempts = 0
                return Action.NONE, 0.0
            if self.mode != "on-failure":
                return Action.NONE, 0.0
            if self._attempts >= self.max_attempts:
                return Action.GIVE_UP, 0.0
            delay = 0.0
            if self.backoffs:
                delay = self.backoffs[min(self._attempts, len(self.backoffs) - 1)]
            self._attempts += 1
            return Action.RESTART, delay

    def manual_restart(self) -> tuple[Action, float]:
        """Reset the attempt counter and ask for an immediate restart."""
        with self._lock:
            self._cancel_timer()
            self._attempts = 0
            return Action.RESTART, 0.0

    def stop(self) -> None:
        """Cancel the reset timer after a deliberate stop."""
        with self._lock:
            self._cancel_timer()

    def attempts(self) -> int:
        """Return the current attempt counter."""
        with self._lock:
            return self._attempts