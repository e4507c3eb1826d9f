"""One managed project process: spawn, stream output, restart and stop."""

from __future__ import annotations

import os
import queue
import signal
import threading
from collections.abc import Callable
from contextlib import suppress
from datetime import datetime, timezone
from typing import Optional, Protocol

from .config import Project, Settings
from .events import (
    Event,
    ExitedEvent,
    LogLineEvent,
    ProcessState,
    RestartingEvent,
    StartedEvent,
    StateChangedEvent,
)
from .linebuffer import LineBuffer
from .restart import Action, Policy
from .terminal import PtyProcess, graceful_stop, resize_pty, start_pty

READ_BUF_SIZE = 16 * 1024

_PTY_ENV = {"TERM": "xterm-256color", "FORCE_COLOR": "1", "COLORTERM": "truecolor"}


class LogSink(Protocol):
    """Receives the raw terminal bytes of a project."""

    def write_raw(self, project_id: str, data: bytes) -> None: ...


class _Writer(Protocol):
    def write(self, data: bytes) -> object: ...


class _Subscription:
    def __init__(self, writer: _Writer) -> None:
        self.writer = writer
        self.dropped = False


def _base_env() -> dict[str, str]:
    env = dict(os.environ)
    env.update(_PTY_ENV)
    return env


def _exit_status(returncode: int) -> tuple[int, str]:
    if returncode >= 0:
        return returncode, ""
    try:
        name = signal.Signals(-returncode).name
    except ValueError:
        name = f"signal {-returncode}"
    return -1, name


class Child:
    """Owns a single project's process running in a pseudo-terminal."""

    def __init__(
        self,
        project_id: str,
        project: Project,
        settings: Settings,
        sink: LogSink,
        events: "queue.Queue[Event]",
    ) -> None:
        self.project_id = project_id
        self.project = project
        self.settings = settings
        self.sink = sink
        self.policy = Policy(
            str(project.restart),
            settings.restart_backoff_ms,
            settings.restart_max_attempts,
            settings.restart_reset_after_ms,
        )
        self._events = events
        self._lock = threading.Lock()
        self._state = ProcessState.IDLE
        self._pid = 0
        self._proc: Optional[PtyProcess] = None
        self._cancel: Optional[threading.Event] = None
        self._wait_done: Optional[threading.Event] = None
        self._stop_requested = False
        self._finished = threading.Event()
        self._finished.set()
        self._subs_lock = threading.Lock()
        self._subs: set[_Subscription] = set()

    @property
    def _grace(self) -> float:
        return self.settings.shutdown_grace_ms / 1000.0

    def _emit(self, event: Event) -> None:
        # Never block on a slow consumer.
        with suppress(queue.Full):
            self._events.put_nowait(event)

    def _set_state(self, state: ProcessState) -> None:
        with self._lock:
            self._state = state
        self._emit(StateChangedEvent(self.project_id, state))

    def _clear_process(self) -> None:
        with self._lock:
            self._proc = None
            self._pid = 0

    def start(self) -> None:
        """Spawn the process and begin streaming its output in the background."""
        with self._lock:
            if self._state not in (ProcessState.IDLE, ProcessState.CRASHED):
                raise RuntimeError(f"child {self.project_id}: already in state {self._state}")
            self._state = ProcessState.STARTING
            self._stop_requested = False
            cancel = threading.Event()
            self._cancel = cancel

        try:
            env = self.project.build_env(_base_env())
        except ValueError as exc:
            self._set_state(ProcessState.IDLE)
            raise ValueError(f"build env for {self.project_id}: {exc}") from exc

        try:
            proc = start_pty(
                self.project.path,
                self.project.cmd,
                env,
                self.settings.pty_cols,
                self.settings.pty_rows,
            )
        except OSError as exc:
            cancel.set()
            self._set_state(ProcessState.IDLE)
            raise OSError(f"start PTY for {self.project_id}: {exc}") from exc

        wait_done = threading.Event()
        with self._lock:
            self._proc = proc
            self._pid = proc.pid
            self._wait_done = wait_done
            self._finished.clear()

        self._set_state(ProcessState.RUNNING)
        self.policy.on_start()
        self._emit(StartedEvent(self.project_id, proc.pid))

        threading.Thread(
            target=self._run,
            args=(proc, cancel, wait_done),
            name=f"child-{self.project_id}",
            daemon=True,
        ).start()

    def _run(self, proc: PtyProcess, cancel: threading.Event, wait_done: threading.Event) -> None:
        lines = LineBuffer()
        while True:
            chunk = proc.read(READ_BUF_SIZE)
            if not chunk:
                break
            # Subscribers first so a slow log writer cannot hold them back.
            self._fanout(chunk)
            self.sink.write_raw(self.project_id, chunk)
            for line in lines.feed(chunk):
                self._emit(LogLineEvent(self.project_id, line.data, line.is_partial, line.timestamp))

        tail = lines.flush()
        if tail is not None:
            self._emit(LogLineEvent(self.project_id, tail.data, True, tail.timestamp))

        returncode = proc.wait()
        wait_done.set()
        proc.close()

        code, sig = _exit_status(returncode)
        exited_at = datetime.now(timezone.utc)
        self._emit(ExitedEvent(self.project_id, code, sig, exited_at))

        with self._lock:
            stop_requested = self._stop_requested
        if stop_requested:
            self._clear_process()
            self._set_state(ProcessState.IDLE)
            self.policy.stop()
            self._finished.set()
            return

        action, delay = self.policy.on_exit(code, sig, exited_at)
        if action is Action.NONE:
            self._clear_process()
            self._set_state(ProcessState.CRASHED if code != 0 else ProcessState.IDLE)
            self._finished.set()
            return
        if action is Action.GIVE_UP:
            self._clear_process()
            self._set_state(ProcessState.GIVING_UP)
            self._finished.set()
            return

        self._set_state(ProcessState.RESTARTING)
        self._emit(RestartingEvent(self.project_id, self.policy.attempts(), delay))
        if (delay > 0 and cancel.wait(delay)) or cancel.is_set():
            self._clear_process()
            self._set_state(ProcessState.IDLE)
            self._finished.set()
            return

        with self._lock:
            self._proc = None
            self._pid = 0
            self._state = ProcessState.IDLE
        try:
            self.start()
        except (OSError, ValueError, RuntimeError):
            self._set_state(ProcessState.CRASHED)
            self._finished.set()

    def stop(self) -> None:
        """Terminate the process group, killing it after the shutdown grace period."""
        with self._lock:
            self._stop_requested = True
            proc = self._proc
            cancel = self._cancel
            wait_done = self._wait_done
        if cancel is not None:
            cancel.set()
        if proc is None or wait_done is None:
            return
        self._set_state(ProcessState.STOPPING)
        graceful_stop(proc, self._grace, wait_done)

    def restart(self) -> None:
        """Stop, reset the restart counter and start again immediately."""
        with suppress(OSError):
            self.stop()
        self._finished.wait(self._grace + 1.0)
        with self._lock:
            self._stop_requested = False
        self.policy.manual_restart()
        with self._lock:
            self._state = ProcessState.IDLE
        self.start()

    def resize(self, cols: int, rows: int) -> None:
        """Change the terminal size of the running process, if any."""
        with self._lock:
            proc = self._proc
        if proc is None:
            return
        with suppress(OSError):
            resize_pty(proc.fd, cols, rows)

    def attach(self) -> PtyProcess:
        """Return the running terminal for raw input and output."""
        with self._lock:
            proc = self._proc
        if proc is None:
            raise RuntimeError(f"child {self.project_id}: not running")
        return proc

    def subscribe(self, writer: _Writer) -> Callable[[], None]:
        """Copy every byte of terminal output to ``writer``; returns an unsubscribe function.

        A writer whose ``write`` raises is dropped.
        """
        sub = _Subscription(writer)
        with self._subs_lock:
            self._subs.add(sub)

        def unsubscribe() -> None:
            with self._subs_lock:
                self._subs.discard(sub)

        return unsubscribe

    def _fanout(self, chunk: bytes) -> None:
        with self._subs_lock:
            if not self._subs:
                return
            self._subs = {sub for sub in self._subs if not sub.dropped}
            targets = list(self._subs)
        for sub in targets:
            try:
                sub.writer.write(chunk)
            except Exception:  # any failing writer is dropped, whatever it raised
                sub.dropped = True

    def state(self) -> ProcessState:
        """Return the current lifecycle state."""
        with self._lock:
            return self._state

    def pid(self) -> int:
        """Return the running process id, or 0."""
        with self._lock:
            return self._pid

    def wait_finished(self, timeout: Optional[float] = None) -> bool:
        """Wait until no output thread is running; returns False on timeout."""
        return self._finished.wait(timeout)