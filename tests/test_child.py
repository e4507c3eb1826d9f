import queue
import threading
import time

import pytest

from procjuggler.child import Child
from procjuggler.config import Project, RestartMode, Settings
from procjuggler.events import (
    ExitedEvent,
    LogLineEvent,
    ProcessState,
    RestartingEvent,
    StartedEvent,
)
from procjuggler.linebuffer import LineBuffer
from procjuggler.ringbuffer import RingBuffer


class CaptureSink:
    def __init__(self):
        self.ring = RingBuffer(100)
        self.lines = LineBuffer()

    def write_raw(self, project_id, data):
        self.ring.push_many(self.lines.feed(data))


class SafeBuffer:
    def __init__(self):
        self._lock = threading.Lock()
        self._data = bytearray()

    def write(self, data):
        with self._lock:
            self._data.extend(data)
        return len(data)

    def value(self):
        with self._lock:
            return bytes(self._data)


class FailingWriter:
    def __init__(self):
        self.calls = 0

    def write(self, data):
        self.calls += 1
        raise OSError("broken pipe")


def make_settings():
    return Settings(
        pty_cols=80,
        pty_rows=24,
        shutdown_grace_ms=500,
        restart_backoff_ms=[50, 100],
        restart_max_attempts=3,
        restart_reset_after_ms=60000,
    )


def make_child(tmp_path, cmd, restart=RestartMode.NEVER, **project_kw):
    events = queue.Queue()
    sink = CaptureSink()
    project = Project(path=str(tmp_path), cmd=cmd, restart=restart, **project_kw)
    return Child("test", project, make_settings(), sink, events), events, sink


def collect_until(events, predicate, timeout=5.0):
    seen = []
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            pytest.fail(f"timed out; events so far: {seen}")
        try:
            event = events.get(timeout=remaining)
        except queue.Empty:
            pytest.fail(f"timed out; events so far: {seen}")
        seen.append(event)
        if predicate(event):
            return seen


def is_exit(event):
    return isinstance(event, ExitedEvent)


def drain(events):
    out = []
    while True:
        try:
            out.append(events.get_nowait())
        except queue.Empty:
            return out


def test_log_lines_and_exit_event(tmp_path):
    child, events, sink = make_child(
        tmp_path, "for i in 1 2 3; do echo line $i; sleep 0.01; done"
    )
    child.start()
    seen = collect_until(events, is_exit)

    logs = [e for e in seen if isinstance(e, LogLineEvent) and not e.is_partial]
    assert len(logs) >= 3
    assert [e.data for e in logs[:3]] == [b"line 1", b"line 2", b"line 3"]
    assert seen[-1].code == 0
    assert len(sink.ring) >= 3


def test_started_event_carries_pid(tmp_path):
    child, events, _ = make_child(tmp_path, "sleep 0.2")
    child.start()
    seen = collect_until(events, lambda e: isinstance(e, StartedEvent))
    assert seen[-1].pid > 0
    assert child.wait_finished(5)


def test_clean_exit_returns_to_idle(tmp_path):
    child, events, _ = make_child(tmp_path, "echo done")
    child.start()
    assert child.wait_finished(5)
    assert child.state() == ProcessState.IDLE
    assert child.pid() == 0


def test_failed_exit_without_restart_is_crashed(tmp_path):
    child, events, _ = make_child(tmp_path, "exit 3")
    child.start()
    assert child.wait_finished(5)
    exits = [e for e in drain(events) if isinstance(e, ExitedEvent)]
    assert [e.code for e in exits] == [3]
    assert child.state() == ProcessState.CRASHED


def test_on_failure_restarts_until_giving_up(tmp_path):
    child, events, _ = make_child(tmp_path, "exit 1", restart=RestartMode.ON_FAILURE)
    child.start()
    deadline = time.monotonic() + 10
    while child.state() != ProcessState.GIVING_UP and time.monotonic() < deadline:
        time.sleep(0.05)
    assert child.wait_finished(5)
    assert child.state() == ProcessState.GIVING_UP
    restarts = [e for e in drain(events) if isinstance(e, RestartingEvent)]
    assert [e.attempt for e in restarts] == [1, 2, 3]
    assert [e.delay for e in restarts] == [0.05, 0.1, 0.1]


def test_subscribe_tee_receives_pty_bytes(tmp_path):
    child, events, sink = make_child(tmp_path, "sleep 0.3; echo hello-tee")
    child.start()
    buffer = SafeBuffer()
    unsubscribe = child.subscribe(buffer)
    try:
        collect_until(events, is_exit)
    finally:
        unsubscribe()
    assert b"hello-tee" in buffer.value()
    assert len(sink.ring) > 0


def test_unsubscribe_stops_delivery(tmp_path):
    child, events, _ = make_child(
        tmp_path, "sleep 0.2; for i in 1 2 3 4 5; do echo l$i; sleep 0.05; done"
    )
    child.start()
    buffer = SafeBuffer()
    unsubscribe = child.subscribe(buffer)
    collect_until(events, lambda e: isinstance(e, LogLineEvent), timeout=3)
    unsubscribe()
    before = len(buffer.value())
    collect_until(events, is_exit)
    assert before > 0
    assert len(buffer.value()) == before


def test_failing_subscriber_is_dropped(tmp_path):
    child, events, _ = make_child(tmp_path, "sleep 0.3; echo a; sleep 0.1; echo b")
    child.start()
    bad = FailingWriter()
    good = SafeBuffer()
    child.subscribe(bad)
    child.subscribe(good)
    collect_until(events, is_exit)
    assert bad.calls == 1
    assert b"a" in good.value() and b"b" in good.value()


def test_stop_terminates_and_goes_idle(tmp_path):
    child, events, _ = make_child(tmp_path, "sleep 10")
    child.start()
    collect_until(events, lambda e: isinstance(e, StartedEvent))
    start = time.monotonic()
    child.stop()
    assert child.wait_finished(5)
    assert time.monotonic() - start < 2
    assert child.state() == ProcessState.IDLE
    exits = [e for e in drain(events) if isinstance(e, ExitedEvent)]
    assert len(exits) == 1
    assert exits[0].code == -1
    assert exits[0].signal == "SIGTERM"


def test_restart_spawns_new_process(tmp_path):
    child, events, _ = make_child(tmp_path, "sleep 10")
    child.start()
    first_pid = child.pid()
    child.restart()
    try:
        assert child.state() == ProcessState.RUNNING
        assert child.pid() not in (0, first_pid)
        assert child.policy.attempts() == 0
    finally:
        child.stop()
        assert child.wait_finished(5)


def test_start_twice_raises(tmp_path):
    child, _, _ = make_child(tmp_path, "sleep 10")
    child.start()
    try:
        with pytest.raises(RuntimeError, match="already in state"):
            child.start()
    finally:
        child.stop()
        assert child.wait_finished(5)


def test_attach_when_not_running_raises(tmp_path):
    child, _, _ = make_child(tmp_path, "true")
    with pytest.raises(RuntimeError, match="not running"):
        child.attach()


def test_attach_returns_running_terminal(tmp_path):
    child, _, _ = make_child(tmp_path, "sleep 10")
    child.start()
    try:
        proc = child.attach()
        assert proc.pid == child.pid()
    finally:
        child.stop()
        assert child.wait_finished(5)


def test_missing_env_file_fails_start(tmp_path):
    child, _, _ = make_child(tmp_path, "true", env_file=str(tmp_path / "missing.env"))
    with pytest.raises(ValueError, match="build env for test"):
        child.start()
    assert child.state() == ProcessState.IDLE


def test_missing_directory_fails_start(tmp_path):
    events = queue.Queue()
    project = Project(path=str(tmp_path / "nope"), cmd="true", restart=RestartMode.NEVER)
    child = Child("test", project, make_settings(), CaptureSink(), events)
    with pytest.raises(OSError, match="start PTY for test"):
        child.start()
    assert child.state() == ProcessState.IDLE
    assert child.pid() == 0


def test_inline_env_reaches_process(tmp_path):
    child, events, _ = make_child(tmp_path, 'echo "v=$GREETING"', env={"GREETING": "hey"})
    child.start()
    seen = collect_until(events, is_exit)
    lines = [e.data for e in seen if isinstance(e, LogLineEvent)]
    assert b"v=hey" in lines