import dataclasses
import queue
import time

import pytest

from procjuggler.config import Config, Project, RestartMode, Settings
from procjuggler.events import ExitedEvent, LogLineEvent, StartedEvent
from procjuggler.manager import Manager, ReloadResult


class NullSink:
    def write_raw(self, project_id, data):
        pass


def make_settings():
    return Settings(
        pty_cols=80,
        pty_rows=24,
        shutdown_grace_ms=500,
        restart_backoff_ms=[50, 100],
        restart_max_attempts=3,
        restart_reset_after_ms=60000,
    )


@pytest.fixture
def cfg(tmp_path):
    (tmp_path / "a").mkdir()
    (tmp_path / "b").mkdir()
    return Config(
        projects={
            "alpha": Project(path=str(tmp_path / "a"), cmd="echo alpha", restart=RestartMode.NEVER),
            "beta": Project(path=str(tmp_path / "b"), cmd="echo beta", restart=RestartMode.NEVER),
        },
        groups={"all": ["alpha", "beta"]},
        settings=make_settings(),
    )


@pytest.fixture
def manager(cfg):
    m = Manager(cfg, NullSink())
    yield m
    m.close()


def collect(m, until, timeout=5.0):
    got = []
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            pytest.fail(f"timed out; events so far: {got}")
        try:
            ev = m.events().get(timeout=remaining)
        except queue.Empty:
            pytest.fail(f"timed out; events so far: {got}")
        got.append(ev)
        if until(got):
            return got


def exited(pid):
    return lambda evs: any(isinstance(e, ExitedEvent) and e.project_id == pid for e in evs)


def test_start_and_stop(manager):
    manager.start("alpha")
    events = collect(manager, exited("alpha"))
    started = [e for e in events if isinstance(e, StartedEvent)]
    assert started[0].project_id == "alpha"
    assert started[0].pid > 0
    assert any(isinstance(e, LogLineEvent) and e.data == b"alpha" for e in events)
    exit_event = next(e for e in events if isinstance(e, ExitedEvent))
    assert exit_event.code == 0
    manager.stop("alpha", 0)
    assert manager.has_child("alpha")


def test_start_unknown_project(manager):
    with pytest.raises(KeyError):
        manager.start("nope")


def test_stop_unknown_project(manager):
    with pytest.raises(KeyError):
        manager.stop("nope", 0)


def test_subscribe_unknown_project(manager):
    with pytest.raises(KeyError):
        manager.subscribe("nope", object())


def test_start_group(manager):
    manager.start_group("all", 0.01)
    events = collect(
        manager,
        lambda evs: exited("alpha")(evs) and exited("beta")(evs),
    )
    started = {e.project_id for e in events if isinstance(e, StartedEvent)}
    assert started == {"alpha", "beta"}


def test_start_group_unknown(manager):
    with pytest.raises(KeyError):
        manager.start_group("missing", 0)


def test_start_twice_while_running(cfg, tmp_path):
    cfg.projects["slow"] = Project(path=str(tmp_path), cmd="sleep 10", restart=RestartMode.NEVER)
    m = Manager(cfg, NullSink())
    try:
        m.start("slow")
        with pytest.raises(RuntimeError):
            m.start("slow")
    finally:
        m.close()


def test_attach_running_and_after_close(cfg, tmp_path):
    cfg.projects["slow"] = Project(path=str(tmp_path), cmd="sleep 10", restart=RestartMode.NEVER)
    m = Manager(cfg, NullSink())
    m.start("slow")
    events = collect(m, lambda evs: any(isinstance(e, StartedEvent) for e in evs))
    started = next(e for e in events if isinstance(e, StartedEvent))
    assert m.attach("slow").pid == started.pid
    begin = time.monotonic()
    m.close()
    assert time.monotonic() - begin < 5.0
    with pytest.raises(RuntimeError):
        m.attach("slow")
    m.close()  # closing twice is harmless
    assert m.has_child("slow")


def test_stop_all(cfg, tmp_path):
    cfg.projects["slow"] = Project(path=str(tmp_path), cmd="sleep 10", restart=RestartMode.NEVER)
    m = Manager(cfg, NullSink())
    try:
        m.start("slow")
        time.sleep(0.05)
        begin = time.monotonic()
        m.stop_all(2.0)
        assert time.monotonic() - begin < 2.0
        events = collect(m, exited("slow"))
        exit_event = next(e for e in events if isinstance(e, ExitedEvent))
        assert exit_event.signal == "SIGTERM"
        assert exit_event.code == -1
    finally:
        m.close()


def test_reload_diffs_and_stops(cfg, manager, tmp_path):
    manager.start("alpha")
    time.sleep(0.1)
    (tmp_path / "g").mkdir()
    new_cfg = Config(
        projects={
            "beta": Project(
                path=cfg.projects["beta"].path, cmd="echo beta-new", restart=RestartMode.NEVER
            ),
            "gamma": Project(path=str(tmp_path / "g"), cmd="echo gamma", restart=RestartMode.NEVER),
        },
        settings=cfg.settings,
    )
    res = manager.reload(new_cfg)
    assert res.removed == ["alpha"]
    assert res.added == ["gamma"]
    assert res.changed == ["beta"]
    assert res.stopped == ["alpha"]
    assert not manager.has_child("alpha")
    assert manager.config() is new_cfg


def test_reload_no_changes(cfg, manager):
    same = dataclasses.replace(cfg)
    assert manager.reload(same) == ReloadResult()
    assert manager.config() is same


def test_reload_none_keeps_config(cfg, manager):
    assert manager.reload(None) == ReloadResult()
    assert manager.config() is cfg