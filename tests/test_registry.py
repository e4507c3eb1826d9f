import pytest

from procjuggler.config import Settings
from procjuggler.registry import Registry


@pytest.fixture
def settings(tmp_path):
    return Settings(
        log_buffer_lines=50,
        log_dir=str(tmp_path),
        log_rotate_size_mb=1,
        log_rotate_keep=2,
    )


def test_get_lazy_init(settings):
    r = Registry(settings)
    e = r.get("web")
    assert e.ring is not None
    assert e.rotator is not None
    assert r.get("web") is e
    r.close()


def test_get_creates_log_file(settings, tmp_path):
    r = Registry(settings)
    e = r.get("api")
    assert len(e.ring) == 0
    assert e.ring.generation() == 0
    assert (tmp_path / "api.log").exists()
    assert (tmp_path / "api.log").stat().st_size == 0
    r.close()


def test_write_raw_round_trip(settings, tmp_path):
    r = Registry(settings)
    r.write_raw("svc", b"hello\nworld\n")
    e = r.get("svc")
    assert len(e.ring) == 2
    snap = e.ring.snapshot()
    assert snap[0].data == b"hello"
    assert snap[1].data == b"world"
    r.close()
    content = (tmp_path / "svc.log").read_text()
    assert content == "hello\nworld\n"


def test_write_raw_strips_ansi(settings, tmp_path):
    r = Registry(settings)
    r.write_raw("color", b"\x1b[32mgreen\x1b[0m\n")
    r.close()
    data = (tmp_path / "color.log").read_text()
    assert "\x1b" not in data
    assert "green" in data
    assert r.get("color").ring.snapshot()[0].data == b"\x1b[32mgreen\x1b[0m"


def test_partial_line_waits_for_newline(settings):
    r = Registry(settings)
    r.write_raw("p", b"hel")
    assert len(r.get("p").ring) == 0
    r.write_raw("p", b"lo\n")
    assert [line.data for line in r.get("p").ring.snapshot()] == [b"hello"]
    r.close()


def test_clear_buffer(settings):
    r = Registry(settings)
    r.write_raw("x", b"a\nb\n")
    gen = r.get("x").ring.generation()
    r.clear_buffer("x")
    assert len(r.get("x").ring) == 0
    assert r.get("x").ring.generation() > gen
    r.close()


def test_close_then_write_reopens(settings, tmp_path):
    r = Registry(settings)
    r.get("a")
    r.get("b")
    r.close()
    r.write_raw("a", b"after\n")
    assert [line.data for line in r.get("a").ring.snapshot()] == [b"after"]
    r.close()
    assert (tmp_path / "a.log").read_text() == "after\n"


def test_unopenable_log_dir_keeps_ring(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    r = Registry(Settings(log_buffer_lines=10, log_dir=str(blocker / "sub")))
    e = r.get("web")
    assert e.rotator is None
    r.write_raw("web", b"line\n")
    assert [line.data for line in e.ring.snapshot()] == [b"line"]