import os
import subprocess
import sys
import time

import pytest

from procjuggler.procstats import Sampler, Stats


def test_self_sample_nonzero_rss():
    s = Sampler()
    stats = s.sample(os.getpid())
    assert stats.rss > 0
    end = time.monotonic() + 0.05
    while time.monotonic() < end:
        pass
    stats2 = s.sample(os.getpid())
    assert stats2.cpu >= 0
    assert stats2.rss > 0


@pytest.mark.parametrize("pid", [-1, 0])
def test_bogus_pid_raises(pid):
    s = Sampler()
    with pytest.raises(ValueError, match="invalid pid"):
        s.sample(pid)


def test_forget_drops_cache():
    s = Sampler()
    pid = os.getpid()
    s.sample(pid)
    assert s.is_cached(pid)
    s.forget(pid)
    assert not s.is_cached(pid)


def test_sample_walks_children():
    child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(5)"])
    try:
        time.sleep(0.1)
        s = Sampler()
        stats = s.sample(os.getpid())
        assert s.is_cached(child.pid)
        assert stats.rss > 0
    finally:
        child.kill()
        child.wait()


def test_stats_defaults():
    stats = Stats()
    stats.cpu += 1.5
    stats.rss += 10
    assert (stats.cpu, stats.rss) == (1.5, 10)