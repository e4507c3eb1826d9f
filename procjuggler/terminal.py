"""Spawning commands in a pseudo-terminal and stopping their process groups."""

from __future__ import annotations

import os
import signal
import struct
import subprocess
import sys
import threading
from collections.abc import Iterable, Mapping
from contextlib import suppress
from typing import Optional, Protocol, Union

try:
    import fcntl
    import pty
    import termios
except ImportError:  # not available on Windows
    fcntl = None  # type: ignore[assignment]
    pty = None  # type: ignore[assignment]
    termios = None  # type: ignore[assignment]

_SHELL = "/bin/sh"

EnvLike = Union[Mapping[str, str], Iterable[str], None]


class _Killable(Protocol):
    @property
    def pid(self) -> int: ...

    def kill(self) -> None: ...


class PtyProcess:
    """A command running under a pseudo-terminal; ``fd`` is the master side."""

    def __init__(self, popen: subprocess.Popen[bytes], fd: int) -> None:
        self.popen = popen
        self.fd = fd

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def returncode(self) -> Optional[int]:
        """Exit status once reaped; negative for a signal, as in ``subprocess``."""
        return self.popen.returncode

    def read(self, size: int = 16 * 1024) -> bytes:
        """Read up to ``size`` bytes; an empty result means the terminal closed."""
        try:
            return os.read(self.fd, size)
        except OSError:
            # EIO / EBADF are how the master reports that the child side is gone.
            return b""

    def write(self, data: bytes) -> int:
        """Write raw input to the terminal."""
        return os.write(self.fd, data)

    def wait(self, timeout: Optional[float] = None) -> int:
        """Wait for the command to exit and return its status."""
        return self.popen.wait(timeout)

    def kill(self) -> None:
        """Send SIGKILL to the command itself."""
        with suppress(OSError):
            self.popen.kill()

    def close(self) -> None:
        """Close the master side of the terminal."""
        if self.fd >= 0:
            with suppress(OSError):
                os.close(self.fd)
            self.fd = -1


def _env_dict(env: EnvLike) -> Optional[dict[str, str]]:
    if env is None:
        return None
    if isinstance(env, Mapping):
        return dict(env)
    result: dict[str, str] = {}
    for pair in env:
        key, sep, value = pair.partition("=")
        if sep and key:
            result[key] = value
    return result


def resize_pty(fd: int, cols: int, rows: int) -> None:
    """Set the window size of the terminal behind ``fd``."""
    if fcntl is None or termios is None:
        raise OSError("PTY resize is not supported on Windows")
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def start_pty(
    directory: str,
    command: str,
    env: EnvLike,
    cols: int,
    rows: int,
) -> PtyProcess:
    """Run ``command`` through ``/bin/sh -c`` in a new session on a fresh terminal.

    ``env`` of ``None`` inherits the current environment. The child leads its
    own process group so the whole tree can be signalled at once.
    """
    if pty is None or sys.platform == "win32":
        raise OSError("PTY spawning is not supported on Windows")
    master, slave = pty.openpty()
    try:
        with suppress(OSError):
            resize_pty(master, cols, rows)
        popen = subprocess.Popen(
            [_SHELL, "-c", command],
            cwd=directory,
            env=_env_dict(env),
            stdin=slave,
            stdout=slave,
            stderr=slave,
            start_new_session=True,
            close_fds=True,
        )
    except BaseException:
        os.close(master)
        raise
    finally:
        os.close(slave)
    return PtyProcess(popen, master)


def graceful_stop(
    process: Optional[_Killable], grace: float, done: threading.Event
) -> None:
    """Terminate the process group, then kill it if ``done`` is not set in ``grace`` seconds.

    This never reaps the process: whoever waits on it sets ``done``.
    """
    if process is None:
        return
    if sys.platform == "win32":
        process.kill()
        return
    try:
        pgid = os.getpgid(process.pid)
    except OSError as exc:
        process.kill()
        raise OSError(f"getpgid: {exc}") from exc

    with suppress(OSError):
        os.killpg(pgid, signal.SIGTERM)
    if done.wait(grace):
        return
    with suppress(OSError):
        os.killpg(pgid, signal.SIGKILL)