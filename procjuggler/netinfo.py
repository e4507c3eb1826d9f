"""Finding the TCP port a process is listening on."""

from __future__ import annotations

import os
import re
import subprocess
import sys
from collections.abc import Iterable

LSOF_TIMEOUT = 0.5
_TCP_LISTEN = "0A"
_SOCKET_PREFIX = "socket:["
_HEX_RE = re.compile(r"[0-9A-Fa-f]+")
_INT_RE = re.compile(r"[+-]?[0-9]+")


class NoPortError(LookupError):
    """No listening TCP port was found for the process."""

    def __init__(self, message: str = "netinfo: no listening port found") -> None:
        super().__init__(message)


def _smallest(ports: Iterable[int | None]) -> int | None:
    found = [port for port in ports if port]
    return min(found) if found else None


def parse_last_port(addr: str) -> int | None:
    """Return the port after the last ``:`` of an address, or ``None``.

    Handles ``1.2.3.4:PORT``, ``*:PORT`` and ``[::1]:PORT``.
    """
    _, sep, port_text = addr.rpartition(":")
    if not sep or not _INT_RE.fullmatch(port_text):
        return None
    port = int(port_text)
    if port <= 0 or port > 65535:
        return None
    return port


def parse_proc_net_tcp(text: str, inodes: Iterable[str]) -> int | None:
    """Return the smallest LISTEN port in a ``/proc/net/tcp`` table whose inode is wanted."""
    wanted = set(inodes)
    ports: list[int] = []
    for line in text.split("\n")[1:]:
        fields = line.split()
        if len(fields) < 10:
            continue
        if fields[3] != _TCP_LISTEN or fields[9] not in wanted:
            continue
        _, sep, port_hex = fields[1].partition(":")
        if not sep or not _HEX_RE.fullmatch(port_hex):
            continue
        port = int(port_hex, 16)
        if 0 < port <= 65535:
            ports.append(port)
    return _smallest(ports)


def parse_lsof_output(output: str, pid: int) -> int | None:
    """Return the smallest port in ``lsof -F pn`` output that belongs to ``pid``."""
    target = str(pid)
    in_target = False
    ports: list[int | None] = []
    for line in output.split("\n"):
        if line.startswith("p"):
            in_target = line[1:] == target
            continue
        if in_target and line.startswith("n"):
            ports.append(parse_last_port(line[1:]))
    return _smallest(ports)


def _socket_inodes(pid: int) -> set[str]:
    fd_dir = f"/proc/{pid}/fd"
    inodes: set[str] = set()
    with os.scandir(fd_dir) as entries:
        for entry in entries:
            try:
                target = os.readlink(entry.path)
            except OSError:
                continue
            if target.startswith(_SOCKET_PREFIX) and target.endswith("]"):
                inodes.add(target[len(_SOCKET_PREFIX):-1])
    return inodes


def _port_for_pid_linux(pid: int) -> int:
    try:
        inodes = _socket_inodes(pid)
    except OSError as exc:
        raise OSError(f"netinfo: read fds for pid {pid}: {exc}") from exc
    if not inodes:
        raise NoPortError()
    ports: list[int | None] = []
    for name in ("tcp", "tcp6"):
        try:
            with open(f"/proc/{pid}/net/{name}", encoding="ascii", errors="replace") as handle:
                ports.append(parse_proc_net_tcp(handle.read(), inodes))
        except OSError:
            continue
    port = _smallest(ports)
    if port is None:
        raise NoPortError()
    return port


def _port_for_pid_darwin(pid: int) -> int:
    command = ["lsof", "-iTCP", "-sTCP:LISTEN", "-P", "-n", "-F", "pn"]
    try:
        result = subprocess.run(
            command, capture_output=True, text=True, timeout=LSOF_TIMEOUT, check=False
        )
    except subprocess.TimeoutExpired as exc:
        raise TimeoutError("netinfo: lsof timeout") from exc
    except OSError as exc:
        raise NoPortError() from exc
    # lsof exits 1 when there are no listening sockets at all.
    if result.returncode != 0 and not result.stdout:
        raise NoPortError()
    port = parse_lsof_output(result.stdout, pid)
    if port is None:
        raise NoPortError()
    return port


def port_for_pid(pid: int) -> int:
    """Return the smallest TCP port that ``pid`` is listening on.

    Raises ``NoPortError`` when there is none, ``OSError`` when the process
    cannot be inspected, and ``NotImplementedError`` on unsupported systems.
    """
    if sys.platform.startswith("linux"):
        return _port_for_pid_linux(pid)
    if sys.platform == "darwin":
        return _port_for_pid_darwin(pid)
    raise NotImplementedError("netinfo: port-from-pid not supported on this OS")