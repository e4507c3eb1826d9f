"""Sampling CPU and resident memory of a process tree."""

from __future__ import annotations

import threading
from dataclasses import dataclass

import psutil


@dataclass
class Stats:
    """Summed tree-wide usage: ``cpu`` in percent (may exceed 100), ``rss`` in bytes."""

    cpu: float = 0.0
    rss: int = 0


class Sampler:
    """Caches process handles so each CPU reading is a delta since the last sample.

    The first sample of a process reports 0.0 CPU. Safe for concurrent use.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: dict[int, psutil.Process] = {}

    def sample(self, pid: int) -> Stats:
        """Return summed CPU and RSS of ``pid`` and all its descendants.

        Raises ``ValueError`` for a non-positive pid and ``psutil.Error`` when
        the root process cannot be opened. Descendants that vanish are skipped.
        """
        if pid <= 0:
            raise ValueError(f"procstats: invalid pid {pid}")
        root = self._handle_for(pid)
        total = Stats()
        self._accumulate(root, total)
        try:
            kids = root.children()
        except psutil.Error:
            kids = []
        for kid in kids:
            self._accumulate_tree(kid.pid, total)
        return total

    def forget(self, pid: int) -> None:
        """Drop the cached handle of ``pid`` so the next sample starts a fresh baseline."""
        with self._lock:
            self._handles.pop(pid, None)

    def is_cached(self, pid: int) -> bool:
        """Whether a handle for ``pid`` is cached."""
        with self._lock:
            return pid in self._handles

    def _handle_for(self, pid: int) -> psutil.Process:
        with self._lock:
            handle = self._handles.get(pid)
        if handle is not None:
            return handle
        handle = psutil.Process(pid)
        with self._lock:
            return self._handles.setdefault(pid, handle)

    @staticmethod
    def _accumulate(process: psutil.Process, out: Stats) -> None:
        try:
            out.cpu += process.cpu_percent(interval=None)
        except psutil.Error:
            pass
        try:
            out.rss += process.memory_info().rss
        except psutil.Error:
            pass

    def _accumulate_tree(self, pid: int, out: Stats) -> None:
        try:
            handle = self._handle_for(pid)
        except psutil.Error:
            return
        self._accumulate(handle, out)
        try:
            kids = handle.children()
        except psutil.Error:
            return
        for kid in kids:
            self._accumulate_tree(kid.pid, out)