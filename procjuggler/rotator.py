"""An append-only log file writer with size-based rotation."""

from __future__ import annotations

import os
import sys
import threading
from pathlib import Path
from types import TracebackType
from typing import BinaryIO


class Rotator:
    """Appends to ``path`` and rotates it once it reaches ``max_size_mb``.

    Rotation drops ``path.N``, shifts ``path.(N-1)`` to ``path.N`` and so on,
    and finally renames ``path`` to ``path.1``. Writes are thread-safe.
    """

    def __init__(self, path: str | os.PathLike[str], max_size_mb: int, max_backups: int) -> None:
        self.path = os.fspath(path)
        self.max_bytes = max(1, max_size_mb) * 1024 * 1024
        self.max_backups = max(1, max_backups)
        self._lock = threading.Lock()
        self._file: BinaryIO | None = None
        self._written = 0
        self._open()

    def _open(self) -> None:
        try:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OSError(f"mkdir log dir: {exc}") from exc
        try:
            handle = open(self.path, "ab", buffering=0)
        except OSError as exc:
            raise OSError(f"open log: {exc}") from exc
        try:
            size = os.fstat(handle.fileno()).st_size
        except OSError as exc:
            handle.close()
            raise OSError(f"stat log: {exc}") from exc
        self._file = handle
        self._written = size

    def write(self, data: bytes) -> int:
        """Append ``data`` and return the number of bytes written."""
        with self._lock:
            if self._file is None:
                self._open()
            assert self._file is not None
            count = self._file.write(bytes(data)) or 0
            self._written += count
            if self._written >= self.max_bytes:
                try:
                    self._rotate()
                except OSError as exc:
                    print(f"procs: rotation failed for {self.path}: {exc}", file=sys.stderr)
            return count

    def close(self) -> None:
        """Close the current file; a later write opens it again."""
        with self._lock:
            if self._file is None:
                return
            handle, self._file = self._file, None
            handle.close()

    def __enter__(self) -> Rotator:
        return self

    def __exit__(
        self,
        *args: type[BaseException] | BaseException | TracebackType | None,
    ) -> None:
        self.close()

    def _backup(self, index: int) -> str:
        return f"{self.path}.{index}"

    def _rotate(self) -> None:
        if self._file is not None:
            handle, self._file = self._file, None
            handle.close()

        drop = self._backup(self.max_backups)
        if os.path.exists(drop):
            os.remove(drop)

        for index in range(self.max_backups - 1, 0, -1):
            src = self._backup(index)
            if os.path.exists(src):
                os.rename(src, self._backup(index + 1))

        if os.path.exists(self.path):
            os.rename(self.path, self._backup(1))
        self._open()