"""Splitting a terminal byte stream into log lines."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

_LF = 0x0A
_CR = 0x0D
DEFAULT_MAX_LINE_SIZE = 64 * 1024


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Line:
    """One logical log line.

    ``data`` may hold ANSI escapes. ``is_partial`` is true when the line was
    force-split at the size limit or emitted at the end of the stream.
    """

    data: bytes
    is_partial: bool = False
    timestamp: datetime = field(default_factory=_now)


def _safe_split_offset(buf: bytes, cap: int, floor: int) -> int:
    """Return an offset not past ``cap`` that does not cut a UTF-8 code point."""
    off = cap
    for _ in range(3):
        if off <= floor or off >= len(buf):
            break
        if buf[off] & 0xC0 != 0x80:
            break
        off -= 1
    return cap if off == floor else off


class LineBuffer:
    """Turns chunks of output into lines.

    LF ends a line, CRLF counts as one terminator, a bare CR drops what was
    written since the line began, and lines longer than ``max_line_size`` are
    split on a UTF-8 boundary and marked partial.
    """

    def __init__(
        self,
        max_line_size: int = 0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.max_line_size = max_line_size if max_line_size > 0 else DEFAULT_MAX_LINE_SIZE
        self._clock = clock or _now
        self._buf = b""

    def feed(self, chunk: bytes) -> list[Line]:
        """Add ``chunk`` and return the lines it completes; the tail is kept."""
        if not chunk:
            return []
        combined = self._buf + bytes(chunk)
        now = self._clock()
        lines: list[Line] = []
        line_start = 0
        i = 0
        size = len(combined)
        while i < size:
            byte = combined[i]
            if byte == _CR:
                if i + 1 < size and combined[i + 1] == _LF:
                    lines.append(Line(combined[line_start:i], False, now))
                    i += 2
                    line_start = i
                    continue
                line_start = i + 1
                i += 1
                continue
            if byte == _LF:
                lines.append(Line(combined[line_start:i], False, now))
                i += 1
                line_start = i
                continue
            if i - line_start >= self.max_line_size:
                cap = line_start + self.max_line_size
                safe = _safe_split_offset(combined, cap, line_start)
                lines.append(Line(combined[line_start:safe], True, now))
                line_start = safe
            i += 1
        self._buf = combined[line_start:]
        return lines

    def flush(self) -> Line | None:
        """Return the pending partial line, if any, and clear the buffer."""
        if not self._buf:
            return None
        line = Line(self._buf, True, self._clock())
        self._buf = b""
        return line