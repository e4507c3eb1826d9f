"""Helpers for removing ANSI escape sequences from terminal output."""

from __future__ import annotations

import re

# CSI sequences (colour, cursor movement, erase, ...), OSC strings ended by BEL,
# and two-byte escapes.
_ANSI_SEQ = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07]*\x07|\x1b[@-_]")

# Cursor movement, erase and save/restore escapes that would corrupt a viewport.
# Colour and attribute SGR (ESC[ ... m) is left alone.
_CURSOR_MOVE_SEQ = re.compile(r"\x1b\[[0-9;]*[ABCDEFGHJKSTfhlnsu]")


def strip_ansi(s: str) -> str:
    """Remove every ANSI escape sequence from ``s``."""
    return _ANSI_SEQ.sub("", s)


def decode_for_render(b: bytes | str) -> str:
    """Decode terminal output, dropping layout escapes but keeping colour codes."""
    text = b if isinstance(b, str) else bytes(b).decode("utf-8", errors="replace")
    return _CURSOR_MOVE_SEQ.sub("", text)