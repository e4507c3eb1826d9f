"""Parsing of ``KEY=VALUE`` environment files."""

from __future__ import annotations

import json
import os
from pathlib import Path

_EXPORT_PREFIX = "export "
_QUOTES = ("\"", "'")


def parse_env_file(path: str | os.PathLike[str]) -> dict[str, str]:
    """Read a ``KEY=VALUE`` file into a dict.

    Blank lines and ``#`` comments are skipped, an optional ``export `` prefix
    is accepted, and matching outer quotes around a value are removed.
    Raises ``OSError`` when the file cannot be read and ``ValueError`` naming
    the offending line when a line has no key.
    """
    text = Path(path).read_text(encoding="utf-8")
    result: dict[str, str] = {}
    for line_no, line in enumerate(text.split("\n"), start=1):
        raw = line.strip()
        if not raw or raw.startswith("#"):
            continue
        if raw.startswith(_EXPORT_PREFIX):
            raw = raw[len(_EXPORT_PREFIX):].strip()
        key, sep, value = raw.partition("=")
        if not sep or not key:
            quoted = json.dumps(raw, ensure_ascii=False)
            raise ValueError(f"line {line_no}: missing '=': {quoted}")
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in _QUOTES:
            value = value[1:-1]
        result[key] = value
    return result