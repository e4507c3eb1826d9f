"""Loading, validation and path expansion for the procs configuration file."""

from __future__ import annotations

import dataclasses
import enum
import json
import os
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from .envfile import parse_env_file

DEFAULT_CONFIG_PATH = "~/.config/procs/config.yml"
CONFIG_ENV_VAR = "PROCS_CONFIG"

_ENV_VAR_RE = re.compile(r"\$\{([A-Za-z0-9_]+)\}|\$([A-Za-z0-9_]+)")


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


class RestartMode(str, enum.Enum):
    """What to do when a project's process exits with a failure."""

    NEVER = "never"
    ON_FAILURE = "on-failure"

    def __str__(self) -> str:
        return self.value


@dataclass
class Project:
    """One configured project: where to run and what command to start."""

    path: str = ""
    cmd: str = ""
    restart: Union[RestartMode, str] = ""
    env: dict[str, str] = field(default_factory=dict)
    env_file: str = ""

    def build_env(self, base: Union[Mapping[str, str], Iterable[str]]) -> list[str]:
        """Return the child environment as ``KEY=VALUE`` strings.

        Precedence, later wins: ``base``, then ``env_file``, then ``env``.
        """
        merged: dict[str, str] = {}
        if isinstance(base, Mapping):
            merged.update(base)
        else:
            for pair in base:
                key, sep, value = pair.partition("=")
                if sep and key:
                    merged[key] = value
        if self.env_file:
            try:
                merged.update(parse_env_file(self.env_file))
            except (OSError, ValueError) as exc:
                raise ValueError(f"env_file {self.env_file}: {exc}") from exc
        merged.update(self.env)
        return [f"{key}={value}" for key, value in merged.items()]


@dataclass
class Settings:
    """Global tunables. A zero value in a loaded file falls back to the default."""

    log_buffer_lines: int = 1000
    log_dir: str = "~/.cache/procs/logs"
    log_rotate_size_mb: int = 10
    log_rotate_keep: int = 5
    shutdown_grace_ms: int = 5000
    group_start_delay_ms: int = 300
    restart_backoff_ms: list[int] = field(
        default_factory=lambda: [1000, 2000, 4000, 8000, 16000]
    )
    restart_max_attempts: int = 5
    restart_reset_after_ms: int = 60000
    pty_cols: int = 120
    pty_rows: int = 40
    log_flush_interval_ms: int = 150


@dataclass
class Config:
    """A whole configuration file."""

    projects: dict[str, Project] = field(default_factory=dict)
    groups: dict[str, list[str]] = field(default_factory=dict)
    settings: Settings = field(default_factory=Settings)


def default_settings() -> Settings:
    """Return a fresh copy of the default settings."""
    return Settings()


class ConfigError(Exception):
    """A configuration failure, with the file and key path when known."""

    def __init__(
        self,
        msg: str,
        *,
        path: str = "",
        key_path: str = "",
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(msg)
        self.msg = msg
        self.path = path
        self.key_path = key_path
        self.cause = cause

    def __str__(self) -> str:
        parts = ["config"]
        if self.path:
            parts.append(f" ({self.path})")
        parts.append(": ")
        if self.key_path:
            parts.append(f"{self.key_path}: ")
        parts.append(self.msg)
        if self.cause is not None and str(self.cause) != self.msg:
            parts.append(f" ({self.cause})")
        return "".join(parts)


class ConfigValidationError(ValueError):
    """Several validation problems reported together."""

    def __init__(self, errors: Iterable[Exception]) -> None:
        self.errors = list(errors)
        lines = "\n".join(f"  • {err}" for err in self.errors)
        super().__init__(f"config validation failed:\n{lines}")


def _join(errors: list[Exception]) -> Optional[Exception]:
    if not errors:
        return None
    if len(errors) == 1:
        return errors[0]
    return ConfigValidationError(errors)


def expand_path(p: str) -> str:
    """Expand a leading ``~`` and ``$VAR`` / ``${VAR}`` references.

    ``~user`` is rejected and undefined variables raise ``ValueError``.
    """
    out = p
    if out == "~" or out.startswith("~/"):
        try:
            home = str(Path.home())
        except RuntimeError as exc:
            raise ValueError(f"resolve ~: {exc}") from exc
        out = home + out[1:]
    elif out.startswith("~"):
        raise ValueError(
            f"path {_quote(p)}: ~user expansion not supported; use absolute path or ~/ form"
        )

    missing: list[str] = []

    def substitute(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        value = os.environ.get(name)
        if value is None:
            missing.append(name)
            return ""
        return value

    out = _ENV_VAR_RE.sub(substitute, out)
    if missing:
        raise ValueError(f"path {_quote(p)}: undefined env var(s): {', '.join(missing)}")
    return out


def resolve_path(explicit: Optional[str] = None) -> str:
    """Return the config path: explicit argument, then $PROCS_CONFIG, then the default."""
    if explicit:
        return expand_path(explicit)
    from_env = os.environ.get(CONFIG_ENV_VAR)
    if from_env:
        return expand_path(from_env)
    return expand_path(DEFAULT_CONFIG_PATH)


def load(explicit: Optional[str] = None) -> Config:
    """Resolve the config path, then read, validate and expand the file."""
    try:
        path = resolve_path(explicit)
    except ValueError as exc:
        raise ConfigError("resolve config path", cause=exc) from exc
    return load_from_path(path)


def load_from_path(path: Union[str, os.PathLike[str]]) -> Config:
    """Read, decode, validate and expand the config at an already resolved path."""
    path_text = os.fspath(path)
    try:
        raw = Path(path_text).read_bytes()
    except OSError as exc:
        raise ConfigError("read config file", path=path_text, cause=exc) from exc

    try:
        cfg = _decode(raw)
    except ValueError as exc:
        raise ConfigError(str(exc), path=path_text, cause=exc) from exc

    _apply_defaults(cfg.settings)

    problem = _join(_validate(cfg))
    if problem is not None:
        raise ConfigError(str(problem), path=path_text, cause=problem) from problem
    problem = _join(_expand_all(cfg))
    if problem is not None:
        raise ConfigError(str(problem), path=path_text, cause=problem) from problem
    return cfg


# ---- decoding -------------------------------------------------------------

_TOP_LEVEL_KEYS = frozenset({"projects", "groups", "settings"})
_PROJECT_KEYS = frozenset({"path", "cmd", "restart", "env", "env_file"})
_SETTINGS_FIELDS = {f.name: f for f in dataclasses.fields(Settings)}


def _kind(value: Any) -> str:
    return type(value).__name__


def _mapping(value: Any, where: str) -> Mapping[Any, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{where}: expected a mapping, got {_kind(value)}")
    return value


def _check_keys(data: Mapping[Any, Any], allowed: frozenset[str], where: str) -> None:
    for key in data:
        if key not in allowed:
            raise ValueError(f"{where}: field {key} not found")


def _string(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ValueError(f"{where}: cannot decode {_kind(value)} into a string")
    return str(value)


def _integer(value: Any, where: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{where}: cannot decode {_kind(value)} into an integer")
    return value


def _integer_list(value: Any, where: str) -> list[int]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{where}: expected a list, got {_kind(value)}")
    return [_integer(item, f"{where}[{i}]") for i, item in enumerate(value)]


def _string_list(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{where}: expected a list, got {_kind(value)}")
    return [_string(item, f"{where}[{i}]") for i, item in enumerate(value)]


def _decode_project(value: Any, where: str) -> Project:
    data = _mapping(value, where)
    _check_keys(data, _PROJECT_KEYS, where)
    env = {
        _string(k, f"{where}.env"): _string(v, f"{where}.env.{k}")
        for k, v in _mapping(data.get("env"), f"{where}.env").items()
    }
    return Project(
        path=_string(data.get("path"), f"{where}.path"),
        cmd=_string(data.get("cmd"), f"{where}.cmd"),
        restart=_string(data.get("restart"), f"{where}.restart"),
        env=env,
        env_file=_string(data.get("env_file"), f"{where}.env_file"),
    )


def _decode_settings(value: Any) -> Settings:
    data = _mapping(value, "settings")
    _check_keys(data, frozenset(_SETTINGS_FIELDS), "settings")
    values: dict[str, Any] = {}
    for key, raw in data.items():
        where = f"settings.{key}"
        if key == "restart_backoff_ms":
            values[key] = _integer_list(raw, where)
        elif key == "log_dir":
            values[key] = _string(raw, where)
        else:
            values[key] = _integer(raw, where)
    return Settings(**values)


def _decode(raw: bytes) -> Config:
    try:
        doc = next(iter(yaml.safe_load_all(raw)), None)
    except yaml.YAMLError as exc:
        raise ValueError(f"invalid YAML: {exc}") from exc
    if doc is None:
        raise ValueError("invalid YAML: document is empty")
    try:
        top = _mapping(doc, "config")
        _check_keys(top, _TOP_LEVEL_KEYS, "config")
        projects = {
            str(pid): _decode_project(value, f"projects.{pid}")
            for pid, value in _mapping(top.get("projects"), "projects").items()
        }
        groups = {
            str(name): _string_list(members, f"groups.{name}")
            for name, members in _mapping(top.get("groups"), "groups").items()
        }
        settings = _decode_settings(top.get("settings"))
    except ValueError as exc:
        raise ValueError(f"invalid YAML: {exc}") from exc
    return Config(projects=projects, groups=groups, settings=settings)


# ---- defaults, validation, expansion --------------------------------------


def _apply_defaults(settings: Settings) -> None:
    defaults = default_settings()
    for f in dataclasses.fields(settings):
        if not getattr(settings, f.name):
            setattr(settings, f.name, getattr(defaults, f.name))


def _validate(cfg: Config) -> list[Exception]:
    errors: list[Exception] = []
    if not cfg.projects:
        errors.append(ValueError("projects: at least one project required"))
    for pid, project in cfg.projects.items():
        if not project.path:
            errors.append(ValueError(f"projects.{pid}.path: required"))
        if not project.cmd:
            errors.append(ValueError(f"projects.{pid}.cmd: required"))
        if project.restart == "":
            project.restart = RestartMode.NEVER
        try:
            project.restart = RestartMode(project.restart)
        except ValueError:
            errors.append(
                ValueError(
                    f"projects.{pid}.restart: must be 'never' or 'on-failure', "
                    f"got {_quote(str(project.restart))}"
                )
            )
    for name, members in cfg.groups.items():
        if not members:
            errors.append(ValueError(f"groups.{name}: must have at least one member"))
        for index, member in enumerate(members):
            if member not in cfg.projects:
                errors.append(
                    ValueError(f"groups.{name}[{index}]: unknown project {_quote(member)}")
                )
    s = cfg.settings
    if s.log_buffer_lines < 1:
        errors.append(ValueError("settings.log_buffer_lines: must be positive"))
    if s.log_rotate_keep < 1:
        errors.append(ValueError("settings.log_rotate_keep: must be positive"))
    if s.log_flush_interval_ms < 1:
        errors.append(ValueError("settings.log_flush_interval_ms: must be positive"))
    if s.pty_cols < 1 or s.pty_rows < 1:
        errors.append(ValueError("settings.pty_cols/pty_rows: must be positive"))
    return errors


def _expand_all(cfg: Config) -> list[Exception]:
    errors: list[Exception] = []
    for pid, project in cfg.projects.items():
        try:
            expanded = expand_path(project.path)
        except ValueError as exc:
            errors.append(ValueError(f"projects.{pid}.path: {exc}"))
            continue
        env_file = project.env_file
        if env_file:
            try:
                env_file = expand_path(env_file)
            except ValueError as exc:
                errors.append(ValueError(f"projects.{pid}.env_file: {exc}"))
                continue
        project.path = expanded
        project.env_file = env_file
    try:
        cfg.settings.log_dir = expand_path(cfg.settings.log_dir)
    except ValueError as exc:
        errors.append(ValueError(f"settings.log_dir: {exc}"))
    return errors