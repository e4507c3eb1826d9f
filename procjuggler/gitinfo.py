"""Querying and updating git repositories through the git command."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass

GIT_TIMEOUT = 0.3
NETWORK_TIMEOUT = 30.0


class GitError(Exception):
    """A git query or command failed."""


class GitNotFoundError(GitError):
    """The git binary is not available."""

    def __init__(self) -> None:
        super().__init__("gitinfo: git binary not found")


class GitExecError(GitError):
    """git exited with a non-zero status."""

    def __init__(self, code: int, stderr: str) -> None:
        self.code = code
        self.stderr = stderr
        super().__init__(f"git exited {code}: {stderr.strip()}")


@dataclass(frozen=True)
class GitInfo:
    """Branch name, divergence from upstream and dirtiness of a repository."""

    branch: str
    ahead: int = 0
    behind: int = 0
    dirty: bool = False


def _run_git(directory: str, *args: str, timeout: float = GIT_TIMEOUT) -> str:
    command = ["git", "-C", str(directory), "--no-optional-locks", *args]
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as exc:
        raise GitNotFoundError() from exc
    except subprocess.TimeoutExpired as exc:
        raise GitExecError(-1, f"timed out after {timeout}s") from exc
    if result.returncode != 0:
        raise GitExecError(result.returncode, result.stderr or "")
    return result.stdout


def _atoi(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        return 0


def _branch(directory: str) -> str:
    branch = _run_git(directory, "rev-parse", "--abbrev-ref", "HEAD").strip()
    if not branch:
        raise GitError("gitinfo: empty branch output")
    return branch


def _ahead_behind(directory: str) -> tuple[int, int]:
    try:
        out = _run_git(directory, "rev-list", "--left-right", "--count", "@{u}...HEAD")
    except GitExecError as exc:
        if exc.code == 128:  # no upstream configured
            return 0, 0
        raise
    fields = out.split()
    if len(fields) < 2:
        return 0, 0
    # Left is the upstream (behind), right is HEAD (ahead).
    return _atoi(fields[1]), _atoi(fields[0])


def _dirty(directory: str) -> bool:
    return _run_git(directory, "status", "--porcelain=v1", "-uno").strip() != ""


def current(directory: str) -> GitInfo:
    """Return git info for the repository at ``directory``.

    Only a failure to read the branch raises; ahead/behind and dirtiness fall
    back to zero and ``False`` when they cannot be determined.
    """
    branch = _branch(directory)
    try:
        ahead, behind = _ahead_behind(directory)
    except GitError:
        ahead, behind = 0, 0
    try:
        dirty = _dirty(directory)
    except GitError:
        dirty = False
    return GitInfo(branch=branch, ahead=ahead, behind=behind, dirty=dirty)


def branches(directory: str) -> list[str]:
    """Return the local branch names; empty when the repository has no commits."""
    out = _run_git(directory, "branch", "--list", "--format=%(refname:short)")
    return [name for name in (line.strip() for line in out.split("\n")) if name]


def checkout(directory: str, branch: str) -> None:
    """Switch the working tree to ``branch`` without forcing."""
    _run_git(directory, "checkout", branch)


def fetch(directory: str) -> str:
    """Run ``git fetch --prune`` and return its standard output."""
    return _run_git(directory, "fetch", "--prune", timeout=NETWORK_TIMEOUT)


def pull(directory: str) -> str:
    """Run ``git pull --ff-only`` and return its standard output."""
    return _run_git(directory, "pull", "--ff-only", timeout=NETWORK_TIMEOUT)