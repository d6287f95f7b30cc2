"""Minimal git helpers
The helpers below provide just enough structure to restore tracked files to
their committed state and read the revision metadata used for version
resolution.
"""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

import subprocess


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


def _decode(payload: bytes | None) -> str:
    return payload.decode("utf-8", errors="replace") if payload else ""


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str) -> "GitRepository":
        """Locate the nearest git repository at or above ``start`` (symlinks resolved)."""

        path = Path(start).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate)
        raise GitError(f"Unable to locate a git repository from {path}")

    # ------------------------------------------------------------------ git IO
    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return _run_git(list(args), cwd=self.root, check=check)

    # ---------------------------------------------------------------- restore
    def restore_path(self, path: Path | str) -> None:
        """Reset ``path`` in the work tree to its committed content."""

        relative = Path(path).as_posix()
        result = self.git("checkout", "--", relative, check=False)
        if result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git checkout -- {relative} failed: {message}")

    # --------------------------------------------------------------- revisions
    def describe_tag(self) -> str | None:
        """Return ``git describe --tags`` output or ``None`` when no tag is reachable."""

        result = self.git("describe", "--tags", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def latest_tag(self) -> str | None:
        """Return the nearest reachable tag name (``git describe --tags --abbrev=0``)."""

        result = self.git("describe", "--tags", "--abbrev=0", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def commit_count(self) -> int:
        """Return the number of commits reachable from ``HEAD`` (``0`` when unborn)."""

        result = self.git("rev-list", "--count", "HEAD", check=False)
        if result.returncode != 0:
            return 0
        try:
            return int(result.stdout.strip())
        except ValueError:
            return 0

    def short_revision(self) -> str | None:
        """Return the abbreviated ``HEAD`` revision."""

        result = self.git("rev-parse", "--short", "HEAD", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def is_shallow(self) -> bool:
        """Return ``True`` for shallow clones, whose commit count is truncated."""

        result = self.git("rev-parse", "--is-shallow-repository", check=False)
        return result.returncode == 0 and result.stdout.strip() == "true"


def _run_git(args: Sequence[str], *, cwd: Path, check: bool = True) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=False,
            check=False,
        )
    except FileNotFoundError as error:
        raise GitError("git executable not found on PATH") from error
    result = subprocess.CompletedProcess(process.args, process.returncode, _decode(process.stdout), _decode(process.stderr))
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


__all__ = ["GitError", "GitRepository"]
