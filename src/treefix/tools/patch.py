"""Hunk-tolerant application of the primary unified diff."""

from __future__ import annotations

import hashlib
import logging
import re
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence, Tuple

from ..telemetry import emit_event

LOGGER = logging.getLogger(__name__)


class PatchError(RuntimeError):
    """Raised when a patch is unusable or leaves required artifacts missing."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class HunkStatus(str, Enum):
    APPLIED = "applied"
    REJECTED = "rejected"


_APPLIED_CLEANLY_RE = re.compile(r"^Applied patch (?P<path>.+?) cleanly\.$")
_APPLYING_WITH_REJECTS_RE = re.compile(r"^Applying patch (?P<path>.+?) with (?P<count>\d+) rejects?\.\.\.$")
_HUNK_APPLIED_RE = re.compile(r"^Hunk #(?P<hunk>\d+) applied cleanly\.$")
_HUNK_REJECTED_RE = re.compile(r"^Rejected hunk #(?P<hunk>\d+)\.$")
_PATCH_FAILED_RE = re.compile(r"^error: patch failed: (?P<path>.+?)(?::(?P<line>\d+))?$")
_FILE_FAILED_RE = re.compile(
    r"^error: (?P<path>.+?): (?:No such file or directory|does not exist in index|patch does not apply|already exists in working directory)$"
)
_SKIPPED_RE = re.compile(r"^Skipped patch '?(?P<path>.+?)'?\.$")


@dataclass(slots=True)
class HunkOutcome:
    """Advisory record of how one hunk (or one whole file) fared."""

    path: str
    status: HunkStatus
    hunk: int | None = None
    line: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "hunk": self.hunk, "status": self.status.value, "line": self.line}


@dataclass(slots=True)
class PatchApplication:
    """Outcome of ``git apply --reject`` against a tree."""

    patch_path: Path
    command: Tuple[str, ...]
    returncode: int
    outcomes: Tuple[HunkOutcome, ...] = ()
    stdout: str = ""
    stderr: str = ""

    @property
    def rejected(self) -> Tuple[HunkOutcome, ...]:
        return tuple(item for item in self.outcomes if item.status == HunkStatus.REJECTED)

    @property
    def applied(self) -> Tuple[HunkOutcome, ...]:
        return tuple(item for item in self.outcomes if item.status == HunkStatus.APPLIED)

    @property
    def rejected_paths(self) -> Tuple[str, ...]:
        seen: dict[str, None] = {}
        for item in self.rejected:
            seen.setdefault(item.path, None)
        return tuple(seen)

    def format_summary(self) -> str:
        lines = [f"[apply-patch] {self.patch_path.name}: {len(self.applied)} applied, {len(self.rejected)} rejected"]
        for item in self.rejected:
            where = f"hunk #{item.hunk}" if item.hunk is not None else "whole file"
            at = f" (line {item.line})" if item.line is not None else ""
            lines.append(f"  - rejected {item.path} {where}{at}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "patch_path": self.patch_path.as_posix(),
            "command": list(self.command),
            "returncode": self.returncode,
            "outcomes": [item.to_dict() for item in self.outcomes],
        }


def parse_apply_report(output: str) -> Tuple[HunkOutcome, ...]:
    """Parse ``git apply --reject --verbose`` output into hunk outcomes.

    Per-hunk lines refer to the most recent ``Applying patch`` header. Line
    numbers from ``error: patch failed`` are paired with that file's rejected
    hunks in order.
    """

    outcomes: list[HunkOutcome] = []
    failure_lines: dict[str, list[int | None]] = {}
    wholesale: dict[str, None] = {}
    current: str | None = None

    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        match = _PATCH_FAILED_RE.match(line)
        if match:
            line_text = match.group("line")
            failure_lines.setdefault(match.group("path"), []).append(int(line_text) if line_text else None)
            continue
        match = _FILE_FAILED_RE.match(line) or _SKIPPED_RE.match(line)
        if match:
            wholesale.setdefault(match.group("path"), None)
            continue
        match = _APPLIED_CLEANLY_RE.match(line)
        if match:
            current = None
            outcomes.append(HunkOutcome(match.group("path"), HunkStatus.APPLIED))
            continue
        match = _APPLYING_WITH_REJECTS_RE.match(line)
        if match:
            current = match.group("path")
            continue
        if current is None:
            continue
        match = _HUNK_APPLIED_RE.match(line)
        if match:
            outcomes.append(HunkOutcome(current, HunkStatus.APPLIED, int(match.group("hunk"))))
            continue
        match = _HUNK_REJECTED_RE.match(line)
        if match:
            pending = failure_lines.get(current) or []
            failed_at = pending.pop(0) if pending else None
            outcomes.append(HunkOutcome(current, HunkStatus.REJECTED, int(match.group("hunk")), failed_at))

    reported = {item.path for item in outcomes}
    for path in wholesale:
        if path not in reported:
            outcomes.append(HunkOutcome(path, HunkStatus.REJECTED))
    return tuple(outcomes)


def missing_artifacts(repo_root: Path | str, must_exist: Iterable[str]) -> list[str]:
    root = Path(repo_root)
    return [entry for entry in must_exist if not (root / entry).exists()]


def apply_with_rejects(
    patch_path: Path | str,
    *,
    repo_root: Path | str = ".",
    must_exist: Sequence[str] = (),
) -> PatchApplication:
    """Apply every matching hunk of ``patch_path`` and leave ``.rej`` files for the rest.

    Rejected hunks are not an error. A patch git cannot use at all, or a
    required artifact that is still missing afterwards, raises ``PatchError``.
    """

    root = Path(repo_root).resolve()
    patch = Path(patch_path).resolve()
    if not patch.is_file():
        raise PatchError(f"Patch file not found: {patch}", details={"patch_path": patch.as_posix()})

    command: Tuple[str, ...] = ("git", "apply", "--reject", "--verbose", str(patch))
    emit_event("patch_apply_started", patch_path=patch, repo_root=root)
    try:
        process = subprocess.run(command, cwd=root, capture_output=True, text=True, errors="replace", check=False)
    except FileNotFoundError as error:
        raise PatchError("git executable not found on PATH") from error

    combined = "\n".join(part for part in (process.stderr, process.stdout) if part)
    application = PatchApplication(
        patch_path=patch,
        command=command,
        returncode=process.returncode,
        outcomes=parse_apply_report(combined),
        stdout=process.stdout,
        stderr=process.stderr,
    )

    if process.returncode != 0 and not application.outcomes:
        message = process.stderr.strip() or process.stdout.strip() or "unknown error"
        payload = application.to_dict()
        emit_event("patch_apply_failed", telemetry=payload)
        raise PatchError(f"Patch could not be applied: {message}", details={"application": payload})

    for item in application.rejected:
        LOGGER.warning("Rejected %s hunk %s", item.path, item.hunk if item.hunk is not None else "(all)")
    LOGGER.info(
        "Applied %s: %d hunk(s) applied, %d rejected",
        patch.name,
        len(application.applied),
        len(application.rejected),
    )
    emit_event(
        "patch_apply_finished",
        returncode=process.returncode,
        applied=len(application.applied),
        rejected=len(application.rejected),
        rejected_paths=application.rejected_paths,
    )

    missing = missing_artifacts(root, must_exist)
    if missing:
        emit_event("patch_artifact_missing", missing=missing)
        raise PatchError(
            f"Required artifacts missing after patch: {', '.join(missing)}",
            details={"missing": missing, "application": application.to_dict()},
        )
    return application


def find_rejects(root: Path | str) -> list[Path]:
    base = Path(root)
    return sorted(path for path in base.rglob("*.rej") if ".git" not in path.relative_to(base).parts)


def cleanup_rejects(root: Path | str) -> list[Path]:
    """Delete ``*.rej`` files below ``root`` and return their relative paths."""

    base = Path(root)
    removed: list[Path] = []
    for path in find_rejects(base):
        path.unlink(missing_ok=True)
        removed.append(path.relative_to(base))
    if removed:
        LOGGER.info("Removed %d reject file(s)", len(removed))
    return removed


@dataclass(slots=True)
class PatchDescription:
    """Identity and shape of a patch file."""

    path: Path
    size: int
    sha256: str
    stat: str = ""
    against: Path | None = None
    against_sha256: str | None = None
    notes: list[str] = field(default_factory=list)

    @property
    def matches(self) -> bool | None:
        if self.against_sha256 is None:
            return None
        return self.against_sha256 == self.sha256

    def format_summary(self) -> str:
        lines = [f"{self.path}", f"  size: {self.size} bytes", f"  sha256: {self.sha256}"]
        if self.against is not None:
            verdict = "identical" if self.matches else "DIFFERENT"
            lines.append(f"  compared with {self.against}: {verdict}")
        if self.stat:
            lines.append("  stat:")
            lines.extend(f"    {line}" for line in self.stat.splitlines())
        lines.extend(f"  note: {note}" for note in self.notes)
        return "\n".join(lines)


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def describe_patch(path: Path | str, *, against: Path | str | None = None) -> PatchDescription:
    """Report size, checksum and ``git apply --stat`` for a patch file."""

    patch = Path(path).resolve()
    if not patch.is_file():
        raise PatchError(f"Patch file not found: {patch}")

    description = PatchDescription(path=patch, size=patch.stat().st_size, sha256=_sha256(patch))
    try:
        result = subprocess.run(
            ["git", "apply", "--stat", str(patch)],
            cwd=patch.parent,
            capture_output=True,
            text=True,
            errors="replace",
            check=False,
        )
    except FileNotFoundError:
        description.notes.append("git executable not found; stat unavailable")
    else:
        if result.returncode == 0:
            description.stat = result.stdout.rstrip()
        else:
            description.notes.append(f"git apply --stat failed: {result.stderr.strip() or 'unknown error'}")

    if against is not None:
        other = Path(against).resolve()
        description.against = other
        if other.is_file():
            description.against_sha256 = _sha256(other)
        else:
            description.notes.append(f"comparison file not found: {other}")
    return description


__all__ = [
    "HunkOutcome",
    "HunkStatus",
    "PatchApplication",
    "PatchDescription",
    "PatchError",
    "apply_with_rejects",
    "cleanup_rejects",
    "describe_patch",
    "find_rejects",
    "missing_artifacts",
    "parse_apply_report",
]
