"""Reset the files a previous run may have touched to their committed content."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, List, Mapping

from ..telemetry import emit_event
from .vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class BaselineReport:
    """What ``restore_baseline`` did to each path."""

    restored: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    def format_summary(self) -> str:
        return (
            f"[restore-baseline] {len(self.restored)} restored, {len(self.missing)} missing, "
            f"{len(self.failed)} failed, {len(self.removed)} generated removed"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "restored": list(self.restored),
            "missing": list(self.missing),
            "failed": list(self.failed),
            "removed": list(self.removed),
        }


def _ordered_paths(groups: Mapping[str, Iterable[str]]) -> List[str]:
    seen: dict[str, None] = {}
    for paths in groups.values():
        for path in paths:
            seen.setdefault(Path(path).as_posix(), None)
    return list(seen)


def restore_baseline(
    repo: GitRepository,
    groups: Mapping[str, Iterable[str]],
    *,
    generated: Iterable[str] = (),
) -> BaselineReport:
    """Restore every path named in ``groups`` and delete ``generated`` artifacts.

    A path listed in several groups is restored once, in first-seen order.
    Paths absent from the work tree are skipped and a git failure on one path
    is recorded without stopping the others; restoration is never fatal.
    """

    report = BaselineReport()
    for relative in _ordered_paths(groups):
        if not (repo.root / relative).exists():
            LOGGER.debug("Baseline path %s is absent; skipping", relative)
            report.missing.append(relative)
            continue
        try:
            repo.restore_path(relative)
        except GitError as error:
            LOGGER.warning("Unable to restore %s: %s", relative, error)
            report.failed.append(relative)
            continue
        report.restored.append(relative)

    for entry in generated:
        relative = Path(entry).as_posix()
        target = repo.root / relative
        if target.is_file() or target.is_symlink():
            target.unlink()
            report.removed.append(relative)
            LOGGER.debug("Removed generated artifact %s", relative)

    LOGGER.info(
        "Baseline restored: %d restored, %d missing, %d failed, %d removed",
        len(report.restored),
        len(report.missing),
        len(report.failed),
        len(report.removed),
    )
    emit_event("baseline_restored", **report.to_dict())
    return report


__all__ = ["BaselineReport", "restore_baseline"]
