"""Resolve the component version through an ordered fallback chain.

The tiers are tried in order and the first that yields a value wins:

1. ``git describe --tags`` of the component (leading ``v`` stripped), with
   the nearest tag name (``--abbrev=0``) as the Kbuild tag;
2. a numeric version derived from the commit count, paired with a tag built
   from the short revision;
3. the ``KSU_VERSION_TAG_FALLBACK`` / ``KSU_VERSION_FALLBACK`` values declared
   in the component's Kbuild, unless they are the upstream placeholders;
4. a static fallback string.

Resolution never raises; a tier that errors is logged and skipped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Protocol

from .rules.schema import RemediationRule, Transformation, TransformKind
from .telemetry import emit_event
from .tools.vcs import GitError

LOGGER = logging.getLogger(__name__)

_NUMERIC_KEY = "KSU_VERSION_FALLBACK"
_TAG_KEY = "KSU_VERSION_TAG_FALLBACK"
_NUMERIC_PLACEHOLDER = "1"
_TAG_PLACEHOLDER = "v0.0.1"
_KBUILD_ASSIGNMENT_RE = re.compile(r"^(?P<key>KSU_VERSION(?:_TAG)?_FALLBACK)\s*:=\s*(?P<value>\S+)\s*$", re.MULTILINE)


class RevisionHistory(Protocol):
    """Read-only view of a component's revision history."""

    def describe_tag(self) -> str | None: ...

    def latest_tag(self) -> str | None: ...

    def commit_count(self) -> int: ...

    def short_revision(self) -> str | None: ...

    def is_shallow(self) -> bool: ...


@dataclass(slots=True)
class VersionSettings:
    base_offset: int = 30000
    increment: int = 60
    numeric_prefix: str = "1.0-build-"
    tag_prefix: str = "v1.0-susfs-"
    fallback: str = "1.0-unknown"


@dataclass(slots=True)
class VersionInfo:
    """Resolved version and the tier it came from."""

    version: str
    source: str
    numeric: Optional[int] = None
    tag: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.version, "source": self.source, "numeric": self.numeric, "tag": self.tag}


def numeric_version(commit_count: int, settings: VersionSettings) -> int:
    return settings.base_offset + commit_count + settings.increment


class VersionResolver:
    """Walk the fallback chain for one component."""

    def __init__(
        self,
        history: RevisionHistory | None,
        settings: VersionSettings | None = None,
        *,
        kbuild: Path | str | None = None,
    ) -> None:
        self.history = history
        self.settings = settings or VersionSettings()
        self.kbuild = Path(kbuild) if kbuild is not None else None

    def resolve(self) -> VersionInfo:
        count = self._commit_count()
        info = self._from_tag(count) or self._from_commit_count(count) or self._from_kbuild()
        if info is None:
            LOGGER.warning("No version information found; using %s", self.settings.fallback)
            info = VersionInfo(version=self.settings.fallback, source="static")
        LOGGER.info("Resolved version %s (source: %s)", info.version, info.source)
        emit_event("version_resolved", **info.to_dict())
        return info

    def _commit_count(self) -> int:
        if self.history is None:
            return 0
        try:
            if self.history.is_shallow():
                LOGGER.warning("Component history is shallow; the commit count will be too low")
            return self.history.commit_count()
        except GitError as error:
            LOGGER.warning("Unable to count commits: %s", error)
            return 0

    def _from_tag(self, count: int) -> VersionInfo | None:
        if self.history is None:
            return None
        try:
            described = self.history.describe_tag()
        except GitError as error:
            LOGGER.warning("git describe failed: %s", error)
            return None
        if not described:
            return None
        try:
            tag = self.history.latest_tag() or described
        except GitError as error:
            LOGGER.warning("Unable to read the latest tag: %s", error)
            tag = described
        numeric = numeric_version(count, self.settings) if count > 0 else None
        return VersionInfo(version=described.removeprefix("v"), source="tag", numeric=numeric, tag=tag)

    def _from_commit_count(self, count: int) -> VersionInfo | None:
        if count <= 0:
            return None
        try:
            revision = self.history.short_revision() if self.history is not None else None
        except GitError as error:
            LOGGER.warning("Unable to read the short revision: %s", error)
            revision = None
        numeric = numeric_version(count, self.settings)
        return VersionInfo(
            version=f"{self.settings.numeric_prefix}{numeric}",
            source="commit-count",
            numeric=numeric,
            tag=f"{self.settings.tag_prefix}{revision or 'unknown'}",
        )

    def _from_kbuild(self) -> VersionInfo | None:
        if self.kbuild is None or not self.kbuild.is_file():
            return None
        try:
            text = self.kbuild.read_text(encoding="utf-8", errors="replace")
        except OSError as error:
            LOGGER.warning("Unable to read %s: %s", self.kbuild, error)
            return None

        declared = {match.group("key"): match.group("value") for match in _KBUILD_ASSIGNMENT_RE.finditer(text)}
        tag = declared.get(_TAG_KEY)
        numeric_text = declared.get(_NUMERIC_KEY)
        numeric = int(numeric_text) if numeric_text and numeric_text.isdigit() and numeric_text != _NUMERIC_PLACEHOLDER else None
        if tag and tag != _TAG_PLACEHOLDER:
            return VersionInfo(version=tag.removeprefix("v"), source="kbuild", numeric=numeric, tag=tag)
        if numeric is not None:
            return VersionInfo(version=f"{self.settings.numeric_prefix}{numeric}", source="kbuild", numeric=numeric)
        return None


def persist_version(info: VersionInfo, path: Path | str) -> Path:
    """Write the resolved version string to ``path`` as a single line."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(f"{info.version}\n", encoding="utf-8")
    return target


def kbuild_fallback_rules(info: VersionInfo, *, target_file: str = "Kbuild") -> List[RemediationRule]:
    """Rules that replace the placeholder Kbuild fallbacks with ``info``."""

    rules: List[RemediationRule] = []
    if info.numeric is not None:
        line = f"{_NUMERIC_KEY} := {info.numeric}"
        rules.append(
            RemediationRule(
                id="kbuild-version-fallback",
                target_file=target_file,
                description="Inject the computed numeric version.",
                precondition_marker=f"{line}\n",
                transformation=Transformation(
                    kind=TransformKind.REPLACE_BLOCK,
                    old_block=f"{_NUMERIC_KEY} := {_NUMERIC_PLACEHOLDER}\n",
                    text=f"{line}\n",
                ),
                verification_marker=line,
            )
        )
    if info.tag:
        line = f"{_TAG_KEY} := {info.tag}"
        rules.append(
            RemediationRule(
                id="kbuild-version-tag-fallback",
                target_file=target_file,
                description="Inject the computed version tag.",
                precondition_marker=f"{line}\n",
                transformation=Transformation(
                    kind=TransformKind.REPLACE_BLOCK,
                    old_block=f"{_TAG_KEY} := {_TAG_PLACEHOLDER}\n",
                    text=f"{line}\n",
                ),
                verification_marker=line,
            )
        )
    return rules


__all__ = [
    "RevisionHistory",
    "VersionInfo",
    "VersionResolver",
    "VersionSettings",
    "kbuild_fallback_rules",
    "numeric_version",
    "persist_version",
]
