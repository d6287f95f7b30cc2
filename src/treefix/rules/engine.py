"""Anchor-based remediation engine.

Every rule is evaluated as a pure function of the target file's content: the
engine reads the whole file, computes the new content and an outcome, then
writes the whole file back atomically. Rules run strictly in authored order
because later rules may anchor on text that earlier rules inserted (or rely on
it not being there yet).
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from ..telemetry import emit_event
from .report import FailureReason, RuleOutcome, RuleStatus, RunReport
from .schema import RemediationRule, TransformKind

LOGGER = logging.getLogger(__name__)

_ENCODING = "utf-8"
_ERRORS = "surrogateescape"


class RuleError(RuntimeError):
    """Raised while locating a rule's scope or anchor."""

    def __init__(self, reason: FailureReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason


@dataclass(slots=True)
class RuleEvaluation:
    """New file content paired with the outcome that produced it."""

    content: str
    outcome: RuleOutcome


def read_source(path: Path) -> str:
    """Read ``path`` without normalising newlines or rejecting odd bytes."""
    with path.open("r", encoding=_ENCODING, errors=_ERRORS, newline="") as handle:
        return handle.read()


def write_source(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` in a single rename."""
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "w", encoding=_ENCODING, errors=_ERRORS, newline="") as handle:
            handle.write(content)
        shutil.copymode(path, temp_path)
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def _ensure_newline(text: str) -> str:
    return text if text.endswith("\n") else text + "\n"


def _line_matches(line: str, pattern: str, regex: bool) -> bool:
    body = line.rstrip("\r\n")
    if regex:
        return re.search(pattern, body) is not None
    return pattern in body


def locate_scope(lines: list[str], opener: str) -> tuple[int, int]:
    """Return the inclusive line range of the function opened by ``opener``.

    The opener must start exactly one line; the scope ends at the next line
    that starts with a closing brace in column 0.
    """
    starts = [index for index, line in enumerate(lines) if line.startswith(opener)]
    if not starts:
        raise RuleError(FailureReason.SCOPE_NOT_FOUND, f"no line starts with {opener!r}")
    if len(starts) > 1:
        numbers = ", ".join(str(index + 1) for index in starts)
        raise RuleError(FailureReason.AMBIGUOUS_SCOPE, f"{opener!r} opens {len(starts)} scopes (lines {numbers})")
    start = starts[0]
    for index in range(start + 1, len(lines)):
        if lines[index].startswith("}"):
            return start, index
    raise RuleError(FailureReason.SCOPE_NOT_FOUND, f"scope opened by {opener!r} is never closed")


def locate_anchor(lines: list[str], anchor: str, *, regex: bool = False, scope: tuple[int, int] | None = None) -> int:
    """Return the index of the single line matching ``anchor`` within ``scope``."""
    start, end = scope if scope is not None else (0, len(lines) - 1)
    matches = [index for index in range(start, end + 1) if _line_matches(lines[index], anchor, regex)]
    if not matches:
        raise RuleError(FailureReason.ANCHOR_NOT_FOUND, f"anchor {anchor!r} not found")
    if len(matches) > 1:
        numbers = ", ".join(str(index + 1) for index in matches)
        raise RuleError(FailureReason.AMBIGUOUS_ANCHOR, f"anchor {anchor!r} matches {len(matches)} lines ({numbers})")
    return matches[0]


def _count_occurrences(haystack: str, needle: str) -> list[int]:
    positions: list[int] = []
    start = haystack.find(needle)
    while start != -1:
        positions.append(start)
        start = haystack.find(needle, start + 1)
    return positions


def _transform(rule: RemediationRule, content: str) -> str:
    transformation = rule.transformation
    if transformation.kind == TransformKind.APPEND:
        prefix = content if not content or content.endswith("\n") else content + "\n"
        return prefix + _ensure_newline(transformation.text)

    lines = content.splitlines(keepends=True)
    scope = locate_scope(lines, rule.within) if rule.within else None

    if transformation.kind == TransformKind.REPLACE_BLOCK:
        old_block = transformation.old_block or ""
        if scope is not None:
            offset = len("".join(lines[: scope[0]]))
            region = "".join(lines[scope[0] : scope[1] + 1])
        else:
            offset, region = 0, content
        positions = _count_occurrences(region, old_block)
        if not positions:
            raise RuleError(FailureReason.ANCHOR_NOT_FOUND, "old block not found verbatim")
        if len(positions) > 1:
            raise RuleError(FailureReason.AMBIGUOUS_ANCHOR, f"old block occurs {len(positions)} times")
        begin = offset + positions[0]
        return content[:begin] + transformation.text + content[begin + len(old_block) :]

    index = locate_anchor(lines, rule.anchor or "", regex=rule.anchor_regex, scope=scope)
    payload = _ensure_newline(transformation.text)
    if transformation.kind == TransformKind.INSERT_AFTER:
        lines[index] = _ensure_newline(lines[index])
        lines.insert(index + 1, payload)
    else:
        lines.insert(index, payload)
    return "".join(lines)


def evaluate_rule(rule: RemediationRule, content: str) -> RuleEvaluation:
    """Apply ``rule`` to ``content`` without touching the filesystem."""

    if rule.precondition_marker in content or rule.verification_marker in content:
        outcome = RuleOutcome(rule.id, rule.target_file, RuleStatus.SKIPPED_ALREADY_PRESENT)
        return RuleEvaluation(content, outcome)

    try:
        updated = _transform(rule, content)
    except RuleError as error:
        outcome = RuleOutcome(rule.id, rule.target_file, RuleStatus.FAILED, error.reason, str(error))
        return RuleEvaluation(content, outcome)

    if rule.verification_marker not in updated:
        outcome = RuleOutcome(
            rule.id,
            rule.target_file,
            RuleStatus.FAILED,
            FailureReason.VERIFICATION_MISSING,
            f"marker {rule.verification_marker!r} absent after transformation",
        )
        return RuleEvaluation(updated, outcome)

    return RuleEvaluation(updated, RuleOutcome(rule.id, rule.target_file, RuleStatus.APPLIED))


class RuleEngine:
    """Run ordered remediation rules against a source tree."""

    def __init__(self, root: Path | str, *, dry_run: bool = False) -> None:
        self.root = Path(root).resolve()
        self.dry_run = dry_run

    def run_rule(self, rule: RemediationRule) -> RuleOutcome:
        target = self.root / rule.target_file
        if not target.is_file():
            return RuleOutcome(
                rule.id,
                rule.target_file,
                RuleStatus.FAILED,
                FailureReason.TARGET_MISSING,
                f"{rule.target_file} does not exist",
            )

        original = read_source(target)
        evaluation = evaluate_rule(rule, original)
        if evaluation.content != original and not self.dry_run:
            write_source(target, evaluation.content)
        return evaluation.outcome

    def run(self, rules: Iterable[RemediationRule], *, stage: str = "remediate") -> RunReport:
        """Run every rule in order; rule failures never stop the remaining rules."""

        report = RunReport(stage=stage)
        for rule in rules:
            outcome = self.run_rule(rule)
            log_outcome(stage, outcome)
            report.record(outcome)
        return report


def log_outcome(stage: str, outcome: RuleOutcome) -> None:
    if outcome.status == RuleStatus.APPLIED:
        LOGGER.info("%s: applied %s to %s", stage, outcome.rule_id, outcome.target_file)
        emit_event("rule_applied", stage=stage, rule=outcome.rule_id, path=outcome.target_file)
    elif outcome.status == RuleStatus.SKIPPED_ALREADY_PRESENT:
        LOGGER.info("%s: %s already present in %s", stage, outcome.rule_id, outcome.target_file)
        emit_event("rule_skipped", stage=stage, rule=outcome.rule_id, path=outcome.target_file)
    else:
        LOGGER.warning("%s: %s failed (%s): %s", stage, outcome.rule_id, outcome.reason.value if outcome.reason else "?", outcome.detail)
        emit_event(
            "rule_failed",
            stage=stage,
            rule=outcome.rule_id,
            path=outcome.target_file,
            reason=outcome.reason,
            detail=outcome.detail,
        )


__all__ = [
    "RuleEngine",
    "RuleError",
    "RuleEvaluation",
    "evaluate_rule",
    "locate_anchor",
    "locate_scope",
    "log_outcome",
    "read_source",
    "write_source",
]
