"""Per-rule outcomes and the stage-level report that aggregates them."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List


class RuleStatus(str, Enum):
    """Outcome of evaluating one rule."""

    APPLIED = "applied"
    SKIPPED_ALREADY_PRESENT = "skipped_already_present"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why a rule reported ``failed``."""

    TARGET_MISSING = "target_missing"
    SCOPE_NOT_FOUND = "scope_not_found"
    AMBIGUOUS_SCOPE = "ambiguous_scope"
    ANCHOR_NOT_FOUND = "anchor_not_found"
    AMBIGUOUS_ANCHOR = "ambiguous_anchor"
    VERIFICATION_MISSING = "verification_missing"


@dataclass(slots=True)
class RuleOutcome:
    """Result of running a single rule against its target file."""

    rule_id: str
    target_file: str
    status: RuleStatus
    reason: FailureReason | None = None
    detail: str = ""

    @property
    def failed(self) -> bool:
        return self.status == RuleStatus.FAILED

    def short_message(self) -> str:
        if self.status == RuleStatus.APPLIED:
            return f"{self.rule_id}: applied ({self.target_file})"
        if self.status == RuleStatus.SKIPPED_ALREADY_PRESENT:
            return f"{self.rule_id}: skipped, already present ({self.target_file})"
        reason = self.reason.value if self.reason else "failed"
        suffix = f" :: {self.detail}" if self.detail else ""
        return f"{self.rule_id}: FAILED [{reason}] ({self.target_file}){suffix}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "target_file": self.target_file,
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
        }


@dataclass(slots=True)
class RunReport:
    """Ordered rule outcomes for one stage.

    Outcomes are accumulated for every rule before any decision is taken, so a
    failing stage still reports every rule it ran.
    """

    stage: str
    outcomes: List[RuleOutcome] = field(default_factory=list)

    def record(self, outcome: RuleOutcome) -> None:
        self.outcomes.append(outcome)

    @property
    def fatal(self) -> bool:
        return any(outcome.failed for outcome in self.outcomes)

    def failures(self) -> List[RuleOutcome]:
        return [outcome for outcome in self.outcomes if outcome.failed]

    def count(self, status: RuleStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    def format_summary(self) -> str:
        lines = [f"[{self.stage}]"]
        if not self.outcomes:
            lines.append("  (no rules)")
        for outcome in self.outcomes:
            lines.append(f"  - {outcome.short_message()}")
        lines.append(
            f"  {self.count(RuleStatus.APPLIED)} applied, "
            f"{self.count(RuleStatus.SKIPPED_ALREADY_PRESENT)} skipped, "
            f"{self.count(RuleStatus.FAILED)} failed"
        )
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "fatal": self.fatal,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


__all__ = ["FailureReason", "RuleOutcome", "RuleStatus", "RunReport"]
