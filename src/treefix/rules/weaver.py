"""Call-site instrumentation on top of the remediation engine."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

from .engine import RuleEngine, log_outcome
from .report import RuleOutcome, RunReport
from .schema import InstrumentationRule, Rule


class Weaver:
    """Insert guarded hooks into named functions, in authored order.

    Instrumentation tables may interleave plain remediation rules (typically
    declarations inserted ahead of the instrumented function) with
    instrumentation rules; both run through the same engine.
    """

    def __init__(self, root: Path | str, *, dry_run: bool = False) -> None:
        self.engine = RuleEngine(root, dry_run=dry_run)

    @property
    def root(self) -> Path:
        return self.engine.root

    def run_rule(self, rule: Rule) -> RuleOutcome:
        if isinstance(rule, InstrumentationRule):
            return self.engine.run_rule(rule.to_remediation())
        return self.engine.run_rule(rule)

    def run(self, rules: Iterable[Rule], *, stage: str = "instrument") -> RunReport:
        report = RunReport(stage=stage)
        for rule in rules:
            outcome = self.run_rule(rule)
            log_outcome(stage, outcome)
            report.record(outcome)
        return report


__all__ = ["Weaver"]
