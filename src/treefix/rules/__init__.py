"""Rule model, remediation engine and instrumentation weaver."""

from .engine import RuleEngine, RuleError, evaluate_rule
from .loader import RuleLoadError, RuleTable, bundled_tables, load_rules, load_table, parse_table
from .report import FailureReason, RuleOutcome, RuleStatus, RunReport
from .schema import CallSite, InstrumentationRule, RemediationRule, Rule, TransformKind, Transformation
from .weaver import Weaver

__all__ = [
    "CallSite",
    "FailureReason",
    "InstrumentationRule",
    "RemediationRule",
    "Rule",
    "RuleEngine",
    "RuleError",
    "RuleLoadError",
    "RuleOutcome",
    "RuleStatus",
    "RuleTable",
    "RunReport",
    "TransformKind",
    "Transformation",
    "Weaver",
    "bundled_tables",
    "evaluate_rule",
    "load_rules",
    "load_table",
    "parse_table",
]
