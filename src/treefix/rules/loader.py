"""Load ordered rule tables from YAML.

A table is either one of the tables bundled with treefix (referenced by
name, e.g. ``susfs-remediation``) or a YAML file on disk. Both use the same
layout::

    name: example
    description: Optional free text.
    rules:
      - id: add-include
        target_file: fs/foo.c
        ...

Entries carrying a ``call_site`` are instrumentation rules; everything else is
a remediation rule. The order of ``rules`` is the execution order.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any, List

import yaml
from pydantic import ValidationError

from .schema import InstrumentationRule, RemediationRule, Rule

BUNDLED_PACKAGE = "treefix.rulesets"


class RuleLoadError(ValueError):
    """Raised when a rule table cannot be read or fails validation."""


@dataclass(slots=True)
class RuleTable:
    """Ordered rules loaded from one source."""

    name: str
    source: str
    description: str
    rules: tuple[Rule, ...]

    def __len__(self) -> int:
        return len(self.rules)


def bundled_tables() -> List[str]:
    """Return the names of the tables shipped with treefix."""
    root = resources.files(BUNDLED_PACKAGE)
    return sorted(
        entry.name.rsplit(".", 1)[0].replace("_", "-")
        for entry in root.iterdir()
        if entry.name.endswith(".yaml")
    )


def _is_path_reference(reference: str) -> bool:
    return reference.endswith((".yaml", ".yml")) or "/" in reference or "\\" in reference


def _read_reference(reference: str, base_dir: Path | None) -> tuple[str, str]:
    if _is_path_reference(reference):
        path = Path(reference)
        if not path.is_absolute() and base_dir is not None:
            path = base_dir / path
        try:
            return path.read_text(encoding="utf-8"), path.as_posix()
        except OSError as error:
            raise RuleLoadError(f"Unable to read rule table {path}: {error}") from error

    resource = resources.files(BUNDLED_PACKAGE) / f"{reference.replace('-', '_')}.yaml"
    if not resource.is_file():
        known = ", ".join(bundled_tables()) or "none"
        raise RuleLoadError(f"Unknown bundled rule table {reference!r} (available: {known})")
    return resource.read_text(encoding="utf-8"), f"bundled:{reference}"


def _build_rule(entry: Any, source: str, index: int) -> Rule:
    if not isinstance(entry, Mapping):
        raise RuleLoadError(f"{source}: rule #{index} must be a mapping")
    payload = dict(entry)
    kind = payload.setdefault("kind", "instrumentation" if "call_site" in payload else "remediation")
    model = InstrumentationRule if kind == "instrumentation" else RemediationRule
    try:
        return model.model_validate(payload)
    except ValidationError as error:
        label = payload.get("id") or f"#{index}"
        raise RuleLoadError(f"{source}: rule {label} is invalid: {error}") from error


def parse_table(text: str, *, source: str = "<string>") -> RuleTable:
    """Parse a YAML rule table."""
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as error:
        raise RuleLoadError(f"{source}: invalid YAML: {error}") from error

    if isinstance(data, list):
        data = {"rules": data}
    if not isinstance(data, Mapping):
        raise RuleLoadError(f"{source}: expected a mapping with a 'rules' list")
    entries = data.get("rules") or []
    if not isinstance(entries, Sequence) or isinstance(entries, str):
        raise RuleLoadError(f"{source}: 'rules' must be a list")

    rules = tuple(_build_rule(entry, source, index) for index, entry in enumerate(entries, start=1))
    _ensure_unique_ids(rules, source)
    return RuleTable(
        name=str(data.get("name") or source),
        source=source,
        description=str(data.get("description") or "").strip(),
        rules=rules,
    )


def load_table(reference: str, *, base_dir: Path | None = None) -> RuleTable:
    """Load a bundled table by name or a YAML table by path."""
    text, source = _read_reference(reference, base_dir)
    return parse_table(text, source=source)


def load_rules(references: Iterable[str], *, base_dir: Path | None = None) -> List[Rule]:
    """Load and concatenate several tables, preserving their order."""
    rules: List[Rule] = []
    for reference in references:
        rules.extend(load_table(reference, base_dir=base_dir).rules)
    _ensure_unique_ids(rules, "stage")
    return rules


def _ensure_unique_ids(rules: Iterable[Rule], source: str) -> None:
    seen: set[str] = set()
    for rule in rules:
        if rule.id in seen:
            raise RuleLoadError(f"{source}: duplicate rule id {rule.id!r}")
        seen.add(rule.id)


__all__ = ["RuleLoadError", "RuleTable", "bundled_tables", "load_rules", "load_table", "parse_table"]
