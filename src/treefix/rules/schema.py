"""Typed rule records consumed by the remediation engine and the weaver.

Rule tables are authored as YAML and validated through these models, so a
malformed table fails at load time instead of half way through a run.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import PurePosixPath
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_line_anchor(anchor: str, regex: bool) -> None:
    if "\n" in anchor:
        raise ValueError("anchors match a single line")
    if regex:
        try:
            re.compile(anchor)
        except re.error as error:
            raise ValueError(f"invalid anchor regex: {error}") from error


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class TransformKind(str, Enum):
    """Supported textual transformations."""

    INSERT_AFTER = "insert_after"
    INSERT_BEFORE = "insert_before"
    REPLACE_BLOCK = "replace_block"
    APPEND = "append"


class Transformation(RecordModel):
    """Edit applied at a rule's anchor.

    ``text`` is the inserted text (or the replacement block); ``old_block`` is
    the literal block a ``replace_block`` transformation swaps out.
    """

    kind: TransformKind
    text: str
    old_block: Optional[str] = None

    @model_validator(mode="after")
    def _check_old_block(self) -> "Transformation":
        if self.kind == TransformKind.REPLACE_BLOCK:
            if not self.old_block:
                raise ValueError("replace_block requires a non-empty old_block")
        elif self.old_block is not None:
            raise ValueError(f"old_block is only valid for replace_block, not {self.kind.value}")
        return self


class RuleBase(RecordModel):
    """Fields shared by every rule kind."""

    id: str = Field(min_length=1)
    target_file: str
    description: str = ""
    precondition_marker: str = Field(min_length=1)
    verification_marker: str = Field(min_length=1)

    @field_validator("target_file")
    @classmethod
    def _check_target(cls, value: str) -> str:
        path = PurePosixPath(value)
        if not value.strip() or path.is_absolute() or ".." in path.parts:
            raise ValueError(f"target_file must be a relative path inside the tree: {value!r}")
        return path.as_posix()


class RemediationRule(RuleBase):
    """Anchor-based, idempotent text transformation of a single file."""

    kind: Literal["remediation"] = "remediation"
    anchor: Optional[str] = None
    anchor_regex: bool = False
    within: Optional[str] = None
    transformation: Transformation

    @model_validator(mode="after")
    def _check_anchor(self) -> "RemediationRule":
        kind = self.transformation.kind
        if kind in (TransformKind.INSERT_AFTER, TransformKind.INSERT_BEFORE):
            if not self.anchor:
                raise ValueError(f"rule {self.id}: {kind.value} requires an anchor")
        elif kind == TransformKind.REPLACE_BLOCK and self.anchor:
            raise ValueError(f"rule {self.id}: replace_block is anchored by its old_block")
        elif kind == TransformKind.APPEND and (self.anchor or self.within):
            raise ValueError(f"rule {self.id}: append takes no anchor or scope")
        if self.anchor:
            try:
                _check_line_anchor(self.anchor, self.anchor_regex)
            except ValueError as error:
                raise ValueError(f"rule {self.id}: {error}") from error
        return self


class CallSite(RecordModel):
    """Insertion point inside a named function body."""

    function: str = Field(min_length=1)
    anchor: str = Field(min_length=1)
    position: Literal["after", "before"] = "after"
    anchor_regex: bool = False

    @model_validator(mode="after")
    def _check_anchor(self) -> "CallSite":
        _check_line_anchor(self.anchor, self.anchor_regex)
        return self


class InstrumentationRule(RuleBase):
    """Rule that weaves a (optionally guarded) call into a function body."""

    kind: Literal["instrumentation"] = "instrumentation"
    call_site: CallSite
    body: str = Field(min_length=1)
    guard_predicate: Optional[str] = None
    shape: Literal["call", "branch"] = "call"
    jump_label: Optional[str] = None
    build_condition: Optional[str] = None
    indent: str = "\t"
    blank_line_before: bool = False

    @model_validator(mode="after")
    def _check_shape(self) -> "InstrumentationRule":
        if self.shape == "branch":
            if not self.guard_predicate:
                raise ValueError(f"rule {self.id}: branch insertions need a guard_predicate")
            if not self.jump_label or not _IDENTIFIER_RE.match(self.jump_label):
                raise ValueError(f"rule {self.id}: branch insertions need a valid jump_label")
        elif self.jump_label is not None:
            raise ValueError(f"rule {self.id}: jump_label is only valid for branch insertions")
        return self

    def _indent_lines(self, text: str, depth: int) -> list[str]:
        prefix = self.indent * depth
        lines: list[str] = []
        for line in text.rstrip("\n").split("\n"):
            if not line.strip() or line.startswith("#"):
                lines.append(line)
            else:
                lines.append(prefix + line)
        return lines

    def render(self) -> str:
        """Return the text inserted at the call site."""

        lines: list[str] = []
        if self.blank_line_before:
            lines.append("")
        condition = (self.build_condition or "").strip()
        if condition:
            directive = "#ifdef" if _IDENTIFIER_RE.match(condition) else "#if"
            lines.append(f"{directive} {condition}")

        if self.shape == "branch":
            lines.append(f"{self.indent}if ({self.guard_predicate}) {{")
            lines.append(f"{self.indent * 2}goto {self.jump_label};")
            lines.append(f"{self.indent}}}")
            lines.extend(self._indent_lines(self.body, 1))
            lines.append(f"{self.jump_label}:")
        elif self.guard_predicate:
            lines.append(f"{self.indent}if ({self.guard_predicate}) {{")
            lines.extend(self._indent_lines(self.body, 2))
            lines.append(f"{self.indent}}}")
        else:
            lines.extend(self._indent_lines(self.body, 1))

        if condition:
            lines.append("#endif")
        return "\n".join(lines) + "\n"

    def to_remediation(self) -> RemediationRule:
        """Lower the call-site description to a function-scoped remediation rule."""

        kind = TransformKind.INSERT_AFTER if self.call_site.position == "after" else TransformKind.INSERT_BEFORE
        return RemediationRule(
            id=self.id,
            target_file=self.target_file,
            description=self.description,
            precondition_marker=self.precondition_marker,
            verification_marker=self.verification_marker,
            anchor=self.call_site.anchor,
            anchor_regex=self.call_site.anchor_regex,
            within=self.call_site.function,
            transformation=Transformation(kind=kind, text=self.render()),
        )


Rule = RemediationRule | InstrumentationRule


__all__ = [
    "CallSite",
    "InstrumentationRule",
    "RecordModel",
    "RemediationRule",
    "Rule",
    "RuleBase",
    "TransformKind",
    "Transformation",
]
