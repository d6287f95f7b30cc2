from __future__ import annotations

import textwrap
from pathlib import Path

import pytest
import yaml

from treefix.rules.loader import RuleLoadError, bundled_tables, load_rules, load_table, parse_table
from treefix.rules.schema import InstrumentationRule, RemediationRule


def test_bundled_tables_load_and_validate() -> None:
    names = bundled_tables()
    assert names == ["ksu-hooks", "ksu-registration", "susfs-remediation"]

    remediation = load_table("susfs-remediation")
    assert remediation.source == "bundled:susfs-remediation"
    assert all(isinstance(rule, RemediationRule) for rule in remediation.rules)
    assert remediation.rules[0].id == "makefile-susfs-object"

    hooks = load_table("ksu-hooks")
    kinds = {type(rule) for rule in hooks.rules}
    assert kinds == {RemediationRule, InstrumentationRule}


def test_bundled_block_rules_keep_tabs() -> None:
    rule = next(rule for rule in load_table("susfs-remediation").rules if rule.id == "mount-susfs-mnt-id-backup")
    assert rule.transformation.old_block == "\tint mnt_flags;\n\tvoid *data;\n"
    assert rule.verification_marker == "\tu64 susfs_mnt_id_backup;"


def test_remediation_table_covers_every_rejected_file() -> None:
    rules = load_table("susfs-remediation").rules
    ids = [rule.id for rule in rules]
    for rule_id in ("fdinfo-inotify-kstat-spoof", "namei-lookup-hash-sus-path", "task-mmu-pagemap-sus-map", "namespace-mnt-free-id", "susfs-try-umount"):
        assert rule_id in ids
    assert {rule.target_file for rule in rules} >= {"fs/namei.c", "fs/proc/task_mmu.c", "fs/namespace.c"}

    namespace = [rule.id for rule in rules if rule.target_file == "fs/namespace.c"]
    assert namespace.index("namespace-susfs-globals") < namespace.index("namespace-mnt-free-id")
    assert namespace.index("namespace-vfs-create-mount-alloc") < namespace.index("namespace-ksu-mounts-counter")


def test_namespace_blocks_keep_their_exact_edges() -> None:
    rules = {rule.id: rule for rule in load_table("susfs-remediation").rules}

    globals_rule = rules["namespace-susfs-globals"]
    assert globals_rule.transformation.old_block == '#include "pnode.h"\n#include "internal.h"\n\n/* Maximum number of mounts'
    assert globals_rule.transformation.text.endswith("/* Maximum number of mounts")

    fdinfo = rules["fdinfo-inotify-kstat-spoof"]
    assert "\t\tseq_putc(m, '\\n');\n" in fdinfo.transformation.old_block


def test_declarations_precede_hooks_for_each_file() -> None:
    seen_hook: set[str] = set()
    for rule in load_table("ksu-hooks").rules:
        if isinstance(rule, InstrumentationRule):
            seen_hook.add(rule.target_file)
        else:
            assert rule.target_file not in seen_hook, rule.id


def test_parse_table_accepts_plain_list() -> None:
    table = parse_table(
        textwrap.dedent(
            """
            - id: only
              target_file: a.c
              precondition_marker: X
              anchor: Y
              transformation: {kind: insert_after, text: X}
              verification_marker: X
            """
        ),
        source="inline",
    )
    assert table.name == "inline"
    assert len(table) == 1


@pytest.mark.parametrize(
    "entry, message",
    [
        ({"target_file": "a.c"}, "rule #1 is invalid"),
        (
            {
                "id": "escape",
                "target_file": "../outside.c",
                "precondition_marker": "X",
                "anchor": "Y",
                "transformation": {"kind": "insert_after", "text": "X"},
                "verification_marker": "X",
            },
            "relative path",
        ),
        (
            {
                "id": "no-anchor",
                "target_file": "a.c",
                "precondition_marker": "X",
                "transformation": {"kind": "insert_before", "text": "X"},
                "verification_marker": "X",
            },
            "requires an anchor",
        ),
        (
            {
                "id": "bad-regex",
                "target_file": "a.c",
                "precondition_marker": "X",
                "anchor": "(",
                "anchor_regex": True,
                "transformation": {"kind": "insert_after", "text": "X"},
                "verification_marker": "X",
            },
            "invalid anchor regex",
        ),
        (
            {
                "id": "typo",
                "target_file": "a.c",
                "precondition_marker": "X",
                "anchor": "Y",
                "transformation": {"kind": "insert_after", "text": "X"},
                "verification_marker": "X",
                "verification": "X",
            },
            "rule typo is invalid",
        ),
        (
            {
                "id": "bad-call-site",
                "target_file": "a.c",
                "precondition_marker": "X",
                "call_site": {"function": "int foo(void)", "anchor": "return (", "anchor_regex": True},
                "body": "X();",
                "verification_marker": "X",
            },
            "invalid anchor regex",
        ),
        (
            {
                "id": "multiline-call-site",
                "target_file": "a.c",
                "precondition_marker": "X",
                "call_site": {"function": "int foo(void)", "anchor": "a\nb"},
                "body": "X();",
                "verification_marker": "X",
            },
            "anchors match a single line",
        ),
    ],
)
def test_invalid_rules_are_rejected(entry: dict, message: str) -> None:
    with pytest.raises(RuleLoadError) as excinfo:
        parse_table(yaml.safe_dump({"rules": [entry]}), source="bad.yaml")
    assert message in str(excinfo.value)


def test_duplicate_ids_across_tables_are_rejected(tmp_path: Path) -> None:
    table = textwrap.dedent(
        """
        rules:
          - id: drivers-makefile-kernelsu
            target_file: drivers/Makefile
            precondition_marker: X
            transformation: {kind: append, text: X}
            verification_marker: X
        """
    )
    (tmp_path / "extra.yaml").write_text(table, encoding="utf-8")

    with pytest.raises(RuleLoadError, match="duplicate rule id"):
        load_rules(["ksu-registration", "extra.yaml"], base_dir=tmp_path)


def test_unknown_bundled_table_lists_available() -> None:
    with pytest.raises(RuleLoadError, match="susfs-remediation"):
        load_table("no-such-table")


def test_invalid_yaml_is_reported(tmp_path: Path) -> None:
    (tmp_path / "broken.yaml").write_text("rules: [\n", encoding="utf-8")
    with pytest.raises(RuleLoadError, match="invalid YAML"):
        load_table("broken.yaml", base_dir=tmp_path)
