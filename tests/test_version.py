from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from conftest import commit_all, init_repo, write

from treefix.rules.engine import RuleEngine
from treefix.rules.report import RuleStatus
from treefix.tools.vcs import GitError, GitRepository
from treefix.version import VersionInfo, VersionResolver, VersionSettings, kbuild_fallback_rules, persist_version


@dataclass
class FakeHistory:
    tag: str | None = None
    latest: str | None = None
    count: int = 0
    revision: str | None = "abc1234"
    shallow: bool = False
    broken: bool = False

    def describe_tag(self) -> str | None:
        if self.broken:
            raise GitError("git describe --tags failed: fatal")
        return self.tag

    def latest_tag(self) -> str | None:
        return self.latest

    def commit_count(self) -> int:
        if self.broken:
            raise GitError("git rev-list failed: fatal")
        return self.count

    def short_revision(self) -> str | None:
        return self.revision

    def is_shallow(self) -> bool:
        return self.shallow


def test_commit_count_maps_to_build_number() -> None:
    info = VersionResolver(FakeHistory(count=42)).resolve()

    assert info == VersionInfo(version="1.0-build-30102", source="commit-count", numeric=30102, tag="v1.0-susfs-abc1234")


def test_tag_wins_and_loses_leading_v() -> None:
    info = VersionResolver(FakeHistory(tag="v1.5.8", count=10)).resolve()

    assert info.version == "1.5.8"
    assert info.source == "tag"
    assert info.tag == "v1.5.8"
    assert info.numeric == 30070


def test_tag_tier_uses_nearest_tag_for_kbuild() -> None:
    info = VersionResolver(FakeHistory(tag="v1.5.8-3-gabc1234", latest="v1.5.8", count=10)).resolve()

    assert info.version == "1.5.8-3-gabc1234"
    assert info.tag == "v1.5.8"


def test_shallow_history_warns_once(caplog) -> None:
    caplog.set_level(logging.WARNING, logger="treefix.version")

    for history in (FakeHistory(count=5, shallow=True), FakeHistory(tag="v1.0", count=5, shallow=True)):
        caplog.clear()
        VersionResolver(history).resolve()
        assert sum("shallow" in record.getMessage() for record in caplog.records) == 1


def test_static_fallback_when_nothing_is_known() -> None:
    assert VersionResolver(FakeHistory()).resolve() == VersionInfo(version="1.0-unknown", source="static")
    assert VersionResolver(None).resolve().version == "1.0-unknown"


def test_git_errors_fall_through_to_next_tier() -> None:
    settings = VersionSettings(fallback="0.0-offline")
    assert VersionResolver(FakeHistory(broken=True), settings).resolve().version == "0.0-offline"


def test_custom_settings_change_the_formula() -> None:
    settings = VersionSettings(base_offset=10000, increment=0, numeric_prefix="", tag_prefix="v")
    info = VersionResolver(FakeHistory(count=5), settings).resolve()
    assert (info.version, info.tag) == ("10005", "vabc1234")


def test_kbuild_declared_fallbacks_are_used_unless_placeholders(tmp_path: Path) -> None:
    kbuild = write(tmp_path, "Kbuild", "KSU_VERSION_FALLBACK := 1\nKSU_VERSION_TAG_FALLBACK := v0.0.1\n")
    assert VersionResolver(None, kbuild=kbuild).resolve().source == "static"

    kbuild.write_text("KSU_VERSION_FALLBACK := 31000\nKSU_VERSION_TAG_FALLBACK := v0.0.1\n", encoding="utf-8")
    info = VersionResolver(None, kbuild=kbuild).resolve()
    assert (info.version, info.source, info.numeric) == ("1.0-build-31000", "kbuild", 31000)

    kbuild.write_text("KSU_VERSION_FALLBACK := 31000\nKSU_VERSION_TAG_FALLBACK := v1.0-susfs-deadbee\n", encoding="utf-8")
    info = VersionResolver(None, kbuild=kbuild).resolve()
    assert (info.version, info.tag) == ("1.0-susfs-deadbee", "v1.0-susfs-deadbee")


def test_real_repository_history(tmp_path: Path) -> None:
    init_repo(tmp_path)
    for index in range(2):
        write(tmp_path, "ksu.c", f"/* {index} */\n")
        commit_all(tmp_path, f"commit {index}")
    repo = GitRepository(tmp_path)

    info = VersionResolver(repo).resolve()
    assert info.version == "1.0-build-30062"
    assert info.tag == f"v1.0-susfs-{repo.short_revision()}"

    repo.git("tag", "v2.0.1")
    assert VersionResolver(repo).resolve().version == "2.0.1"

    write(tmp_path, "ksu.c", "/* 2 */\n")
    commit_all(tmp_path, "commit 2")
    info = VersionResolver(repo).resolve()
    assert info.version.startswith("2.0.1-1-g")
    assert info.tag == "v2.0.1"


def test_persist_version_writes_one_line(tmp_path: Path) -> None:
    target = persist_version(VersionInfo(version="1.0-build-30102", source="commit-count"), tmp_path / "out" / "ksu_version.txt")
    assert target.read_text(encoding="utf-8") == "1.0-build-30102\n"


def test_kbuild_fallback_rules_replace_placeholders_once(tmp_path: Path) -> None:
    kbuild = write(tmp_path, "Kbuild", "obj-y += kernelsu.o\nKSU_VERSION_FALLBACK := 1\nKSU_VERSION_TAG_FALLBACK := v0.0.1\n")
    rules = kbuild_fallback_rules(VersionInfo(version="1.0-build-30102", source="commit-count", numeric=30102, tag="v1.0-susfs-abc1234"))

    first = RuleEngine(tmp_path).run(rules, stage="resolve-version")
    assert first.count(RuleStatus.APPLIED) == 2
    assert kbuild.read_text(encoding="utf-8") == (
        "obj-y += kernelsu.o\nKSU_VERSION_FALLBACK := 30102\nKSU_VERSION_TAG_FALLBACK := v1.0-susfs-abc1234\n"
    )

    second = RuleEngine(tmp_path).run(rules, stage="resolve-version")
    assert second.count(RuleStatus.SKIPPED_ALREADY_PRESENT) == 2


def test_static_version_yields_no_kbuild_rules() -> None:
    assert kbuild_fallback_rules(VersionInfo(version="1.0-unknown", source="static")) == []
