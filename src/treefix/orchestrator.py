"""Stage-by-stage coordinator for a full remediation run."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Mapping, Sequence, TypeVar

from .config import PipelineSettings
from .rules.engine import RuleEngine
from .rules.loader import RuleLoadError, load_rules
from .rules.report import RuleOutcome, RunReport
from .rules.schema import RemediationRule, Rule
from .rules.weaver import Weaver
from .telemetry import emit_event
from .tools.baseline import BaselineReport, restore_baseline
from .tools.patch import PatchApplication, PatchError, apply_with_rejects, cleanup_rejects, missing_artifacts
from .tools.vcs import GitError, GitRepository
from .version import VersionInfo, VersionResolver, kbuild_fallback_rules, persist_version

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class Stage(str, Enum):
    VERIFY_ENVIRONMENT = "verify-environment"
    RESTORE_BASELINE = "restore-baseline"
    APPLY_PATCH = "apply-patch"
    REMEDIATE = "remediate"
    INSTRUMENT = "instrument"
    VERIFY_INSTALLATION = "verify-installation"
    REGISTER_BUILD_SYSTEM = "register-build-system"
    RESOLVE_VERSION = "resolve-version"
    DONE = "done"


class PipelineError(RuntimeError):
    """Raised when a fail-fast stage cannot complete."""

    def __init__(self, stage: Stage, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.stage = stage
        self.details: dict[str, Any] = dict(details or {})


@dataclass(slots=True)
class RuleSet:
    """Rules loaded for every rule-driven stage."""

    remediation: List[RemediationRule] = field(default_factory=list)
    instrumentation: List[Rule] = field(default_factory=list)
    registration: List[RemediationRule] = field(default_factory=list)


@dataclass(slots=True)
class PipelineResult:
    """Everything a run produced, in stage order."""

    stages: List[Stage] = field(default_factory=list)
    reports: List[RunReport] = field(default_factory=list)
    baseline: BaselineReport | None = None
    patch: PatchApplication | None = None
    version: VersionInfo | None = None
    failure: PipelineError | None = None
    removed_rejects: List[Path] = field(default_factory=list)
    report_path: Path | None = None
    artifact_path: Path | None = None

    @property
    def succeeded(self) -> bool:
        return self.failure is None and Stage.DONE in self.stages

    @property
    def hunks(self) -> tuple:
        return self.patch.outcomes if self.patch is not None else ()

    def failed_rules(self) -> List[RuleOutcome]:
        return [outcome for report in self.reports if report.stage != Stage.RESOLVE_VERSION.value for outcome in report.failures()]

    def format_summary(self) -> str:
        sections: List[str] = []
        if self.baseline is not None:
            sections.append(self.baseline.format_summary())
        if self.patch is not None:
            sections.append(self.patch.format_summary())
        sections.extend(report.format_summary() for report in self.reports)
        if self.version is not None:
            sections.append(f"[resolve-version] {self.version.version} (source: {self.version.source})")

        if self.succeeded:
            sections.append("RESULT: success")
        else:
            stage = self.failure.stage.value if self.failure is not None else "unknown"
            message = str(self.failure) if self.failure is not None else "pipeline did not finish"
            verdict = [f"RESULT: failed at {stage}: {message}"]
            for outcome in self.failed_rules():
                reason = outcome.reason.value if outcome.reason else "failed"
                verdict.append(f"  - {outcome.rule_id}: {reason}")
            sections.append("\n".join(verdict))
        return "\n".join(sections)

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "stages": [stage.value for stage in self.stages],
            "failure": (
                {"stage": self.failure.stage.value, "message": str(self.failure), "details": self.failure.details}
                if self.failure is not None
                else None
            ),
            "baseline": self.baseline.to_dict() if self.baseline is not None else None,
            "patch": self.patch.to_dict() if self.patch is not None else None,
            "reports": [report.to_dict() for report in self.reports],
            "version": self.version.to_dict() if self.version is not None else None,
            "removed_rejects": [path.as_posix() for path in self.removed_rejects],
        }


class Orchestrator:
    """Drive the pipeline stages in order against one source tree.

    Stage methods are public so single stages can be run on their own (the
    CLI exposes most of them); ``run`` chains them, stopping at the first
    fail-fast error and after any rule stage whose report is fatal.
    """

    def __init__(self, settings: PipelineSettings) -> None:
        self.settings = settings
        self.root = settings.tree_root

    # ------------------------------------------------------------ pipeline
    def run(self) -> PipelineResult:
        result = PipelineResult()
        try:
            rules = self._stage(result, Stage.VERIFY_ENVIRONMENT, self.verify_environment)
            result.baseline = self._stage(result, Stage.RESTORE_BASELINE, self.restore_baseline)
            result.patch = self._stage(result, Stage.APPLY_PATCH, self.apply_patch)
            self._rule_stage(result, Stage.REMEDIATE, lambda: self.remediate(rules.remediation))
            self._rule_stage(result, Stage.INSTRUMENT, lambda: self.instrument(rules.instrumentation))
            self._stage(result, Stage.VERIFY_INSTALLATION, self.verify_installation)
            self._rule_stage(result, Stage.REGISTER_BUILD_SYSTEM, lambda: self.register_build_system(rules.registration))
            result.version = self._stage(result, Stage.RESOLVE_VERSION, lambda: self.resolve_version(result))
            result.removed_rejects = cleanup_rejects(self.root)
            result.stages.append(Stage.DONE)
        except PipelineError as error:
            LOGGER.error("Pipeline failed at %s: %s", error.stage.value, error)
            emit_event("pipeline_failed", stage=error.stage, message=str(error))
            result.failure = error
        self._write_outputs(result)
        return result

    def _stage(self, result: PipelineResult, stage: Stage, action: Callable[[], T]) -> T:
        LOGGER.info("Stage %s", stage.value)
        emit_event("stage_started", stage=stage)
        value = action()
        result.stages.append(stage)
        emit_event("stage_finished", stage=stage)
        return value

    def _rule_stage(self, result: PipelineResult, stage: Stage, action: Callable[[], RunReport]) -> RunReport:
        report = self._stage(result, stage, action)
        result.reports.append(report)
        if report.fatal:
            failed = [outcome.rule_id for outcome in report.failures()]
            raise PipelineError(stage, f"{len(failed)} rule(s) failed", details={"failed_rules": failed})
        return report

    # -------------------------------------------------------------- stages
    def verify_environment(self) -> RuleSet:
        stage = Stage.VERIFY_ENVIRONMENT
        if not self.root.is_dir():
            raise PipelineError(stage, f"Source tree not found: {self.root}")
        patch_path = self.settings.patch_path
        if patch_path is None or not patch_path.is_file():
            raise PipelineError(stage, f"Patch file not found: {patch_path}")
        try:
            GitRepository(self.root)
        except GitError as error:
            raise PipelineError(stage, str(error)) from error
        return self.load_rule_set()

    def load_rule_set(self) -> RuleSet:
        stage = Stage.VERIFY_ENVIRONMENT
        base_dir = self.settings.config_dir
        try:
            remediation = load_rules(self.settings.remediation_tables, base_dir=base_dir)
            instrumentation = load_rules(self.settings.instrumentation_tables, base_dir=base_dir)
            registration = load_rules(self.settings.registration_tables, base_dir=base_dir)
        except RuleLoadError as error:
            raise PipelineError(stage, str(error)) from error
        return RuleSet(
            remediation=_only_remediation(remediation, "rules.remediation"),
            instrumentation=instrumentation,
            registration=_only_remediation(registration, "rules.registration"),
        )

    def restore_baseline(self) -> BaselineReport:
        try:
            repo = GitRepository(self.root)
        except GitError as error:
            raise PipelineError(Stage.RESTORE_BASELINE, str(error)) from error
        return restore_baseline(repo, self.settings.baseline_groups, generated=self.settings.generated)

    def apply_patch(self) -> PatchApplication:
        if self.settings.patch_path is None:
            raise PipelineError(Stage.APPLY_PATCH, "No patch configured")
        try:
            return apply_with_rejects(self.settings.patch_path, repo_root=self.root, must_exist=self.settings.must_exist)
        except PatchError as error:
            raise PipelineError(Stage.APPLY_PATCH, str(error), details=error.details) from error

    def remediate(self, rules: Sequence[RemediationRule], *, dry_run: bool = False) -> RunReport:
        return RuleEngine(self.root, dry_run=dry_run).run(rules, stage=Stage.REMEDIATE.value)

    def instrument(self, rules: Sequence[Rule], *, dry_run: bool = False) -> RunReport:
        return Weaver(self.root, dry_run=dry_run).run(rules, stage=Stage.INSTRUMENT.value)

    def verify_installation(self) -> None:
        missing = missing_artifacts(self.root, self.settings.required_paths)
        if missing:
            raise PipelineError(
                Stage.VERIFY_INSTALLATION,
                f"Component not installed, missing: {', '.join(missing)}",
                details={"missing": missing},
            )

    def register_build_system(self, rules: Sequence[RemediationRule]) -> RunReport:
        return RuleEngine(self.root).run(rules, stage=Stage.REGISTER_BUILD_SYSTEM.value)

    def component_history(self) -> GitRepository | None:
        component = self.settings.component_path
        if component is None:
            return None
        if component.is_symlink():
            # An out-of-tree checkout; its history lives at or above the link target.
            try:
                return GitRepository.discover(component.resolve())
            except GitError as error:
                LOGGER.info("%s links outside any git repository: %s", component, error)
                return None
        if not (component / ".git").exists():
            LOGGER.info("%s has no git history of its own", component)
            return None
        return GitRepository(component)

    def resolve_version(self, result: PipelineResult | None = None) -> VersionInfo:
        info = VersionResolver(self.component_history(), self.settings.version, kbuild=self.settings.kbuild_path).resolve()
        if self.settings.version_output is not None:
            try:
                persist_version(info, self.settings.version_output)
            except OSError as error:
                LOGGER.warning("Unable to write %s: %s", self.settings.version_output, error)

        kbuild = self.settings.kbuild_path
        if self.settings.inject_kbuild and kbuild is not None and kbuild.is_file():
            rules = kbuild_fallback_rules(info, target_file=kbuild.name)
            report = RuleEngine(kbuild.parent).run(rules, stage=Stage.RESOLVE_VERSION.value)
            if report.fatal:
                LOGGER.warning("Kbuild version fallbacks were not updated")
            if result is not None:
                result.reports.append(report)
        return info

    # ------------------------------------------------------------- outputs
    def _write_outputs(self, result: PipelineResult) -> None:
        logs_dir = self.settings.logs_dir
        if logs_dir is None:
            return
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            report_path = logs_dir / f"treefix-{timestamp}.log"
            report_path.write_text(result.format_summary() + "\n", encoding="utf-8")
            artifact_path = logs_dir / f"treefix-{timestamp}.json"
            with artifact_path.open("w", encoding="utf-8") as handle:
                json.dump(result.to_dict(), handle, indent=2, sort_keys=True, default=str)
        except OSError as error:
            LOGGER.warning("Unable to write run report to %s: %s", logs_dir, error)
            return
        result.report_path = report_path
        result.artifact_path = artifact_path


def _only_remediation(rules: Sequence[Rule], label: str) -> List[RemediationRule]:
    for rule in rules:
        if not isinstance(rule, RemediationRule):
            raise PipelineError(
                Stage.VERIFY_ENVIRONMENT,
                f"{label}: rule {rule.id} is an instrumentation rule; list it under rules.instrumentation",
            )
    return list(rules)


__all__ = ["Orchestrator", "PipelineError", "PipelineResult", "RuleSet", "Stage"]
