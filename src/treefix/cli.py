"""CLI commands for remediating and instrumenting a partially patched source tree."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer

from .config import DEFAULT_CONFIG_NAME, ConfigError, PipelineSettings, copy_config_template, write_config
from .orchestrator import Orchestrator, PipelineError
from .rules.loader import RuleLoadError, bundled_tables, load_table
from .rules.report import RunReport
from .tools.patch import PatchError, describe_patch
from .version import VersionResolver

APP_HELP = "Rule-ordered, idempotent remediation of partially applied source patches."

app = typer.Typer(help=APP_HELP)

_CONFIG_HELP = "Path to the treefix configuration file."


@app.callback()
def main(
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    ),
) -> None:
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level: {log_level}")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _load_settings(config: str) -> PipelineSettings:
    try:
        return PipelineSettings.load(Path(config))
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _pipeline_exit(error: PipelineError) -> typer.Exit:
    typer.echo(f"{error.stage.value} failed: {error}")
    for key, value in error.details.items():
        if key in {"missing", "failed_rules"}:
            typer.echo(f"  {key}: {', '.join(str(item) for item in value)}")
    return typer.Exit(code=1)


def _render_report(report: RunReport) -> None:
    typer.echo(report.format_summary())
    if report.fatal:
        raise typer.Exit(code=1)


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help=_CONFIG_HELP,
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Overwrite an existing configuration file.",
    ),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"{config_path} already exists; use --force to overwrite.")
        raise typer.Exit(code=1)
    write_config(config_path, copy_config_template())
    typer.echo(f"Wrote {config_path}.")


@app.command()
def run(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help=_CONFIG_HELP,
    ),
) -> None:
    """Run every stage: restore, apply, remediate, instrument, register, version."""
    settings = _load_settings(config)
    result = Orchestrator(settings).run()
    typer.echo(result.format_summary())
    if result.report_path is not None:
        typer.echo(f"Report: {result.report_path.as_posix()}")
    if not result.succeeded:
        raise typer.Exit(code=1)


@app.command()
def restore(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help=_CONFIG_HELP,
    ),
) -> None:
    """Reset configured files to their committed content."""
    orchestrator = Orchestrator(_load_settings(config))
    try:
        report = orchestrator.restore_baseline()
    except PipelineError as error:
        raise _pipeline_exit(error) from error
    typer.echo(report.format_summary())
    for path in report.failed:
        typer.echo(f"  - failed: {path}")


@app.command()
def apply(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help=_CONFIG_HELP,
    ),
) -> None:
    """Apply the configured patch, keeping rejected hunks as .rej files."""
    orchestrator = Orchestrator(_load_settings(config))
    try:
        application = orchestrator.apply_patch()
    except PipelineError as error:
        raise _pipeline_exit(error) from error
    typer.echo(application.format_summary())


@app.command()
def remediate(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help=_CONFIG_HELP,
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Evaluate rules without writing any file.",
    ),
) -> None:
    """Run the remediation rule tables against the tree."""
    orchestrator = Orchestrator(_load_settings(config))
    try:
        rule_set = orchestrator.load_rule_set()
    except PipelineError as error:
        raise _pipeline_exit(error) from error
    _render_report(orchestrator.remediate(rule_set.remediation, dry_run=dry_run))


@app.command()
def instrument(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help=_CONFIG_HELP,
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Evaluate rules without writing any file.",
    ),
) -> None:
    """Weave the instrumentation hooks into the tree."""
    orchestrator = Orchestrator(_load_settings(config))
    try:
        rule_set = orchestrator.load_rule_set()
    except PipelineError as error:
        raise _pipeline_exit(error) from error
    _render_report(orchestrator.instrument(rule_set.instrumentation, dry_run=dry_run))


@app.command()
def rules(
    table: List[str] = typer.Argument(
        None,
        help="Bundled table names or YAML paths to validate (default: every bundled table).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="List the rule ids of each table.",
    ),
) -> None:
    """List and validate rule tables."""
    references = list(table or bundled_tables())
    errors = 0
    for reference in references:
        try:
            loaded = load_table(reference, base_dir=Path.cwd())
        except RuleLoadError as error:
            errors += 1
            typer.echo(f"{reference}: INVALID :: {error}")
            continue
        typer.echo(f"{loaded.name} ({loaded.source}): {len(loaded)} rule(s)")
        if verbose:
            for rule in loaded.rules:
                typer.echo(f"  - {rule.id} [{rule.kind}] {rule.target_file}")
    if errors:
        raise typer.Exit(code=1)


@app.command()
def version(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help=_CONFIG_HELP,
    ),
    write: bool = typer.Option(
        False,
        "--write/--no-write",
        help="Persist the version and inject it into the component Kbuild.",
    ),
) -> None:
    """Resolve the component version through the fallback chain."""
    settings = _load_settings(config)
    orchestrator = Orchestrator(settings)
    if write:
        info = orchestrator.resolve_version()
    else:
        info = VersionResolver(orchestrator.component_history(), settings.version, kbuild=settings.kbuild_path).resolve()
    typer.echo(f"{info.version} (source: {info.source})")
    if info.tag:
        typer.echo(f"tag: {info.tag}")
    if info.numeric is not None:
        typer.echo(f"numeric: {info.numeric}")


@app.command("patch-info")
def patch_info(
    path: Optional[str] = typer.Argument(None, help="Patch file (default: the configured patch)."),
    against: Optional[str] = typer.Option(
        None,
        "--against",
        help="Another copy of the patch to compare checksums with.",
    ),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help=_CONFIG_HELP,
    ),
) -> None:
    """Show size, checksum and diffstat of a patch."""
    if path is None:
        settings = _load_settings(config)
        if settings.patch_path is None:
            typer.echo("No patch configured.")
            raise typer.Exit(code=1)
        target = settings.patch_path
    else:
        target = Path(path)
    try:
        description = describe_patch(target, against=against)
    except PatchError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    typer.echo(description.format_summary())
    if description.matches is False:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
