"""
Provisioner — CLI entrypoint.

Usage:
    provision --help
    provision run --print-plan
    provision run --only tag:agents --skip lang.bun
    provision doctor
    provision upgrade status
    provision manifest check
"""

from __future__ import annotations

import json
import os
import signal
import sys
from pathlib import Path
from typing import Any, NoReturn

import click

from provisioner import __version__
from provisioner.core.errors import (
    EXIT_INTERRUPTED,
    EXIT_INVALID_MANIFEST,
    EXIT_LOCK_CONFLICT,
    EXIT_MODULE_FAILED,
    ConfigError,
    LockConflictError,
    ManifestValidationError,
    ProvisionerError,
    SelectionError,
)
from provisioner.core.models.plan import ExecutionPlan, Selection
from provisioner.core.models.report import ModuleResult, ModuleStatus, RunReport
from provisioner.core.observability.logging_config import resolve_level, setup_logging

_STATUS_MARKERS = {
    ModuleStatus.SUCCESS: ("✓", "green"),
    ModuleStatus.SKIPPED: ("⊘", "cyan"),
    ModuleStatus.WARNING: ("⚠", "yellow"),
    ModuleStatus.FAILED: ("✗", "red"),
    ModuleStatus.NOT_ATTEMPTED: ("·", "white"),
    ModuleStatus.INTERRUPTED: ("■", "magenta"),
    ModuleStatus.RUNNING: ("→", "blue"),
    ModuleStatus.PENDING: (" ", "white"),
}


@click.group()
@click.version_option(version=__version__, prog_name="provision")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--manifest",
    "-m",
    "manifest_path",
    type=click.Path(exists=False, dir_okay=False),
    default=None,
    help="Path to provision.manifest.yaml (default: auto-detect).",
)
@click.option(
    "--checksums",
    "checksums_path",
    type=click.Path(exists=False, dir_okay=False),
    default=None,
    help="Path to checksums.yaml (default: next to the manifest).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    manifest_path: str | None,
    checksums_path: str | None,
) -> None:
    """Provisioner — compile and run a development environment manifest."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["manifest_path"] = Path(manifest_path) if manifest_path else None
    ctx.obj["checksums_path"] = Path(checksums_path) if checksums_path else None

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(
        level=resolve_level(debug, verbose, quiet),
        log_file=os.environ.get("PROVISIONER_LOG_FILE"),
        log_file_level=os.environ.get("PROVISIONER_LOG_FILE_LEVEL"),
        quiet_third_party=not debug,
    )


# ── Shared helpers ──────────────────────────────────────────────


def get_settings(ctx: click.Context, as_json: bool = False) -> Any:
    """Resolve runtime settings once per invocation."""
    from provisioner.core.config.settings import RuntimeSettings

    if "settings" not in ctx.obj:
        try:
            ctx.obj["settings"] = RuntimeSettings.from_env()
        except ConfigError as e:
            fail(e, as_json, EXIT_INVALID_MANIFEST)
    return ctx.obj["settings"]


def fail(error: ProvisionerError, as_json: bool, code: int) -> NoReturn:
    """Report a fatal error and exit with ``code``."""
    if as_json:
        payload = error.to_dict()
        payload["exit_code"] = code
        click.echo(json.dumps(payload, indent=2, sort_keys=True))
    else:
        click.secho(f"❌ {error}", fg="red", err=True)
    sys.exit(code)


def exit_code_for_error(error: ProvisionerError) -> int:
    if isinstance(error, (ConfigError, ManifestValidationError, SelectionError)):
        return EXIT_INVALID_MANIFEST
    if isinstance(error, LockConflictError):
        return EXIT_LOCK_CONFLICT
    return EXIT_MODULE_FAILED


def selection_options(fn: Any) -> Any:
    """--only / --only-phase / --skip / --skip-tag / --skip-category."""
    options = [
        click.option("--only", "only", multiple=True, metavar="ID|tag:T|category:C",
                     help="Include only these modules (repeatable)."),
        click.option("--only-phase", "only_phases", multiple=True, metavar="N|NAME",
                     help="Include only modules in these phases (repeatable)."),
        click.option("--skip", "skip", multiple=True, metavar="ID",
                     help="Skip a module (repeatable)."),
        click.option("--skip-tag", "skip_tags", multiple=True, metavar="TAG",
                     help="Skip every module with this tag (repeatable)."),
        click.option("--skip-category", "skip_categories", multiple=True, metavar="CATEGORY",
                     help="Skip every module in this category (repeatable)."),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def build_selection(
    only: tuple[str, ...],
    only_phases: tuple[str, ...],
    skip: tuple[str, ...],
    skip_tags: tuple[str, ...],
    skip_categories: tuple[str, ...],
) -> Selection:
    return Selection(
        only=list(only),
        only_phases=list(only_phases),
        skip=list(skip),
        skip_tags=list(skip_tags),
        skip_categories=list(skip_categories),
    )


def load_or_exit(ctx: click.Context, as_json: bool) -> Any:
    from provisioner.core.use_cases.provision import load_inputs

    try:
        return load_inputs(ctx.obj.get("manifest_path"), ctx.obj.get("checksums_path"))
    except ConfigError as e:
        fail(e, as_json, EXIT_INVALID_MANIFEST)


def echo_plan(plan: ExecutionPlan, show_excluded: bool = True) -> None:
    click.secho(
        f"\n📋 Plan for {plan.manifest_id} (v{plan.manifest_version}): {len(plan.entries)} module(s)",
        fg="cyan",
        bold=True,
    )
    phase = None
    for position, entry in enumerate(plan.entries, start=1):
        if entry.phase != phase:
            phase = entry.phase
            click.secho(f"   Phase {phase}", fg="white", bold=True)
        detail = f" ({entry.detail})" if entry.detail else ""
        optional = " [optional]" if entry.optional else ""
        click.echo(f"   {position:>3}. {entry.module_id}{optional}  included: {entry.reason.value}{detail}")

    if show_excluded and plan.excluded:
        click.echo()
        click.secho(f"   Excluded: {len(plan.excluded)}", fg="white", bold=True)
        for ex in plan.excluded:
            click.echo(f"     • {ex.module_id}  ({ex.reason})")
    click.echo()


def echo_progress(result: ModuleResult) -> None:
    marker, color = _STATUS_MARKERS[result.status]
    if result.status == ModuleStatus.RUNNING:
        click.echo(f"   {marker} {result.module_id} ...")
        return
    suffix = f" ({result.reason})" if result.reason else ""
    if result.error and result.status in (ModuleStatus.FAILED, ModuleStatus.WARNING):
        suffix = f": {result.error}"
    click.secho(f"   {marker} {result.module_id}: {result.status.value}{suffix}", fg=color)


def echo_report(report: RunReport) -> None:
    summary = ", ".join(f"{count} {status}" for status, count in report.summary().items())
    color = {"success": "green", "failed": "red", "interrupted": "magenta"}.get(report.status.value, "white")
    click.echo()
    click.secho(f"Run {report.run_id}: {report.status.value}", fg=color, bold=True)
    if summary:
        click.echo(f"   {summary}")
    click.echo(f"   Duration: {report.duration_ms / 1000:.1f}s")

    warnings = report.ids_with_status(ModuleStatus.WARNING)
    if warnings:
        click.secho(f"   ⚠️  Optional modules with problems: {', '.join(warnings)}", fg="yellow")

    if report.error:
        click.echo()
        click.secho("   ❌ " + report.error.replace("\n", "\n      "), fg="red")
    click.echo()


def _raise_interrupt(signum: int, frame: Any) -> None:
    raise KeyboardInterrupt


# ── run ─────────────────────────────────────────────────────────


@cli.command()
@click.option("--print-plan", is_flag=True, help="Print the execution plan without running it.")
@click.option("--list-modules", is_flag=True, help="List every module in the manifest.")
@selection_options
@click.option("--target-version", default=None, metavar="YY.MM", help="OS version to upgrade to first.")
@click.option("--skip-os-upgrade", is_flag=True, help="Do not run the OS upgrade phase.")
@click.option("--timeout", type=click.IntRange(min=1), default=None, help="Per-command timeout in seconds.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def run(
    ctx: click.Context,
    print_plan: bool,
    list_modules: bool,
    only: tuple[str, ...],
    only_phases: tuple[str, ...],
    skip: tuple[str, ...],
    skip_tags: tuple[str, ...],
    skip_categories: tuple[str, ...],
    target_version: str | None,
    skip_os_upgrade: bool,
    timeout: int | None,
    as_json: bool,
) -> None:
    """Install every selected module, in dependency and phase order.

    Examples::

        provision run --print-plan
        provision run --only tag:agents --json
        provision run --skip-os-upgrade --skip lang.bun
    """
    from provisioner.core.use_cases.provision import build_plan, run_provision
    from provisioner.core.use_cases.upgrade import build_state_machine

    settings = get_settings(ctx, as_json)
    if timeout is not None:
        settings = settings.model_copy(update={"command_timeout": timeout})

    loaded = load_or_exit(ctx, as_json)
    selection = build_selection(only, only_phases, skip, skip_tags, skip_categories)

    # ── List mode ──────────────────────────────────────────
    if list_modules:
        _list_modules(loaded.manifest, as_json)
        return

    # ── Plan mode ──────────────────────────────────────────
    if print_plan:
        try:
            plan = build_plan(loaded, selection)
        except ProvisionerError as e:
            fail(e, as_json, exit_code_for_error(e))
        if as_json:
            click.echo(plan.to_json())
        else:
            echo_plan(plan)
        return

    # ── Execute ────────────────────────────────────────────
    if skip_os_upgrade and target_version:
        click.secho("⚠️  --target-version ignored with --skip-os-upgrade", fg="yellow", err=True)

    state_machine = None if skip_os_upgrade else build_state_machine(settings, loaded.path)
    quiet = ctx.obj.get("quiet", False)
    previous = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        result = run_provision(
            loaded,
            selection,
            settings,
            state_machine=state_machine,
            target_version=target_version,
            on_progress=None if as_json or quiet else echo_progress,
            on_plan=None if as_json or quiet else (lambda p: echo_plan(p, show_excluded=False)),
        )
    except ProvisionerError as e:
        fail(e, as_json, exit_code_for_error(e))
    except KeyboardInterrupt:
        click.secho("\n■ Interrupted", fg="magenta", err=True)
        sys.exit(EXIT_INTERRUPTED)
    finally:
        signal.signal(signal.SIGTERM, previous)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, sort_keys=True))
        sys.exit(result.exit_code)

    if result.upgrade is not None and not result.upgrade.ready_for_install:
        click.secho(f"🔄 {result.upgrade.message}", fg="cyan", bold=True)
        for reason in result.upgrade.reasons:
            click.echo(f"   • {reason}")
    if result.report is not None:
        echo_report(result.report)
    sys.exit(result.exit_code)


def _list_modules(manifest: Any, as_json: bool) -> None:
    if as_json:
        rows = [
            {
                "id": m.id,
                "phase": m.phase,
                "category": m.effective_category,
                "tags": m.tags,
                "optional": m.optional,
                "enabled_by_default": m.enabled_by_default,
                "dependencies": m.dependencies,
                "description": m.description,
            }
            for m in manifest.modules
        ]
        click.echo(json.dumps(rows, indent=2, sort_keys=True))
        return

    click.secho(f"\n📦 {manifest.name}: {len(manifest.modules)} module(s)", fg="cyan", bold=True)
    for m in manifest.modules:
        flags = []
        if m.optional:
            flags.append("optional")
        if not m.enabled_by_default:
            flags.append("off by default")
        flag_str = f" [{', '.join(flags)}]" if flags else ""
        click.echo(f"   {m.phase:>2}  {m.id:<28} {m.description}{flag_str}")
    click.echo()


# ── doctor ──────────────────────────────────────────────────────


@cli.command()
@selection_options
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def doctor(
    ctx: click.Context,
    only: tuple[str, ...],
    only_phases: tuple[str, ...],
    skip: tuple[str, ...],
    skip_tags: tuple[str, ...],
    skip_categories: tuple[str, ...],
    as_json: bool,
) -> None:
    """Run verify commands only and report what is installed."""
    from provisioner.core.use_cases.provision import exit_code_for, run_doctor

    settings = get_settings(ctx, as_json)
    loaded = load_or_exit(ctx, as_json)
    selection = build_selection(only, only_phases, skip, skip_tags, skip_categories)

    try:
        report = run_doctor(
            loaded,
            selection,
            settings,
            on_progress=None if as_json else echo_progress,
        )
    except ProvisionerError as e:
        fail(e, as_json, exit_code_for_error(e))

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2, sort_keys=True))
    else:
        echo_report(report)
    sys.exit(exit_code_for(report))


# ── Sub-command groups ──────────────────────────────────────────

from provisioner.ui.cli.manifest import manifest  # noqa: E402
from provisioner.ui.cli.runs import runs  # noqa: E402
from provisioner.ui.cli.upgrade import upgrade  # noqa: E402

cli.add_command(manifest)
cli.add_command(runs)
cli.add_command(upgrade)


if __name__ == "__main__":
    cli()
