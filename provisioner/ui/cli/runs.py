"""
CLI commands for past provisioning runs.
"""

from __future__ import annotations

import json
import sys

import click


@click.group()
def runs() -> None:
    """Show the last run report and the run history."""


@runs.command("last")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def last(ctx: click.Context, as_json: bool) -> None:
    """Show the most recent run report, module by module."""
    from provisioner.core.persistence.run_history import RunHistory
    from provisioner.main import echo_report, get_settings

    settings = get_settings(ctx, as_json)
    report = RunHistory(settings.run_dir).load_last()

    if report is None:
        if as_json:
            click.echo(json.dumps(None))
        else:
            click.echo("No run recorded yet.")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2, sort_keys=True))
        return

    click.secho(f"\n📄 {report.run_id} ({report.mode}, {report.manifest_id})", bold=True)
    click.echo(f"   Started: {report.started_at}")
    for result in report.modules:
        reason = f" ({result.reason})" if result.reason else ""
        click.echo(f"   {result.status.value:<14} {result.module_id}{reason}")
        if result.failed_command:
            click.echo(f"{'':<18}$ {result.failed_command}  → exit {result.exit_code}")
    echo_report(report)


@runs.command("history")
@click.option("-n", "count", type=click.IntRange(min=1), default=10, show_default=True,
              help="Number of runs to show.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def history(ctx: click.Context, count: int, as_json: bool) -> None:
    """List recent runs, oldest first."""
    from provisioner.core.persistence.run_history import RunHistory
    from provisioner.main import get_settings

    settings = get_settings(ctx, as_json)
    ledger = RunHistory(settings.run_dir)

    if as_json:
        click.echo(json.dumps(ledger.summaries_as_dicts(count), indent=2))
        return

    entries = ledger.read_recent(count)
    if not entries:
        click.echo("No runs recorded yet.")
        return

    icons = {"success": "✅", "failed": "❌", "interrupted": "■"}
    for entry in entries:
        icon = icons.get(entry.status, "·")
        line = (
            f"{icon} {entry.timestamp[:19]}  {entry.run_id}  {entry.mode:<7} "
            f"{entry.succeeded} ok, {entry.skipped} skipped, {entry.warnings} warn, {entry.failed} failed"
        )
        if entry.failed_module:
            line += f"  (failed: {entry.failed_module})"
        click.echo(line)
