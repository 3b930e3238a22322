"""
CLI commands for the reboot-surviving OS upgrade.

``upgrade resume`` is what the systemd unit runs after each reboot; it
logs to the upgrade log file because nobody is watching a terminal.
"""

from __future__ import annotations

import json
import logging
import sys

import click

logger = logging.getLogger(__name__)


@click.group()
def upgrade() -> None:
    """Multi-hop Ubuntu release upgrade that survives reboots."""


def _echo_outcome(outcome, as_json: bool) -> None:
    from provisioner.core.models.upgrade import UpgradeStage

    if as_json:
        click.echo(json.dumps(outcome.to_dict(), indent=2, sort_keys=True))
        return

    if outcome.ready_for_install:
        click.secho(f"✅ {outcome.message}", fg="green")
    elif outcome.stage == UpgradeStage.AWAITING_REBOOT:
        click.secho(f"🔄 {outcome.message}", fg="cyan", bold=True)
        if outcome.remaining_hops:
            click.echo(f"   Remaining hops: {' → '.join(outcome.remaining_hops)}")
    else:
        click.secho(f"❌ {outcome.message}", fg="red", bold=True)
    for reason in outcome.reasons:
        click.echo(f"   • {reason}")


def _exit_code(outcome) -> int:
    from provisioner.core.errors import EXIT_MODULE_FAILED, EXIT_OK
    from provisioner.core.models.upgrade import UpgradeStage

    if outcome.ready_for_install or outcome.stage == UpgradeStage.AWAITING_REBOOT:
        return EXIT_OK
    return EXIT_MODULE_FAILED


@upgrade.command("status")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show the persisted upgrade state."""
    from provisioner.core.errors import EXIT_MODULE_FAILED, StaleStateError
    from provisioner.core.persistence.upgrade_store import UpgradeStateStore
    from provisioner.main import fail, get_settings

    settings = get_settings(ctx, as_json)
    store = UpgradeStateStore(settings.upgrade_state_path)
    try:
        state = store.load()
    except StaleStateError as e:
        fail(e, as_json, EXIT_MODULE_FAILED)

    if as_json:
        click.echo(json.dumps(state.model_dump(mode="json") if state else None, indent=2, sort_keys=True))
        return

    if state is None:
        click.echo("No upgrade in progress.")
        return

    click.secho(f"\n🔄 Upgrade: {state.current_stage.value}", fg="cyan", bold=True)
    click.echo(f"   {state.original_version} → {state.target_version} (now {state.current_version})")
    if state.completed_hops:
        click.echo(f"   Completed hops: {', '.join(state.completed_hops)}")
    if state.needs_reboot:
        click.secho("   Reboot required", fg="yellow")
    if state.last_error:
        click.secho(f"   Last error: {state.last_error}", fg="red")
    click.echo(f"   Updated: {state.updated_at}")
    click.echo(f"   State file: {store.path}")
    click.echo()


@upgrade.command("path")
@click.option("--target-version", default=None, metavar="YY.MM", help="Target release.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def path(ctx: click.Context, target_version: str | None, as_json: bool) -> None:
    """Show the release hops needed to reach the target version."""
    from provisioner.core.errors import EXIT_MODULE_FAILED, UpgradeError
    from provisioner.core.use_cases.upgrade import build_state_machine
    from provisioner.main import fail, get_settings

    settings = get_settings(ctx, as_json)
    target = target_version or settings.target_version
    machine = build_state_machine(settings, ctx.obj.get("manifest_path"))
    try:
        hops = machine.plan(target)
    except UpgradeError as e:
        fail(e, as_json, EXIT_MODULE_FAILED)

    if as_json:
        click.echo(json.dumps({"target_version": target, "hops": hops}, indent=2))
    elif hops:
        click.echo(f"Upgrade path to {target}: {' → '.join(hops)}")
    else:
        click.echo(f"No upgrade needed for {target}.")


@upgrade.command("start")
@click.option("--target-version", default=None, metavar="YY.MM", help="Target release.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def start(ctx: click.Context, target_version: str | None, as_json: bool) -> None:
    """Run preflight checks and upgrade to the next release hop."""
    from provisioner.core.errors import ProvisionerError
    from provisioner.core.use_cases.upgrade import build_state_machine
    from provisioner.main import exit_code_for_error, fail, get_settings

    settings = get_settings(ctx, as_json)
    machine = build_state_machine(settings, ctx.obj.get("manifest_path"))
    try:
        outcome = machine.start(target_version or settings.target_version)
    except ProvisionerError as e:
        fail(e, as_json, exit_code_for_error(e))

    _echo_outcome(outcome, as_json)
    sys.exit(_exit_code(outcome))


@upgrade.command("resume")
@click.option("--no-continue", is_flag=True, help="Do not start module installation on completion.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def resume(ctx: click.Context, no_continue: bool, as_json: bool) -> None:
    """Continue an upgrade after reboot (run by the resume unit)."""
    from provisioner.core.errors import ProvisionerError
    from provisioner.core.observability.logging_config import attach_file_log
    from provisioner.core.use_cases.upgrade import build_state_machine
    from provisioner.main import exit_code_for_error, fail, get_settings

    settings = get_settings(ctx, as_json)
    try:
        attach_file_log(settings.upgrade_log, "DEBUG")
    except OSError as e:
        click.secho(f"⚠️  Cannot open {settings.upgrade_log}: {e}", fg="yellow", err=True)

    machine = build_state_machine(settings, ctx.obj.get("manifest_path"))
    try:
        outcome = machine.resume(continue_install=not no_continue)
    except ProvisionerError as e:
        logger.error("Upgrade resume failed: %s", e)
        fail(e, as_json, exit_code_for_error(e))

    logger.info("Upgrade resume: %s", outcome.message)
    _echo_outcome(outcome, as_json)
    sys.exit(_exit_code(outcome))
