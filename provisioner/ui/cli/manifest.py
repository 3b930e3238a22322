"""
CLI commands for manifest inspection.

Thin wrappers over ``core.use_cases.manifest_check`` and the loader.
"""

from __future__ import annotations

import json
import sys

import click


@click.group()
def manifest() -> None:
    """Inspect and validate the provisioning manifest."""


@manifest.command("check")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def check(ctx: click.Context, as_json: bool) -> None:
    """Validate the manifest and report every problem found.

    Exit code 0 when valid, 2 otherwise.
    """
    from provisioner.core.errors import EXIT_INVALID_MANIFEST, EXIT_OK
    from provisioner.core.use_cases.manifest_check import check_manifest

    result = check_manifest(ctx.obj.get("manifest_path"), ctx.obj.get("checksums_path"))
    code = EXIT_OK if result.valid else EXIT_INVALID_MANIFEST

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, sort_keys=True))
        sys.exit(code)

    if result.errors:
        click.secho("❌ Manifest could not be loaded:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")
        sys.exit(code)

    if result.issues:
        click.secho(f"❌ {len(result.issues)} problem(s) in {result.manifest_path}:", fg="red", bold=True)
        for issue in result.issues:
            click.echo(f"   • [{issue.kind}] {issue.message}")
    elif result.manifest is not None:
        click.secho(
            f"✅ {result.manifest_path}: {len(result.manifest.modules)} module(s), valid",
            fg="green",
        )

    for warning in result.warnings:
        click.secho(f"   ⚠️  {warning.module} ({warning.field}): {warning.message}", fg="yellow")

    sys.exit(code)


@manifest.command("show")
@click.argument("module_id")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def show(ctx: click.Context, module_id: str, as_json: bool) -> None:
    """Print one module's declaration (as normalised by the loader)."""
    from provisioner.core.config.loader import dump_model
    from provisioner.core.errors import EXIT_INVALID_MANIFEST
    from provisioner.main import load_or_exit

    loaded = load_or_exit(ctx, as_json)
    module = loaded.manifest.get_module(module_id)
    if module is None:
        message = f"Unknown module: {module_id}"
        if as_json:
            click.echo(json.dumps({"error": message}, indent=2))
        else:
            click.secho(f"❌ {message}", fg="red", err=True)
        sys.exit(EXIT_INVALID_MANIFEST)

    if as_json:
        click.echo(json.dumps(module.model_dump(mode="json", exclude_none=True), indent=2, sort_keys=True))
    else:
        click.echo(dump_model(module), nl=False)
