"""
formulary — CLI entrypoint.

Usage:
    formulary --help
    formulary install path/to/formula.yml
    formulary test example1
    formulary check path/to/formula.yml

Exit codes: 0 success (or skipped), 1 usage/config error,
2 missing dependency, 3 workspace allocation failed, 4 source
unavailable, 5 step failed, 6 artifact missing, 7 artifact conflict,
8 verification failed, 9 artifact install failed, 130 interrupted.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from formulary import __version__
from formulary.core.config.loader import ConfigError, load_formula, looks_like_formula_file
from formulary.core.config.settings import Settings, load_settings
from formulary.core.engine.errors import INTERRUPTED_EXIT_CODE
from formulary.core.models.run import RunResult, RunStatus
from formulary.core.observability.logging_config import configure_from_cli


@click.group()
@click.version_option(version=__version__, prog_name="formulary")
@click.option("--verbose", "-v", is_flag=True, help="Show stage progress.")
@click.option("--quiet", "-q", is_flag=True, help="Only report errors.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--prefix",
    type=click.Path(file_okay=False),
    default=None,
    help="Install prefix (default: $FORMULARY_PREFIX or ~/.formulary).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    prefix: str | None,
) -> None:
    """formulary — build, install and verify formulas."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["prefix"] = prefix

    configure_from_cli(debug=debug, verbose=verbose, quiet=quiet)


def _settings(ctx: click.Context, **overrides: object) -> Settings:
    try:
        return load_settings({"prefix": ctx.obj.get("prefix"), **overrides})
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)


def _formula_runner(ctx: click.Context, settings: Settings):
    from formulary.core.engine.pipeline import FormulaRunner

    # Tests inject a runner through ctx.obj
    return FormulaRunner(settings, runner=ctx.obj.get("runner"))


def _load(path: str):
    try:
        return load_formula(Path(path))
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)


@cli.command()
@click.argument("formula_file", type=click.Path(dir_okay=False))
@click.option("--head", is_flag=True, help="Build the latest unpinned source.")
@click.option("--keep-tmp", is_flag=True, help="Keep the build workspace for debugging.")
@click.option("--test", "run_test", is_flag=True, help="Run the formula's test after installing.")
@click.option("--skip-installed", is_flag=True, help="Do nothing if this version is installed.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def install(
    ctx: click.Context,
    formula_file: str,
    head: bool,
    keep_tmp: bool,
    run_test: bool,
    skip_installed: bool,
    as_json: bool,
) -> None:
    """Build and install a formula.

    Examples:

        formulary install Formula/example1.yml

        formulary install --head --keep-tmp Formula/example1.yml
    """
    formula = _load(formula_file)
    settings = _settings(ctx, keep_tmp=keep_tmp or None)
    runner = _formula_runner(ctx, settings)

    if not as_json and not ctx.obj.get("quiet"):
        mode = " [head]" if head else ""
        click.secho(f"\n⚡ Installing {formula.name} {formula.display_version}{mode}", fg="cyan", bold=True)

    try:
        result = runner.install(
            formula,
            head=head,
            keep=keep_tmp,
            test=run_test,
            skip_installed=skip_installed,
        )
    except KeyboardInterrupt:
        click.secho("\n⊘ Interrupted", fg="yellow", err=True)
        sys.exit(INTERRUPTED_EXIT_CODE)

    _report(ctx, result, as_json)


@cli.command("test")
@click.argument("formula_ref")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def test_command(ctx: click.Context, formula_ref: str, as_json: bool) -> None:
    """Run the test of an installed formula (by name or formula file)."""
    settings = _settings(ctx)
    runner = _formula_runner(ctx, settings)
    target = _load(formula_ref) if looks_like_formula_file(formula_ref) else formula_ref

    try:
        result = runner.test(target)
    except KeyboardInterrupt:
        click.secho("\n⊘ Interrupted", fg="yellow", err=True)
        sys.exit(INTERRUPTED_EXIT_CODE)

    _report(ctx, result, as_json)


@cli.command()
@click.argument("formula_file", type=click.Path(dir_okay=False))
def check(formula_file: str) -> None:
    """Validate a formula file without building it."""
    formula = _load(formula_file)

    click.secho("✅ Formula is valid", fg="green", bold=True)
    click.echo(f"   Name:      {formula.name}")
    click.echo(f"   Version:   {formula.display_version}")
    click.echo(f"   Source:    {formula.source.url} ({formula.source.strategy})")
    if formula.dependencies:
        click.echo(f"   Depends:   {', '.join(formula.dependencies)}")
    click.echo(f"   Steps:     {len(formula.install_steps)}")
    click.echo(f"   Artifacts: {len(formula.artifacts)}")
    click.echo(f"   Tests:     {len(formula.test_steps)}")

    if not formula.pinned:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        click.echo("   • source is not pinned; installs build the latest revision")


@cli.command("list")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_installed(ctx: click.Context, as_json: bool) -> None:
    """List installed formulas."""
    from formulary.core.persistence.install_state import InstallState

    settings = _settings(ctx)
    receipts = InstallState(settings.prefix, host_tools=False).installed()

    if as_json:
        click.echo(json.dumps([r.model_dump(mode="json") for r in receipts], indent=2))
        return

    if not receipts:
        click.echo("No formulas installed.")
        return

    for receipt in receipts:
        head = " [head]" if receipt.head else ""
        names = ", ".join(a.name for a in receipt.artifacts)
        click.echo(f"{receipt.name} {receipt.formula.display_version}{head}  → {names}")


@cli.command()
@click.argument("name")
@click.pass_context
def uninstall(ctx: click.Context, name: str) -> None:
    """Remove an installed formula and its links."""
    from formulary.core.persistence.install_state import InstallState

    settings = _settings(ctx)
    removed = InstallState(settings.prefix, host_tools=False).remove(name)

    if removed is None:
        click.secho(f"❌ {name} is not installed", fg="red", err=True)
        sys.exit(1)

    click.secho(f"✓ Uninstalled {name} ({len(removed.artifacts)} artifacts)", fg="green")


# ── Output ──────────────────────────────────────────────────────


def _report(ctx: click.Context, result: RunResult, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_status)

    verbose = ctx.obj.get("verbose", False)
    quiet = ctx.obj.get("quiet", False)

    for warning in result.warnings:
        click.secho(f"   ⚠️  {warning}", fg="yellow", err=True)

    if result.status == RunStatus.SKIPPED:
        click.secho(f"   ⊘ {result.formula} is already installed", fg="yellow")
        return

    if not quiet:
        for step in [*result.steps, *result.tests]:
            marker, color = ("✓", "green") if step.ok else ("✗", "red")
            click.secho(f"   {marker} ", fg=color, nl=False)
            click.echo(f"{step.command}  ({step.duration_ms}ms)")
            if verbose and step.output:
                for line in step.output.splitlines()[:10]:
                    click.echo(f"     │ {line}")

    if result.failed:
        click.secho(f"\n❌ {result.stage}: {result.error}", fg="red", err=True)
        if result.output:
            for line in result.output.splitlines()[-20:]:
                click.echo(f"     │ {line}", err=True)
        if result.installed and result.verified is False:
            click.secho("   Install kept; run 'formulary uninstall' to roll back.", fg="yellow", err=True)
        if result.workspace:
            click.echo(f"   Workspace kept at {result.workspace}", err=True)
        sys.exit(result.exit_status)

    if not quiet:
        for artifact in result.artifacts:
            click.echo(f"   📦 {artifact.name}  → {artifact.link or artifact.destination}")
        if result.workspace:
            click.echo(f"   Workspace kept at {result.workspace}")
        label = "tested" if result.action == "test" else "installed"
        click.secho(f"\n✅ {result.formula} {label} ({result.duration_ms}ms)", fg="green", bold=True)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
