"""The `pkgforge` command-line interface."""

from collections.abc import Callable
import functools
from pathlib import Path
import sys
from typing import Any

import click

from . import __version__
from .config import VERIFY_CONFIG_FILE_NAME, load_spec, load_verify_manifest, resolve_config_path
from .environment import CreateOutcome, EnvironmentManager
from .exceptions import (
    EXIT_CODES,
    ArtifactVerificationError,
    ErrorCategory,
    PkgForgeError,
    QualityGateError,
)
from .layout import PackageLayout
from .models import PackageSpec, PatchSeries, StageStatus
from .packaging.orchestrator import BuildOrchestrator, BuildReport
from .packaging.verifier import VerificationStatus, verify_artifacts
from .patches import PatchWorkbench
from .source import SourceAcquirer
from .tools.gates import AutopkgtestGate, LintianGate, PiupartsGate, QualityGate
from .tools.sbuild import SbuildTool

STATUS_COLOURS = {
    StageStatus.OK: "green",
    StageStatus.WARNING: "yellow",
    StageStatus.SKIPPED: "yellow",
    StageStatus.FATAL: "red",
}

config_argument = click.argument(
    "config",
    required=False,
    type=click.Path(exists=True, resolve_path=True),
)


def reports_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Prints a PkgForgeError and exits with its category's exit code."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except PkgForgeError as e:
            click.secho(f"❌ {e}", fg="red", err=True)
            sys.exit(e.exit_code)
        except OSError as e:
            click.secho(f"❌ {e}", fg="red", err=True)
            sys.exit(EXIT_CODES[ErrorCategory.DELEGATED_TOOL_FAILURE])

    return wrapper


def _environments(spec: PackageSpec) -> EnvironmentManager:
    return EnvironmentManager(spec.build_env.sbuild_cache_dir, SbuildTool())


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(
    __version__,
    "-V",
    "--version",
    prog_name="pkgforge",
    message="%(prog)s version %(version)s",
)
def cli() -> None:
    """Builds verified Debian packages from one declarative specification."""
    pass


@cli.command("version")
def version_command() -> None:
    """Prints the installed pkgforge version."""
    click.echo(__version__)


@cli.group("env")
def env_group() -> None:
    """Manages cached isolated build environments."""
    pass


@env_group.command("create")
@config_argument
@click.option("--force", is_flag=True, help="Rebuild the environment even if it exists.")
@reports_errors
def env_create_command(config: str | None, force: bool) -> None:
    """Creates the build environment described by the specification."""
    spec = load_spec(config)
    outcome = _environments(spec).create(spec.descriptor, force=force)
    if outcome is CreateOutcome.ALREADY_EXISTS:
        click.secho("⚠️  Build environment already exists; use --force to rebuild.", fg="yellow")
    else:
        click.secho(f"✅ Build environment {outcome.value}.", fg="green")


@env_group.command("clean")
@config_argument
@reports_errors
def env_clean_command(config: str | None) -> None:
    """Removes the build environment described by the specification."""
    spec = load_spec(config)
    if _environments(spec).clean(spec.descriptor):
        click.secho("✅ Build environment removed.", fg="green")
    else:
        click.secho("i️ No build environment found, nothing to clean.", fg="yellow")


def _print_report(report: BuildReport) -> None:
    for stage in report.stages:
        click.secho(f"  [{stage.status.value:>7}] {stage.stage}", fg=STATUS_COLOURS[stage.status])
    failure = report.failure
    if failure is not None:
        click.secho(
            f"❌ Stage '{failure.stage}' failed ({failure.category}):\n{failure.detail}",
            fg="red",
            err=True,
        )


def _package(config: str | None, overrides: dict[str, bool | None]) -> BuildReport:
    click.echo("🚀 Building package...")
    report = BuildOrchestrator.from_config(config, overrides).run()
    _print_report(report)
    if report.succeeded:
        click.secho(f"✅ Package built in {report.layout.artifacts_dir}", fg="green")
    return report


@cli.command("package")
@config_argument
@click.option("--run-lintian/--no-run-lintian", default=None, help="Override build_env.run_lintian.")
@click.option("--run-piuparts/--no-run-piuparts", default=None, help="Override build_env.run_piuparts.")
@click.option(
    "--run-autopkgtest/--no-run-autopkgtest", default=None, help="Override build_env.run_autopkgtest."
)
@click.option(
    "--create-env/--no-create-env",
    "create_env_if_missing",
    default=None,
    help="Create the build environment when it does not exist.",
)
@reports_errors
def package_command(config: str | None, **overrides: bool | None) -> None:
    """Builds the package and runs the enabled quality gates."""
    report = _package(config, overrides)
    if not report.succeeded:
        sys.exit(report.exit_code)


def _gate_command(name: str, gate_cls: type[QualityGate], help_text: str) -> None:
    @cli.command(name, help=help_text)
    @config_argument
    @reports_errors
    def command(config: str | None) -> None:
        spec = load_spec(config)
        result = gate_cls().run(spec, PackageLayout.from_spec(spec))
        if result.passed:
            click.secho(f"✅ {name} passed.", fg="green")
            return
        raise QualityGateError(f"{name} failed:\n{result.detail}")


_gate_command("piuparts", PiupartsGate, "Runs the install/purge lifecycle check on the built package.")
_gate_command("autopkgtest", AutopkgtestGate, "Runs the package's functional tests in a qemu image.")
_gate_command("lintian", LintianGate, "Runs the static policy check on the built package.")


@cli.command("verify")
@config_argument
@click.option(
    "--verify-config",
    type=click.Path(exists=True, dir_okay=False, resolve_path=True),
    help=f"Hash manifest; defaults to {VERIFY_CONFIG_FILE_NAME} next to the specification.",
)
@click.option("--no-package", is_flag=True, help="Verify existing artifacts without building.")
@reports_errors
def verify_command(config: str | None, verify_config: str | None, no_package: bool) -> None:
    """Recomputes artifact hashes and compares them with the manifest."""
    config_path = resolve_config_path(config)
    manifest_path = (
        Path(verify_config) if verify_config else config_path.parent / VERIFY_CONFIG_FILE_NAME
    )
    expected = load_verify_manifest(manifest_path)

    if no_package:
        spec = load_spec(config_path)
        artifacts_dir = PackageLayout.from_spec(spec).artifacts_dir
    else:
        # Quality gates do not affect reproducibility checks.
        report = _package(
            str(config_path),
            {"run_lintian": False, "run_piuparts": False, "run_autopkgtest": False},
        )
        if not report.succeeded:
            sys.exit(report.exit_code)
        artifacts_dir = report.layout.artifacts_dir

    click.echo(f"🔍 Verifying artifacts in '{artifacts_dir}'...")
    outcomes = verify_artifacts(artifacts_dir, expected)
    colours = {
        VerificationStatus.MATCH: "green",
        VerificationStatus.MISSING: "yellow",
        VerificationStatus.MISMATCH: "red",
    }
    for outcome in outcomes:
        click.secho(f"  {outcome}", fg=colours[outcome.status])
    if any(outcome.failed for outcome in outcomes):
        raise ArtifactVerificationError(outcomes)
    click.secho("✅ Verification successful.", fg="green")


@cli.group("patch")
def patch_group() -> None:
    """Interactive patch development on the unpacked source."""
    pass


def _workbench(spec: PackageSpec) -> tuple[PatchWorkbench, PackageLayout]:
    layout = PackageLayout.from_spec(spec)
    return PatchWorkbench(layout.build_files_dir, layout.artifacts_dir), layout


@patch_group.command("push")
@config_argument
@reports_errors
def patch_push_command(config: str | None) -> None:
    """Unpacks fresh source and applies the stored patch series."""
    spec = load_spec(config)
    workbench, layout = _workbench(spec)
    layout.artifacts_dir.mkdir(parents=True, exist_ok=True)
    tree = SourceAcquirer().acquire(spec, layout)
    tree.root.mkdir(parents=True, exist_ok=True)
    applied = workbench.push(PatchSeries.load(spec.fields.patches_dir))
    click.secho(f"✅ Applied {len(applied)} patch(es) onto {tree.root}", fg="green")


@patch_group.command("new")
@click.argument("name")
@config_argument
@reports_errors
def patch_new_command(name: str, config: str | None) -> None:
    """Starts a new patch on top of the pushed series."""
    spec = load_spec(config)
    workbench, layout = _workbench(spec)
    workbench.new(name)
    click.secho(f"✅ Edit files in {layout.build_files_dir}, then run `pkgforge patch refresh`.", fg="green")


@patch_group.command("refresh")
@config_argument
@reports_errors
def patch_refresh_command(config: str | None) -> None:
    """Writes the current changes into the patch in progress."""
    spec = load_spec(config)
    workbench, _ = _workbench(spec)
    patch_file = workbench.refresh()
    click.secho(f"✅ Patch written to {patch_file}", fg="green")


main = cli
