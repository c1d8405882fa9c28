"""Sequencing of one package build, from validated spec to checked artifacts."""

from collections.abc import Callable, Mapping
from pathlib import Path
import shutil

from attrs import define, field
from pyvider.telemetry import logger

from ..archives import create_reproducible_tarball
from ..config import load_spec
from ..environment import EnvironmentManager
from ..exceptions import EXIT_CODES, DelegatedToolError, ErrorCategory, PkgForgeError
from ..fetch import Fetcher
from ..layout import PackageLayout
from ..models import (
    BuildArtifactSet,
    DotnetEnv,
    PackageSpec,
    PatchSeries,
    SourceTree,
    StageResult,
    StageStatus,
)
from ..patches import PatchApplier
from ..runner import CommandRunner
from ..source import SourceAcquirer
from ..toolchain import ToolchainDescriptor, ToolchainInstaller, descriptor_for, setup_commands
from ..tools.debcrafter import DebcrafterTool
from ..tools.gates import GateResult, QualityGate, default_gates
from ..tools.sbuild import SbuildTool
from .verifier import run_quality_gates


class _StageFailed(Exception):
    def __init__(self, result: StageResult, error: PkgForgeError) -> None:
        super().__init__(result.stage)
        self.result = result
        self.error = error


@define(frozen=True, slots=True)
class BuildReport:
    """`spec` and `layout` are None only when the document failed validation."""

    spec: PackageSpec | None
    layout: PackageLayout | None
    stages: tuple[StageResult, ...]
    artifacts: BuildArtifactSet | None = None
    gates: tuple[GateResult, ...] = ()
    error: PkgForgeError | None = field(default=None, eq=False)

    @property
    def failure(self) -> StageResult | None:
        return next((stage for stage in self.stages if stage.is_fatal), None)

    @property
    def succeeded(self) -> bool:
        return self.failure is None

    @property
    def exit_code(self) -> int:
        failure = self.failure
        if failure is None:
            return 0
        return EXIT_CODES[failure.category or ErrorCategory.DELEGATED_TOOL_FAILURE]

    def stage(self, name: str) -> StageResult | None:
        return next((stage for stage in self.stages if stage.stage == name), None)


class BuildOrchestrator:
    """
    Runs validate -> environment -> source -> patches -> toolchain -> metadata
    -> build, then the enabled quality gates.

    Stages run strictly in order. The first stage that raises is recorded as
    FATAL with the full diagnostic of the tool that failed and nothing after
    it runs. Quality gates are the exception: each enabled gate runs even when
    another one failed. Gate enable flags are captured once the document is
    validated, before any other stage runs.

    Built from `from_config`, the orchestrator loads the document in its
    validate stage, so an invalid document still yields a report.
    """

    def __init__(
        self,
        spec: PackageSpec | None = None,
        *,
        location: str | Path | None = None,
        overrides: Mapping[str, bool | None] | None = None,
        runner: CommandRunner | None = None,
        fetcher: Fetcher | None = None,
        environments: EnvironmentManager | None = None,
        acquirer: SourceAcquirer | None = None,
        patcher: PatchApplier | None = None,
        installer: ToolchainInstaller | None = None,
        metadata_tool: DebcrafterTool | None = None,
        sbuild: SbuildTool | None = None,
        gates: list[QualityGate] | None = None,
    ) -> None:
        self.spec = spec
        self.layout = PackageLayout.from_spec(spec) if spec is not None else None
        self.location = location
        self.overrides = overrides
        self.runner = runner or CommandRunner()
        self.fetcher = fetcher or Fetcher()
        self.sbuild = sbuild or SbuildTool(self.runner)
        self.acquirer = acquirer or SourceAcquirer(self.fetcher, self.runner)
        self.patcher = patcher or PatchApplier(self.runner)
        self.metadata_tool = metadata_tool or DebcrafterTool(self.runner)
        self.gates = default_gates(self.runner) if gates is None else gates
        self._environments = environments
        self._installer = installer

        self._tree: SourceTree | None = None
        self._toolchain: ToolchainDescriptor | None = None
        self._artifacts: BuildArtifactSet | None = None

    @classmethod
    def from_config(
        cls,
        location: str | Path | None = None,
        overrides: Mapping[str, bool | None] | None = None,
        **collaborators,
    ) -> "BuildOrchestrator":
        return cls(location=location, overrides=overrides, **collaborators)

    @property
    def environments(self) -> EnvironmentManager:
        if self._environments is None:
            self._environments = EnvironmentManager(
                self._validated().build_env.sbuild_cache_dir, self.sbuild
            )
        return self._environments

    @property
    def installer(self) -> ToolchainInstaller:
        if self._installer is None:
            self._installer = ToolchainInstaller(
                self._layout().toolchain_root, self.fetcher, self.runner
            )
        return self._installer

    def _validated(self) -> PackageSpec:
        if self.spec is None:
            raise AssertionError("The validate stage has not produced a spec yet.")
        return self.spec

    def _layout(self) -> PackageLayout:
        if self.layout is None:
            raise AssertionError("The validate stage has not produced a layout yet.")
        return self.layout

    def run(self) -> BuildReport:
        self._tree = self._toolchain = self._artifacts = None
        steps: list[tuple[str, Callable[[], StageResult]]] = [
            ("environment", self._ensure_environment),
            ("source", self._acquire_source),
            ("patches", self._apply_patches),
            ("toolchain", self._install_toolchain),
            ("metadata", self._generate_metadata),
            ("build", self._build),
        ]
        stages: list[StageResult] = []
        try:
            stages.append(self._run_stage("validate", self._validate))
            spec = self._validated()
            enabled_gates = [gate for gate in self.gates if gate.enabled(spec)]
            disabled_gates = [gate.name for gate in self.gates if not gate.enabled(spec)]
            fields = spec.fields
            logger.info(
                "Starting package build",
                package=fields.package_name,
                version=f"{fields.version_number}-{fields.revision_number}",
                codename=spec.build_env.codename.short,
                arch=spec.build_env.arch,
                gates=[gate.name for gate in enabled_gates],
            )
            for name, step in steps:
                stages.append(self._run_stage(name, step))
        except _StageFailed as halt:
            stages.append(halt.result)
            return BuildReport(
                self.spec, self.layout, tuple(stages), self._artifacts, error=halt.error
            )

        gate_results = run_quality_gates(enabled_gates, spec, self._layout())
        for result in gate_results:
            if result.passed:
                stages.append(StageResult(result.gate, StageStatus.OK, result.detail))
            else:
                stages.append(
                    StageResult(result.gate, StageStatus.FATAL, result.detail, ErrorCategory.QUALITY_GATE)
                )
        for name in disabled_gates:
            stages.append(StageResult(name, StageStatus.SKIPPED, "disabled by configuration"))

        report = BuildReport(
            spec, self.layout, tuple(stages), self._artifacts, tuple(gate_results)
        )
        logger.info("Package build finished", succeeded=report.succeeded)
        return report

    def _run_stage(self, name: str, step: Callable[[], StageResult]) -> StageResult:
        logger.info("Stage started", stage=name)
        try:
            result = step()
        except OSError as e:
            error = DelegatedToolError(
                f"Stage '{name}' failed on the filesystem: {e}", stderr=str(e)
            )
            raise self._fatal(name, error) from e
        except PkgForgeError as e:
            raise self._fatal(name, e) from e
        logger.info("Stage finished", stage=name, status=result.status.value)
        return result

    def _fatal(self, name: str, error: PkgForgeError) -> _StageFailed:
        logger.error("Stage failed", stage=name, category=error.category.value)
        return _StageFailed(StageResult(name, StageStatus.FATAL, str(error), error.category), error)

    def _validate(self) -> StageResult:
        if self.spec is None:
            self.spec = load_spec(self.location, self.overrides)
            self.layout = PackageLayout.from_spec(self.spec)
        fields = self.spec.fields
        return StageResult(
            "validate",
            StageStatus.OK,
            f"{fields.package_name} {fields.version_number}-{fields.revision_number} "
            f"({self.spec.package_type.tag})",
        )

    def _ensure_environment(self) -> StageResult:
        spec = self._validated()
        handle, outcome = self.environments.ensure(
            spec.descriptor, spec.build_env.create_env_if_missing
        )
        detail = outcome.value if outcome else "ready"
        return StageResult("environment", StageStatus.OK, f"{detail}: {handle.path}")

    def _acquire_source(self) -> StageResult:
        layout = self._layout()
        artifacts_dir = layout.artifacts_dir
        if artifacts_dir.exists():
            shutil.rmtree(artifacts_dir)
        artifacts_dir.mkdir(parents=True)
        tree = self.acquirer.acquire(self._validated(), layout)
        tree.root.mkdir(parents=True, exist_ok=True)
        self._tree = tree
        status = StageStatus.OK if tree.verified else StageStatus.WARNING
        detail = f"{tree.provenance} ({len(tree.files)} files)"
        if not tree.verified:
            detail += "; no checksum declared, source not verified"
        return StageResult("source", status, detail)

    def _apply_patches(self) -> StageResult:
        spec = self._validated()
        if spec.is_virtual:
            return StageResult("patches", StageStatus.SKIPPED, "virtual package")
        if self._tree is None:
            raise AssertionError("Patches can only be applied after the source stage.")
        series = PatchSeries.load(spec.fields.patches_dir)
        if not len(series):
            return StageResult("patches", StageStatus.SKIPPED, "no patch series")
        applied = self.patcher.apply(series, self._tree.root)
        return StageResult("patches", StageStatus.OK, ", ".join(applied))

    def _install_toolchain(self) -> StageResult:
        self._toolchain = descriptor_for(self._validated().language_env)
        if self._toolchain is None:
            return StageResult("toolchain", StageStatus.SKIPPED, "distribution toolchain")
        report = self.installer.install(self._toolchain)
        state = "reused" if report.reused else "installed"
        return StageResult("toolchain", StageStatus.OK, f"{report.toolchain} {state}")

    def _generate_metadata(self) -> StageResult:
        debian_dir = self.metadata_tool.generate(self._validated(), self._layout())
        return StageResult("metadata", StageStatus.OK, str(debian_dir))

    def _build(self) -> StageResult:
        spec, layout = self._validated(), self._layout()
        if spec.is_virtual:
            fields = spec.fields
            create_reproducible_tarball(
                None, layout.orig_tarball, prefix=f"{fields.package_name}-{fields.version_number}"
            )
        language_env = spec.language_env
        commands = setup_commands(
            self._toolchain,
            spec.build_env.codename,
            use_backup_version=isinstance(language_env, DotnetEnv) and language_env.use_backup_version,
        )
        with self.environments.occupy(spec.descriptor) as handle:
            self._artifacts = self.sbuild.build(spec, layout, handle, commands)
        return StageResult("build", StageStatus.OK, ", ".join(self._artifacts.names()))
