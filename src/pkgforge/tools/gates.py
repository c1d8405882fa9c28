"""
Quality gates: piuparts, autopkgtest and lintian.

A gate never raises for a failing tool. Tool failures, missing artifacts and
missing programs become a FAIL result carrying the tool's output, so one gate
can never stop another from running.
"""

from enum import Enum
from pathlib import Path
import re

from attrs import define
from pyvider.telemetry import logger

from ..exceptions import DelegatedToolError, PkgForgeError
from ..layout import PackageLayout
from ..models import BOOKWORM, JAMMY, NOBLE, DotnetEnv, PackageSpec
from ..runner import CommandRunner
from ..toolchain.recipes import MICROSOFT_REPO_SETUP


class GateStatus(Enum):
    PASS = "pass"
    FAIL = "fail"


@define(frozen=True, slots=True)
class GateResult:
    gate: str
    status: GateStatus
    detail: str = ""

    @property
    def passed(self) -> bool:
        return self.status is GateStatus.PASS


class QualityGate:
    name: str = ""
    program: str = ""

    def __init__(self, runner: CommandRunner | None = None):
        self.runner = runner or CommandRunner()

    def enabled(self, spec: PackageSpec) -> bool:
        return getattr(spec.build_env, f"run_{self.name}")

    def pinned_version(self, spec: PackageSpec) -> str:
        return getattr(spec.build_env, f"{self.name}_version")

    def run(self, spec: PackageSpec, layout: PackageLayout) -> GateResult:
        logger.info("Running quality gate", gate=self.name)
        try:
            self.check_version(spec)
            output = self.execute(spec, layout)
        except DelegatedToolError as e:
            logger.error("Quality gate failed", gate=self.name, returncode=e.returncode)
            return GateResult(self.name, GateStatus.FAIL, e.diagnostic or str(e))
        except PkgForgeError as e:
            logger.error("Quality gate could not run", gate=self.name, error=str(e))
            return GateResult(self.name, GateStatus.FAIL, str(e))
        logger.info("Quality gate passed", gate=self.name)
        return GateResult(self.name, GateStatus.PASS, output)

    def check_version(self, spec: PackageSpec) -> None:
        """Warns when the installed tool differs from the pinned version."""
        expected = self.pinned_version(spec)
        result = self.runner.run(self.version_command(), check=False)
        match = re.search(r"\d+(?:\.\d+)+", result.output)
        actual = match.group(0) if match else None
        if actual != expected:
            logger.warning(
                "Installed tool version differs from the pinned version",
                tool=self.program,
                expected=expected,
                actual=actual,
            )

    def version_command(self) -> list[str]:
        return [self.program, "--version"]

    def execute(self, spec: PackageSpec, layout: PackageLayout) -> str:
        raise NotImplementedError

    @staticmethod
    def require_file(path: Path) -> Path:
        if not path.is_file():
            raise PkgForgeError(f"Build artifact not found: {path}. Build the package first.")
        return path


class PiupartsGate(QualityGate):
    """Install, upgrade and purge lifecycle check."""

    name = "piuparts"
    program = "piuparts"

    def command(self, spec: PackageSpec, layout: PackageLayout) -> list[str]:
        distribution = spec.build_env.codename
        args = [
            "sudo",
            "-n",
            self.program,
            "-d",
            distribution.short,
            "-m",
            distribution.repo_url,
            "--bindmount=/dev",
            f"--keyring={distribution.keyring}",
            "--verbose",
        ]
        if isinstance(spec.language_env, DotnetEnv) and distribution in (BOOKWORM, JAMMY):
            args += [
                f"--extra-repo=deb https://packages.microsoft.com/debian/12/prod {distribution.short} main",
                "--do-not-verify-signatures",
            ]
        return [*args, str(layout.deb_file)]

    def execute(self, spec: PackageSpec, layout: PackageLayout) -> str:
        self.require_file(layout.deb_file)
        return self.runner.run(self.command(spec, layout), cwd=layout.artifacts_dir).output


class AutopkgtestGate(QualityGate):
    """Runs the package's functional tests inside a cached qemu image."""

    name = "autopkgtest"
    program = "autopkgtest"

    def version_command(self) -> list[str]:
        return ["apt", "list", "--installed", "autopkgtest"]

    def image_path(self, spec: PackageSpec) -> Path:
        env = spec.build_env
        return env.sbuild_cache_dir / f"autopkgtest-{env.codename.short}-{env.arch}.img"

    def prepare_image(self, spec: PackageSpec) -> Path:
        image = self.image_path(spec)
        if image.exists():
            return image
        env = spec.build_env
        distribution = env.codename
        image.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Building autopkgtest image", image=str(image))
        if distribution.family == "debian":
            command = [
                "autopkgtest-build-qemu",
                distribution.short,
                str(image),
                f"--mirror={distribution.repo_url}",
                f"--arch={env.arch}",
            ]
        else:
            command = [
                "autopkgtest-buildvm-ubuntu-cloud",
                f"--release={distribution.short}",
                f"--mirror={distribution.repo_url}",
                f"--arch={env.arch}",
                f"--output-dir={image.parent}",
                "-v",
            ]
        self.runner.run(["sudo", "-n", *command], cwd=image.parent)
        return image

    def command(self, spec: PackageSpec, layout: PackageLayout, image: Path) -> list[str]:
        setup: tuple[str, ...] = ()
        if isinstance(spec.language_env, DotnetEnv) and spec.build_env.codename in (BOOKWORM, JAMMY):
            setup = ("apt-get install -y wget", *MICROSOFT_REPO_SETUP, "apt-get remove -y wget")
        return [
            self.program,
            str(layout.changes_file),
            "--no-built-binaries",
            "--apt-upgrade",
            *(f"--setup-commands={command}" for command in setup),
            "--",
            "qemu",
            str(image),
        ]

    def execute(self, spec: PackageSpec, layout: PackageLayout) -> str:
        self.require_file(layout.changes_file)
        image = self.prepare_image(spec)
        return self.runner.run(self.command(spec, layout, image), cwd=layout.artifacts_dir).output


class LintianGate(QualityGate):
    """Static policy checks; warnings count as failures."""

    name = "lintian"
    program = "lintian"

    def command(self, spec: PackageSpec, layout: PackageLayout) -> list[str]:
        args = [
            self.program,
            "--suppress-tags",
            "bad-distribution-in-changes-file",
            "-i",
            "-I",
            str(layout.changes_file),
            "--tag-display-limit=0",
            "--fail-on=warning",
            "--fail-on=error",
            "--suppress-tags",
            "debug-file-with-no-debug-symbols",
        ]
        if spec.build_env.codename in (JAMMY, NOBLE):
            args += ["--suppress-tags", "malformed-deb-archive"]
        return args

    def execute(self, spec: PackageSpec, layout: PackageLayout) -> str:
        self.require_file(layout.changes_file)
        return self.runner.run(self.command(spec, layout), cwd=layout.artifacts_dir).output


def default_gates(runner: CommandRunner | None = None) -> list[QualityGate]:
    return [PiupartsGate(runner), AutopkgtestGate(runner), LintianGate(runner)]
