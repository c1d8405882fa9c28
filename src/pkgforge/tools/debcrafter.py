"""
Adapter for the debcrafter metadata generator and the finishing touches the
generated `debian/` directory receives before a build.
"""

from pathlib import Path
import shutil
import tempfile

from pyvider.telemetry import logger

from ..exceptions import DelegatedToolError, SpecValidationError
from ..layout import PackageLayout
from ..models import PackageSpec, Violation
from ..runner import CommandRunner

STANDARDS_VERSION = "4.5.1"
SOURCE_FORMAT = "3.0 (quilt)\n"
OVERRIDES_DIR = "src"
QUILT_PC_VERSION = 2


class DebcrafterTool:
    def __init__(self, runner: CommandRunner | None = None):
        self.runner = runner or CommandRunner()

    def program(self, spec: PackageSpec) -> str:
        return f"debcrafter_{spec.build_env.debcrafter_version}"

    def generate(self, spec: PackageSpec, layout: PackageLayout) -> Path:
        """Writes `debian/` into the build files directory and finishes it."""
        program = self.runner.require(self.program(spec))
        self.runner.require("dpkg-parsechangelog")

        spec_file = spec.fields.spec_file
        if not spec_file.is_file():
            raise SpecValidationError(
                [Violation("package_fields.spec_file", f"file not found: {spec_file}")]
            )

        debian_dir = layout.build_files_dir / "debian"
        with tempfile.TemporaryDirectory(prefix="pkgforge-debcrafter-") as tmp:
            self.runner.run([program, spec_file.name, tmp], cwd=spec_file.parent)
            generated = sorted(p for p in Path(tmp).iterdir() if p.is_dir())
            if not generated or not (generated[0] / "debian").is_dir():
                raise DelegatedToolError(
                    f"{self.program(spec)} produced no debian directory for {spec_file.name}.",
                    command=[program, spec_file.name, tmp],
                )
            shutil.copytree(generated[0] / "debian", debian_dir, dirs_exist_ok=True)

        finish_metadata(spec, layout.build_files_dir)
        logger.info("Package metadata generated", path=str(debian_dir))
        return debian_dir


def finish_metadata(spec: PackageSpec, build_files_dir: Path) -> None:
    overrides = spec.config_root / OVERRIDES_DIR
    if overrides.is_dir():
        logger.info("Applying maintainer overrides", source=str(overrides))
        shutil.copytree(overrides, build_files_dir, dirs_exist_ok=True)

    format_file = build_files_dir / "debian" / "source" / "format"
    if not format_file.exists():
        format_file.parent.mkdir(parents=True, exist_ok=True)
        format_file.write_text(SOURCE_FORMAT)

    # dpkg-source reads the quilt metadata format from .pc/.version
    pc_dir = build_files_dir / ".pc"
    pc_dir.mkdir(exist_ok=True)
    (pc_dir / ".version").write_text(f"{QUILT_PC_VERSION}\n")

    control = build_files_dir / "debian" / "control"
    if control.is_file():
        control.write_text(
            add_control_fields(control.read_text(), spec.fields.homepage)
        )

    rules = build_files_dir / "debian" / "rules"
    if rules.is_file():
        rules.chmod(rules.stat().st_mode | 0o111)


def add_control_fields(content: str, homepage: str) -> str:
    """
    Inserts Standards-Version and Homepage after `Priority:` when absent, or
    at the top of the file when there is no `Priority:` line.
    """
    lines = content.splitlines()
    if any(line.startswith("Standards-Version") for line in lines):
        return content
    index = next(
        (i + 1 for i, line in enumerate(lines) if line.startswith("Priority:")), 0
    )
    added = [f"Standards-Version: {STANDARDS_VERSION}"]
    if not any(existing.startswith("Homepage:") for existing in lines):
        added.append(f"Homepage: {homepage}")
    result = lines[:index] + added + lines[index:]
    return "\n".join(result) + ("\n" if content.endswith("\n") or not content else "")
