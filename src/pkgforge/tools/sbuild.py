"""Adapter for sbuild: build-root bootstrap and package builds."""

from collections.abc import Sequence
from pathlib import Path
import tempfile

from pyvider.telemetry import logger

from ..crypto import sha256_of
from ..environment import BuildEnvironmentHandle
from ..layout import PackageLayout
from ..models import NOBLE, ArtifactFile, BuildArtifactSet, BuildEnvironmentDescriptor, PackageSpec
from ..runner import CommandRunner

NOBLE_REPOSITORIES = (
    "apt install -y software-properties-common",
    "add-apt-repository universe",
    "add-apt-repository restricted",
    "add-apt-repository multiverse",
    "apt update",
)


class SbuildTool:
    def __init__(self, runner: CommandRunner | None = None):
        self.runner = runner or CommandRunner()

    def create_environment(self, descriptor: BuildEnvironmentDescriptor, tarball: Path) -> None:
        distribution = descriptor.distribution
        tarball.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="pkgforge-chroot-") as tmp:
            self.runner.run(
                [
                    "sbuild-createchroot",
                    "--chroot-mode=unshare",
                    f"--make-sbuild-tarball={tarball}",
                    distribution.short,
                    tmp,
                    distribution.repo_url,
                ]
            )

    def build_command(
        self,
        spec: PackageSpec,
        handle: BuildEnvironmentHandle,
        setup_commands: Sequence[str] = (),
    ) -> list[str]:
        distribution = spec.build_env.codename
        commands = list(setup_commands)
        if distribution == NOBLE:
            commands.extend(NOBLE_REPOSITORIES)
        return [
            "sbuild",
            "-d",
            distribution.short,
            "-A",
            "-s",
            "--source-only-changes",
            "-c",
            str(handle.tarball),
            "-v",
            "--chroot-mode=unshare",
            *(f"--chroot-setup-commands={command}" for command in commands),
            "--no-run-piuparts",
            "--no-apt-upgrade",
            "--no-apt-distupgrade",
            "--no-run-lintian",
            "--no-run-autopkgtest",
        ]

    def build(
        self,
        spec: PackageSpec,
        layout: PackageLayout,
        handle: BuildEnvironmentHandle,
        setup_commands: Sequence[str] = (),
    ) -> BuildArtifactSet:
        self.runner.run(
            self.build_command(spec, handle, setup_commands), cwd=layout.build_files_dir
        )
        artifacts = collect_artifacts(layout.artifacts_dir)
        logger.info("Build finished", artifacts=artifacts.names())
        return artifacts


def collect_artifacts(directory: Path) -> BuildArtifactSet:
    """Records every regular file the build left in the artifacts directory."""
    files = tuple(
        ArtifactFile(name=path.name, path=path, sha256=sha256_of(path))
        for path in sorted(directory.iterdir())
        if path.is_file() and not path.name.startswith(".")
    )
    return BuildArtifactSet(directory=directory, files=files)
