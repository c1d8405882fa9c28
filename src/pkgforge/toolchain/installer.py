"""
Host-side toolchain installation driven by a `ToolchainDescriptor`.
"""

import json
import os
from pathlib import Path
import shutil
import tempfile

from attrs import define
from pyvider.telemetry import logger

from ..archives import safe_extract
from ..crypto import verify_file
from ..exceptions import DelegatedToolError, PartialInstallError, PkgForgeError
from ..fetch import Fetcher
from ..runner import CommandRunner
from .descriptors import InstallEntry, ToolchainDescriptor

RECEIPT_FILE = ".pkgforge-receipt.json"


@define(frozen=True, slots=True)
class InstallReport:
    toolchain: str
    install_dir: Path
    installed: tuple[str, ...]
    reused: bool
    probe_output: str


class ToolchainInstaller:
    """
    Runs download -> verify -> unpack -> link -> probe for one toolchain.

    Toolchains unpack into `<prefix>/<language>-<version>/`; stable links live
    in `<prefix>/bin/`. Entries install in declared order. When an entry of a
    multi-entry toolchain fails, the entries before it stay on disk, the ones
    after it are never fetched and `PartialInstallError` names the failure.
    """

    def __init__(
        self,
        prefix: Path,
        fetcher: Fetcher | None = None,
        runner: CommandRunner | None = None,
    ):
        self.prefix = prefix
        self.bin_dir = prefix / "bin"
        self.fetcher = fetcher or Fetcher()
        self.runner = runner or CommandRunner()

    def install(self, descriptor: ToolchainDescriptor) -> InstallReport:
        install_dir = self.prefix / descriptor.install_name
        if self._receipt_matches(descriptor, install_dir):
            try:
                output = self._probe(descriptor)
            except DelegatedToolError as e:
                logger.warning(
                    "Installed toolchain failed its probe; reinstalling",
                    toolchain=descriptor.install_name,
                    error=str(e),
                )
            else:
                logger.info("Reusing installed toolchain", toolchain=descriptor.install_name)
                return InstallReport(
                    descriptor.install_name,
                    install_dir,
                    tuple(descriptor.checksums),
                    reused=True,
                    probe_output=output,
                )

        logger.info(
            "Installing toolchain",
            toolchain=descriptor.install_name,
            entries=len(descriptor.entries),
        )
        self.prefix.mkdir(parents=True, exist_ok=True)
        if install_dir.exists():
            shutil.rmtree(install_dir)
        install_dir.mkdir(parents=True)

        downloads = Path(tempfile.mkdtemp(prefix=".fetch-", dir=self.prefix))
        installed: list[str] = []
        try:
            for position, entry in enumerate(descriptor.entries, start=1):
                try:
                    self._install_entry(entry, downloads, install_dir)
                except PkgForgeError as err:
                    if len(descriptor.entries) == 1:
                        raise
                    logger.error(
                        "Toolchain entry failed; stopping",
                        toolchain=descriptor.install_name,
                        entry=entry.name,
                        position=position,
                    )
                    raise PartialInstallError(
                        descriptor.install_name, entry.name, installed, str(err)
                    ) from err
                installed.append(entry.name)
        finally:
            shutil.rmtree(downloads, ignore_errors=True)

        self._link(descriptor, install_dir)
        for command in descriptor.post_install:
            self.runner.run(
                [part.format(install_dir=install_dir, bin_dir=self.bin_dir) for part in command],
                env=self._env(),
            )
        output = self._probe(descriptor)
        self._write_receipt(descriptor, install_dir)
        logger.info("Toolchain ready", toolchain=descriptor.install_name, probe=output.splitlines()[0] if output else "")
        return InstallReport(
            descriptor.install_name, install_dir, tuple(installed), reused=False, probe_output=output
        )

    def _install_entry(self, entry: InstallEntry, downloads: Path, install_dir: Path) -> None:
        archive = self.fetcher.fetch(entry.url, downloads / entry.filename)
        verify_file(archive, entry.checksum, subject=entry.name)
        target = install_dir / entry.subdir if entry.subdir else install_dir
        if entry.kind == "deb":
            self.runner.run(["dpkg-deb", "-x", archive, target])
        else:
            safe_extract(archive, target, strip_components=entry.strip_components)

    def _link(self, descriptor: ToolchainDescriptor, install_dir: Path) -> None:
        self.bin_dir.mkdir(parents=True, exist_ok=True)
        for name, relative in descriptor.links:
            link = self.bin_dir / name
            staging = self.bin_dir / f".{name}.new"
            staging.unlink(missing_ok=True)
            staging.symlink_to(install_dir / relative)
            os.replace(staging, link)

    def _env(self) -> dict[str, str]:
        return {"PATH": f"{self.bin_dir}{os.pathsep}{os.environ.get('PATH', '')}"}

    def _probe(self, descriptor: ToolchainDescriptor) -> str:
        program, *args = descriptor.probe
        result = self.runner.run([self.bin_dir / program, *args], env=self._env())
        return result.output.strip()

    def _receipt_matches(self, descriptor: ToolchainDescriptor, install_dir: Path) -> bool:
        receipt = install_dir / RECEIPT_FILE
        if not receipt.is_file():
            return False
        try:
            recorded = json.loads(receipt.read_text())
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable toolchain receipt", path=str(receipt))
            return False
        if recorded.get("checksums") != descriptor.checksums:
            return False
        return all(
            (self.bin_dir / name).resolve() == (install_dir / relative).resolve()
            for name, relative in descriptor.links
        )

    def _write_receipt(self, descriptor: ToolchainDescriptor, install_dir: Path) -> None:
        receipt = {
            "language": descriptor.language,
            "version": descriptor.version,
            "checksums": descriptor.checksums,
        }
        (install_dir / RECEIPT_FILE).write_text(json.dumps(receipt, indent=2, sort_keys=True))
