"""
Source acquisition for each package type.

Every run unpacks into a freshly created build files directory; a tree left
over from an earlier run is removed, never patched up in place.
"""

import os
from pathlib import Path
import shutil

from pyvider.telemetry import logger

from .archives import create_reproducible_tarball, safe_extract
from .crypto import ChecksumStatus, verify_file
from .exceptions import DelegatedToolError, IntegrityError
from .fetch import Fetcher
from .layout import PackageLayout
from .models import DefaultPackage, GitPackage, PackageSpec, SourceTree, VirtualPackage
from .runner import CommandRunner


def _fresh_dir(path: Path) -> Path:
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)
    return path


def _tree_files(root: Path) -> tuple[str, ...]:
    return tuple(
        sorted(
            p.relative_to(root).as_posix()
            for p in root.rglob("*")
            if p.is_file() and ".git" not in p.relative_to(root).parts
        )
    )


class SourceAcquirer:
    def __init__(self, fetcher: Fetcher | None = None, runner: CommandRunner | None = None):
        self.fetcher = fetcher or Fetcher()
        self.runner = runner or CommandRunner()

    def acquire(self, spec: PackageSpec, layout: PackageLayout) -> SourceTree:
        match spec.package_type:
            case VirtualPackage():
                logger.info("Virtual package; no upstream source to acquire")
                return SourceTree(root=layout.build_files_dir, provenance="virtual", verified=True)
            case DefaultPackage() as package:
                return self._acquire_tarball(package, layout)
            case GitPackage() as package:
                return self._acquire_git(package, spec, layout)
        raise TypeError(f"Unsupported package type: {type(spec.package_type).__name__}")

    def _acquire_tarball(self, package: DefaultPackage, layout: PackageLayout) -> SourceTree:
        staging = layout.artifacts_dir / ".download" / Path(package.tarball_url).name
        self.fetcher.fetch(package.tarball_url, staging)
        try:
            result = verify_file(staging, package.tarball_hash, subject=package.tarball_url)
        except IntegrityError:
            staging.unlink(missing_ok=True)
            raise
        os.replace(staging, layout.orig_tarball)
        shutil.rmtree(staging.parent, ignore_errors=True)

        root = _fresh_dir(layout.build_files_dir)
        files = safe_extract(layout.orig_tarball, root)
        return SourceTree(
            root=root,
            provenance=package.tarball_url,
            verified=result.status is ChecksumStatus.MATCH,
            files=tuple(files),
        )

    def _acquire_git(
        self, package: GitPackage, spec: PackageSpec, layout: PackageLayout
    ) -> SourceTree:
        root = layout.build_files_dir
        if root.exists():
            shutil.rmtree(root)
        root.parent.mkdir(parents=True, exist_ok=True)
        self.runner.run(
            ["git", "clone", "--depth", "1", "--branch", package.git_tag, package.git_url, root]
        )
        if package.submodules:
            self.runner.run(["git", "submodule", "update", "--init", "--recursive"], cwd=root)
        for submodule in package.submodules:
            self._pin_submodule(root, submodule.path, submodule.commit)

        fields = spec.fields
        create_reproducible_tarball(
            root, layout.orig_tarball, prefix=f"{fields.package_name}-{fields.version_number}"
        )
        return SourceTree(
            root=root,
            provenance=f"{package.git_url}@{package.git_tag}",
            verified=True,
            files=_tree_files(root),
        )

    def _pin_submodule(self, root: Path, path: str, commit: str) -> None:
        checkout = root / path
        try:
            self.runner.run(["git", "checkout", commit], cwd=checkout)
        except DelegatedToolError as e:
            raise IntegrityError(
                f"Submodule '{path}' cannot be checked out at its pinned commit.\n{e.diagnostic}",
                subject=path,
                expected=commit,
            ) from e
        head = self.runner.run(["git", "rev-parse", "HEAD"], cwd=checkout).stdout.strip()
        if not head.startswith(commit):
            raise IntegrityError(
                f"Submodule '{path}' is not at its pinned commit.",
                subject=path,
                expected=commit,
                actual=head,
            )
        logger.info("Submodule pinned", path=path, commit=head)
