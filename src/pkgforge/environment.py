"""
Lifecycle of cached isolated build roots.

A build root is identified by the cache key of its `BuildEnvironmentDescriptor`
and lives in `<cache_dir>/<codename>-<arch>-<key prefix>/`. Creation, forced
rebuilds, removal and builds using one key are serialized through an exclusive
lock file, so concurrent runs never race the same cache entry.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
import fcntl
import json
from pathlib import Path
import shutil
import tarfile
from typing import Protocol

from attrs import define
from pyvider.telemetry import logger

from .exceptions import DelegatedToolError, EnvironmentMissingError, PkgForgeError
from .models import BuildEnvironmentDescriptor

TARBALL_NAME = "chroot.tar.gz"
METADATA_NAME = "environment.json"


class EnvironmentState(Enum):
    ABSENT = "absent"
    READY = "ready"


class CreateOutcome(Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    REBUILT = "rebuilt"


@define(frozen=True, slots=True)
class BuildEnvironmentHandle:
    descriptor: BuildEnvironmentDescriptor
    path: Path

    @property
    def cache_key(self) -> str:
        return self.descriptor.cache_key

    @property
    def tarball(self) -> Path:
        return self.path / TARBALL_NAME

    @property
    def metadata_file(self) -> Path:
        return self.path / METADATA_NAME


class Bootstrapper(Protocol):
    def create_environment(self, descriptor: BuildEnvironmentDescriptor, tarball: Path) -> None: ...


class EnvironmentManager:
    def __init__(self, cache_dir: Path, bootstrapper: Bootstrapper):
        self.cache_dir = cache_dir
        self.bootstrapper = bootstrapper

    def handle_for(self, descriptor: BuildEnvironmentDescriptor) -> BuildEnvironmentHandle:
        key = descriptor.cache_key
        name = f"{descriptor.distribution.short}-{descriptor.arch}-{key[:16]}"
        return BuildEnvironmentHandle(descriptor=descriptor, path=self.cache_dir / name)

    @contextmanager
    def _locked(self, descriptor: BuildEnvironmentDescriptor) -> Iterator[None]:
        lock_dir = self.cache_dir / ".locks"
        lock_dir.mkdir(parents=True, exist_ok=True)
        lock_path = lock_dir / f"{descriptor.cache_key}.lock"
        with lock_path.open("a") as lock_handle:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)

    def state(self, descriptor: BuildEnvironmentDescriptor) -> EnvironmentState:
        handle = self.handle_for(descriptor)
        if not (handle.metadata_file.is_file() and handle.tarball.is_file()):
            return EnvironmentState.ABSENT
        try:
            recorded = json.loads(handle.metadata_file.read_text())
        except json.JSONDecodeError:
            return EnvironmentState.ABSENT
        if recorded.get("cache_key") != descriptor.cache_key:
            return EnvironmentState.ABSENT
        return EnvironmentState.READY

    def create(self, descriptor: BuildEnvironmentDescriptor, force: bool = False) -> CreateOutcome:
        """ABSENT -> READY, or READY -> READY (rebuilt) with `force`."""
        handle = self.handle_for(descriptor)
        with self._locked(descriptor):
            was_ready = self.state(descriptor) is EnvironmentState.READY
            if was_ready and not force:
                logger.info("Build environment already exists", path=str(handle.path))
                return CreateOutcome.ALREADY_EXISTS

            if handle.path.exists():
                shutil.rmtree(handle.path)
            handle.path.mkdir(parents=True)
            logger.info(
                "Bootstrapping build environment",
                codename=descriptor.distribution.short,
                arch=descriptor.arch,
                cache_key=descriptor.cache_key,
            )
            try:
                self.bootstrapper.create_environment(descriptor, handle.tarball)
                self._validate(handle)
            except PkgForgeError:
                logger.error("Bootstrap failed; removing partial cache entry", path=str(handle.path))
                shutil.rmtree(handle.path, ignore_errors=True)
                raise

            metadata = {
                "cache_key": descriptor.cache_key,
                "descriptor": descriptor.to_payload(),
                "created_at": datetime.now(UTC).isoformat(),
            }
            handle.metadata_file.write_text(json.dumps(metadata, indent=2, sort_keys=True))
            outcome = CreateOutcome.REBUILT if was_ready else CreateOutcome.CREATED
            logger.info("Build environment ready", path=str(handle.path), outcome=outcome.value)
            return outcome

    def _validate(self, handle: BuildEnvironmentHandle) -> None:
        tarball = handle.tarball
        if not tarball.is_file() or tarball.stat().st_size == 0:
            raise DelegatedToolError(
                f"Bootstrap finished but produced no build root at {tarball}.",
                stderr=f"missing or empty file: {tarball}",
            )
        if not tarfile.is_tarfile(tarball):
            raise DelegatedToolError(
                f"Bootstrap produced an unreadable build root at {tarball}.",
                stderr=f"not a tar archive: {tarball}",
            )

    def clean(self, descriptor: BuildEnvironmentDescriptor) -> bool:
        """READY -> ABSENT. Returns False when there was nothing to remove."""
        handle = self.handle_for(descriptor)
        with self._locked(descriptor):
            if not handle.path.exists():
                logger.info("No build environment to clean", path=str(handle.path))
                return False
            shutil.rmtree(handle.path)
            logger.info("Build environment removed", path=str(handle.path))
            return True

    def require(self, descriptor: BuildEnvironmentDescriptor) -> BuildEnvironmentHandle:
        if self.state(descriptor) is not EnvironmentState.READY:
            handle = self.handle_for(descriptor)
            raise EnvironmentMissingError(
                f"No build environment for {descriptor.distribution.short}/{descriptor.arch} "
                f"at {handle.path}. Run `pkgforge env create` or enable create_env_if_missing.",
                descriptor=descriptor,
                path=handle.path,
            )
        return self.handle_for(descriptor)

    @contextmanager
    def occupy(self, descriptor: BuildEnvironmentDescriptor) -> Iterator[BuildEnvironmentHandle]:
        """
        Holds the key lock for as long as a build uses the environment, so no
        create, forced rebuild or clean of the same key can run meanwhile.
        """
        with self._locked(descriptor):
            handle = self.require(descriptor)
            logger.debug("Build environment occupied", path=str(handle.path))
            yield handle

    def ensure(
        self, descriptor: BuildEnvironmentDescriptor, create_if_missing: bool
    ) -> tuple[BuildEnvironmentHandle, CreateOutcome | None]:
        if create_if_missing:
            outcome = self.create(descriptor)
            return self.handle_for(descriptor), outcome
        return self.require(descriptor), None
