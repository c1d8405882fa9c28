"""Pytest fixtures for the entire pkgforge test suite."""

import copy
import io
from collections.abc import Callable
from pathlib import Path
import tarfile
from typing import Any

import pytest

from pkgforge.exceptions import DelegatedToolError, FetchError
from pkgforge.fetch import Fetcher
from pkgforge.models import BuildEnvironmentDescriptor, PackageSpec
from pkgforge.runner import CommandResult, CommandRunner
from pkgforge.validation import parse_spec

BASE_DOCUMENT: dict[str, Any] = {
    "package_fields": {
        "spec_file": "hello-world.sss",
        "package_name": "hello-world",
        "version_number": "1.0.0",
        "revision_number": "1",
        "homepage": "https://example.org/hello-world",
    },
    "package_type": {"package_type": "virtual"},
    "build_env": {
        "codename": "bookworm",
        "arch": "amd64",
        "pkg_builder_version": "0.1.0",
        "debcrafter_version": "8189263",
        "sbuild_version": "0.85.6",
        "lintian_version": "2.116.3",
        "piuparts_version": "1.1.7",
        "autopkgtest_version": "5.20",
    },
}


def make_tarball(files: dict[str, bytes], prefix: str | None = "pkg-1.0") -> bytes:
    """Builds an in-memory .tar.gz whose entries optionally share one top directory."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(f"{prefix}/{name}" if prefix else name)
            info.size = len(content)
            info.mode = 0o755 if name.startswith("bin/") else 0o644
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


class FakeRunner(CommandRunner):
    """Records commands instead of running them; responses are scripted per program."""

    def __init__(self) -> None:
        self.calls: list[tuple[list[str], Path | None]] = []
        self.responses: dict[str, tuple[int, str, str, Callable | None]] = {}

    def on(
        self,
        program: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        effect: Callable[[list[str], Path | None], Any] | None = None,
    ) -> None:
        self.responses[program] = (returncode, stdout, stderr, effect)

    def _response_for(self, args: list[str]) -> tuple[int, str, str, Callable | None]:
        # Longest matching "program subcommand" key wins.
        for size in range(len(args), 0, -1):
            key = " ".join([Path(args[0]).name, *args[1:size]])
            if key in self.responses:
                return self.responses[key]
        return 0, "", "", None

    def run(self, command, cwd=None, env=None, check=True) -> CommandResult:
        args = [str(part) for part in command]
        self.calls.append((args, Path(cwd) if cwd else None))
        returncode, stdout, stderr, effect = self._response_for(args)
        if effect is not None:
            effect(args, Path(cwd) if cwd else None)
        result = CommandResult(tuple(args), returncode, stdout, stderr)
        if check and returncode != 0:
            raise DelegatedToolError(
                f"Command failed with exit code {returncode}.\n  Stderr:\n{stderr.strip()}",
                command=args,
                returncode=returncode,
                stdout=stdout,
                stderr=stderr,
            )
        return result

    def which(self, program: str) -> str | None:
        return f"/usr/bin/{program}"

    def require(self, program: str) -> str:
        return program

    def programs(self) -> list[str]:
        return [Path(args[0]).name for args, _ in self.calls]


class FakeFetcher(Fetcher):
    """Serves fixed content per location and records every fetch."""

    def __init__(self, content: dict[str, bytes] | None = None) -> None:
        super().__init__()
        self.content = dict(content or {})
        self.calls: list[str] = []

    def fetch(self, location: str, dest: Path) -> Path:
        self.calls.append(location)
        if location not in self.content:
            raise FetchError(f"Failed to fetch '{location}': not found", stderr="404")
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(self.content[location])
        return dest


class FakeBootstrapper:
    """Stands in for sbuild-createchroot by writing a small tarball."""

    def __init__(self, fail: bool = False, payload: bytes | None = None) -> None:
        self.fail = fail
        self.payload = payload
        self.created: list[BuildEnvironmentDescriptor] = []

    def create_environment(self, descriptor: BuildEnvironmentDescriptor, tarball: Path) -> None:
        self.created.append(descriptor)
        if self.payload is None:
            tarball.write_bytes(make_tarball({"etc/os-release": b"ID=debian\n"}, prefix=None))
        else:
            tarball.write_bytes(self.payload)
        if self.fail:
            raise DelegatedToolError(
                "Command failed with exit code 1.",
                command=["sbuild-createchroot"],
                returncode=1,
                stderr="E: debootstrap failed\n",
            )


@pytest.fixture
def document(tmp_path: Path) -> dict[str, Any]:
    """A valid virtual-package document rooted in the test's temp directory."""
    doc = copy.deepcopy(BASE_DOCUMENT)
    doc["build_env"]["workdir"] = str(tmp_path / "work")
    doc["build_env"]["sbuild_cache_dir"] = str(tmp_path / "cache")
    return doc


@pytest.fixture
def make_spec(tmp_path: Path) -> Callable[..., PackageSpec]:
    def _make(document: dict[str, Any], **build_env: Any) -> PackageSpec:
        doc = copy.deepcopy(document)
        doc["build_env"].update(build_env)
        return parse_spec(doc, config_root=tmp_path)

    return _make


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def spec_toml(tmp_path: Path) -> Path:
    """Writes a minimal virtual-package pkgforge.toml and returns its directory."""
    project = tmp_path / "project"
    project.mkdir()
    (project / "pkgforge.toml").write_text(
        f"""
[package_fields]
spec_file = "hello-world.sss"
package_name = "hello-world"
version_number = "1.0.0"
homepage = "https://example.org/hello-world"

[package_type]
package_type = "virtual"

[build_env]
codename = "bookworm"
arch = "amd64"
pkg_builder_version = "0.1.0"
debcrafter_version = "8189263"
sbuild_version = "0.85.6"
lintian_version = "2.116.3"
piuparts_version = "1.1.7"
autopkgtest_version = "5.20"
workdir = "{tmp_path / 'work'}"
sbuild_cache_dir = "{tmp_path / 'cache'}"
"""
    )
    return project


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def bootstrapper() -> FakeBootstrapper:
    return FakeBootstrapper()


@pytest.fixture
def tarball_factory() -> Callable[..., bytes]:
    return make_tarball
