"""Typed records for a validated package specification and per-run results."""

import hashlib
import json
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar

from attrs import define, field

from .exceptions import ErrorCategory


@define(frozen=True, slots=True)
class Distribution:
    name: str
    short: str
    family: str

    @property
    def repo_url(self) -> str:
        if self.family == "debian":
            return "http://deb.debian.org/debian"
        return "http://archive.ubuntu.com/ubuntu"

    @property
    def keyring(self) -> str:
        return f"/usr/share/keyrings/{self.family}-archive-keyring.gpg"

    def __str__(self) -> str:
        return self.name


BOOKWORM = Distribution("bookworm", "bookworm", "debian")
NOBLE = Distribution("noble numbat", "noble", "ubuntu")
JAMMY = Distribution("jammy jellyfish", "jammy", "ubuntu")

DISTRIBUTIONS: dict[str, Distribution] = {
    "bookworm": BOOKWORM,
    "noble": NOBLE,
    "noble numbat": NOBLE,
    "jammy": JAMMY,
    "jammy jellyfish": JAMMY,
}


# Language environments. One class per `language_env` tag.


@define(frozen=True, slots=True)
class RustEnv:
    tag: ClassVar[str] = "rust"
    rust_version: str
    rust_binary_url: str
    rust_binary_checksum: str


@define(frozen=True, slots=True)
class GoEnv:
    tag: ClassVar[str] = "go"
    go_version: str
    go_binary_url: str
    go_binary_checksum: str


@define(frozen=True, slots=True)
class JavascriptEnv:
    tag: ClassVar[str] = "javascript"
    node_version: str
    node_binary_url: str
    node_binary_checksum: str
    yarn_version: str | None = None


@define(frozen=True, slots=True)
class TypescriptEnv(JavascriptEnv):
    tag: ClassVar[str] = "typescript"


@define(frozen=True, slots=True)
class GradleConfig:
    gradle_version: str
    gradle_binary_url: str
    gradle_binary_checksum: str


@define(frozen=True, slots=True)
class JavaEnv:
    tag: ClassVar[str] = "java"
    jdk_version: str
    jdk_binary_url: str
    jdk_binary_checksum: str
    is_oracle: bool = False
    gradle: GradleConfig | None = None


@define(frozen=True, slots=True)
class DotnetPackage:
    name: str
    hash: str
    url: str


@define(frozen=True, slots=True)
class DotnetEnv:
    tag: ClassVar[str] = "dotnet"
    dotnet_packages: tuple[DotnetPackage, ...]
    use_backup_version: bool = False
    deps: tuple[str, ...] = ()


@define(frozen=True, slots=True)
class NimEnv:
    tag: ClassVar[str] = "nim"
    nim_version: str
    nim_binary_url: str
    nim_version_checksum: str


@define(frozen=True, slots=True)
class CEnv:
    tag: ClassVar[str] = "c"


@define(frozen=True, slots=True)
class PythonEnv:
    tag: ClassVar[str] = "python"


LanguageEnvironment = (
    RustEnv | GoEnv | JavascriptEnv | TypescriptEnv | JavaEnv | DotnetEnv | NimEnv | CEnv | PythonEnv
)


# Package type variants. One class per `package_type` tag.


@define(frozen=True, slots=True)
class VirtualPackage:
    tag: ClassVar[str] = "virtual"


@define(frozen=True, slots=True)
class DefaultPackage:
    tag: ClassVar[str] = "default"
    tarball_url: str
    language_env: LanguageEnvironment
    tarball_hash: str | None = None


@define(frozen=True, slots=True)
class Submodule:
    path: str
    commit: str


@define(frozen=True, slots=True)
class GitPackage:
    tag: ClassVar[str] = "git"
    git_url: str
    git_tag: str
    language_env: LanguageEnvironment
    submodules: tuple[Submodule, ...] = ()


PackageTypeVariant = VirtualPackage | DefaultPackage | GitPackage


@define(frozen=True, slots=True)
class PackageFields:
    spec_file: Path
    package_name: str
    version_number: str
    homepage: str
    patches_dir: Path
    revision_number: str = "1"


@define(frozen=True, slots=True)
class BuildEnvironmentDescriptor:
    """Identity of one cached isolated build root."""

    distribution: Distribution
    arch: str
    tool_pins: tuple[tuple[str, str], ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {
            "codename": self.distribution.short,
            "arch": self.arch,
            "tool_pins": dict(sorted(self.tool_pins)),
        }

    @property
    def cache_key(self) -> str:
        canonical = json.dumps(self.to_payload(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@define(frozen=True, slots=True)
class BuildEnv:
    codename: Distribution
    arch: str
    pkg_builder_version: str
    debcrafter_version: str
    sbuild_version: str
    lintian_version: str
    piuparts_version: str
    autopkgtest_version: str
    workdir: Path
    sbuild_cache_dir: Path
    run_lintian: bool = True
    run_piuparts: bool = True
    run_autopkgtest: bool = True
    create_env_if_missing: bool = False

    @property
    def descriptor(self) -> BuildEnvironmentDescriptor:
        return BuildEnvironmentDescriptor(
            distribution=self.codename,
            arch=self.arch,
            tool_pins=(
                ("autopkgtest", self.autopkgtest_version),
                ("lintian", self.lintian_version),
                ("piuparts", self.piuparts_version),
                ("sbuild", self.sbuild_version),
            ),
        )


@define(frozen=True, slots=True)
class PackageSpec:
    fields: PackageFields
    package_type: PackageTypeVariant
    build_env: BuildEnv
    config_root: Path

    @property
    def language_env(self) -> LanguageEnvironment | None:
        if isinstance(self.package_type, VirtualPackage):
            return None
        return self.package_type.language_env

    @property
    def is_virtual(self) -> bool:
        return isinstance(self.package_type, VirtualPackage)

    @property
    def descriptor(self) -> BuildEnvironmentDescriptor:
        return self.build_env.descriptor


# Per-run records.


class StageStatus(Enum):
    OK = "ok"
    WARNING = "warning"
    SKIPPED = "skipped"
    FATAL = "fatal"


@define(frozen=True, slots=True)
class StageResult:
    stage: str
    status: StageStatus
    detail: str = ""
    category: ErrorCategory | None = None

    @property
    def is_fatal(self) -> bool:
        return self.status is StageStatus.FATAL


@define(frozen=True, slots=True)
class SourceTree:
    root: Path
    provenance: str
    verified: bool
    files: tuple[str, ...] = ()


@define(frozen=True, slots=True)
class PatchSeries:
    directory: Path
    names: tuple[str, ...] = ()

    SERIES_FILE: ClassVar[str] = "series"

    @classmethod
    def load(cls, directory: Path) -> "PatchSeries":
        """Reads a quilt-style `series` file; a missing file means no patches."""
        series_file = directory / cls.SERIES_FILE
        if not series_file.is_file():
            return cls(directory=directory)
        names = []
        for line in series_file.read_text().splitlines():
            entry = line.split("#", 1)[0].strip()
            if entry:
                names.append(entry.split()[0])
        return cls(directory=directory, names=tuple(names))

    def save(self) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        series_file = self.directory / self.SERIES_FILE
        series_file.write_text("".join(f"{name}\n" for name in self.names))
        return series_file

    def path_of(self, name: str) -> Path:
        return self.directory / name

    def __len__(self) -> int:
        return len(self.names)

    def __iter__(self):
        return iter(self.names)


@define(frozen=True, slots=True)
class ArtifactFile:
    name: str
    path: Path
    sha256: str


@define(frozen=True, slots=True)
class BuildArtifactSet:
    directory: Path
    files: tuple[ArtifactFile, ...] = field(factory=tuple)

    def names(self) -> list[str]:
        return [f.name for f in self.files]

    def find(self, suffix: str) -> ArtifactFile | None:
        for artifact in self.files:
            if artifact.name.endswith(suffix):
                return artifact
        return None


@define(frozen=True, slots=True)
class Violation:
    """One broken rule of a specification document, addressed by dotted path."""

    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"
