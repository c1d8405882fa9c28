"""
Per-language toolchain descriptors.

Every supported language environment is reduced to the same record: a list
of archives to fetch and verify, where they unpack, which binaries get a
stable link, and which command proves the toolchain works. The installer and
the in-build-root recipe both consume this record and nothing else.
"""

from functools import singledispatch
from typing import Literal

from attrs import define

from ..models import (
    CEnv,
    DotnetEnv,
    GoEnv,
    JavaEnv,
    JavascriptEnv,
    LanguageEnvironment,
    NimEnv,
    PythonEnv,
    RustEnv,
)

ArchiveKind = Literal["tar", "zip", "deb"]

HASH_TOOLS = {40: "sha1sum", 64: "sha256sum", 128: "sha512sum"}


@define(frozen=True, slots=True)
class InstallEntry:
    name: str
    url: str
    checksum: str
    filename: str
    kind: ArchiveKind = "tar"
    subdir: str = ""
    strip_components: int = 1

    @property
    def hash_tool(self) -> str:
        return HASH_TOOLS.get(len(self.checksum), "sha256sum")


@define(frozen=True, slots=True)
class ToolchainDescriptor:
    language: str
    version: str
    entries: tuple[InstallEntry, ...]
    links: tuple[tuple[str, str], ...]
    probe: tuple[str, ...]
    # Commands run after linking. `{install_dir}` and `{bin_dir}` are substituted.
    post_install: tuple[tuple[str, ...], ...] = ()
    # Packages the build root needs from the distribution archive.
    system_packages: tuple[str, ...] = ()
    fetch_packages: tuple[str, ...] = ("wget",)

    @property
    def install_name(self) -> str:
        return f"{self.language}-{self.version}"

    @property
    def checksums(self) -> dict[str, str]:
        return {entry.name: entry.checksum for entry in self.entries}


@singledispatch
def descriptor_for(env: LanguageEnvironment | None) -> ToolchainDescriptor | None:
    """Returns the install descriptor, or None when the distribution toolchain is used."""
    raise TypeError(f"No toolchain descriptor for {type(env).__name__}")


@descriptor_for.register(type(None))
def _(env: None) -> None:
    return None


@descriptor_for.register
def _(env: CEnv) -> None:
    return None


@descriptor_for.register
def _(env: PythonEnv) -> None:
    return None


@descriptor_for.register
def _(env: RustEnv) -> ToolchainDescriptor:
    return ToolchainDescriptor(
        language="rust",
        version=env.rust_version,
        entries=(
            InstallEntry(
                name=f"rust-{env.rust_version}",
                url=env.rust_binary_url,
                checksum=env.rust_binary_checksum,
                filename="rust.tar.xz",
                subdir="installer",
            ),
        ),
        post_install=(
            (
                "/bin/bash",
                "{install_dir}/installer/install.sh",
                "--prefix={install_dir}",
                "--disable-ldconfig",
            ),
        ),
        links=(("rustc", "bin/rustc"), ("cargo", "bin/cargo")),
        probe=("rustc", "--version"),
    )


@descriptor_for.register
def _(env: GoEnv) -> ToolchainDescriptor:
    return ToolchainDescriptor(
        language="go",
        version=env.go_version,
        entries=(
            InstallEntry(
                name=f"go-{env.go_version}",
                url=env.go_binary_url,
                checksum=env.go_binary_checksum,
                filename="go.tar.gz",
            ),
        ),
        links=(("go", "bin/go"), ("gofmt", "bin/gofmt")),
        probe=("go", "version"),
    )


@descriptor_for.register
def _(env: JavascriptEnv) -> ToolchainDescriptor:
    links = [("node", "bin/node"), ("npm", "bin/npm"), ("npx", "bin/npx"), ("corepack", "bin/corepack")]
    post_install: tuple[tuple[str, ...], ...] = ()
    if env.yarn_version:
        links.append(("yarn", "bin/yarn"))
        post_install = (
            ("{bin_dir}/npm", "install", "--global", "--prefix={install_dir}", f"yarn@{env.yarn_version}"),
        )
    return ToolchainDescriptor(
        language=env.tag,
        version=env.node_version,
        entries=(
            InstallEntry(
                name=f"node-{env.node_version}",
                url=env.node_binary_url,
                checksum=env.node_binary_checksum,
                filename="node.tar.gz",
            ),
        ),
        links=tuple(links),
        post_install=post_install,
        probe=("node", "--version"),
    )


@descriptor_for.register
def _(env: JavaEnv) -> ToolchainDescriptor | None:
    entries = []
    links = []
    probe: tuple[str, ...] = ("java", "-version")
    if env.is_oracle:
        entries.append(
            InstallEntry(
                name=f"jdk-{env.jdk_version}",
                url=env.jdk_binary_url,
                checksum=env.jdk_binary_checksum,
                filename="jdk.tar.gz",
            )
        )
        links += [("java", "bin/java"), ("javac", "bin/javac")]
    if env.gradle is not None:
        gradle_dir = f"gradle-{env.gradle.gradle_version}"
        entries.append(
            InstallEntry(
                name=gradle_dir,
                url=env.gradle.gradle_binary_url,
                checksum=env.gradle.gradle_binary_checksum,
                filename="gradle.zip",
                kind="zip",
                subdir=gradle_dir,
            )
        )
        links.append(("gradle", f"{gradle_dir}/bin/gradle"))
        if not env.is_oracle:
            probe = ("gradle", "-version")
    if not entries:
        return None
    return ToolchainDescriptor(
        language="java",
        version=env.jdk_version,
        entries=tuple(entries),
        links=tuple(links),
        probe=probe,
        fetch_packages=("wget", "unzip") if env.gradle else ("wget",),
    )


@descriptor_for.register
def _(env: DotnetEnv) -> ToolchainDescriptor:
    entries = tuple(
        InstallEntry(
            name=package.name,
            url=package.url,
            checksum=package.hash,
            filename=f"{package.name}.deb",
            kind="deb",
            strip_components=0,
        )
        for package in env.dotnet_packages
    )
    # Version comes from the SDK package (`dotnet-sdk-8.0_8.0.104-0ubuntu1_amd64`) when present.
    sdk = next((p.name for p in env.dotnet_packages if p.name.startswith("dotnet-sdk")), None)
    version = sdk.split("_")[1] if sdk and "_" in sdk else env.dotnet_packages[0].name
    return ToolchainDescriptor(
        language="dotnet",
        version=version,
        entries=entries,
        links=(("dotnet", "usr/lib/dotnet/dotnet"),),
        probe=("dotnet", "--version"),
        system_packages=("libicu-dev", *env.deps),
    )


@descriptor_for.register
def _(env: NimEnv) -> ToolchainDescriptor:
    return ToolchainDescriptor(
        language="nim",
        version=env.nim_version,
        entries=(
            InstallEntry(
                name=f"nim-{env.nim_version}",
                url=env.nim_binary_url,
                checksum=env.nim_version_checksum,
                filename=f"nim-{env.nim_version}.tar.xz",
            ),
        ),
        links=(("nim", "bin/nim"), ("nimble", "bin/nimble")),
        probe=("nim", "--version"),
    )
