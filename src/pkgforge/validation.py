"""
Validation and normalization of a raw specification document.

`parse_spec` is a pure transform: it either returns a fully normalized
`PackageSpec` or raises `SpecValidationError` listing every violated rule.
"""

from collections.abc import Callable, Mapping
import os
from pathlib import Path
import re
from typing import Any
from urllib.parse import urlparse

from pyvider.telemetry import logger

from .exceptions import SpecValidationError
from .models import (
    DISTRIBUTIONS,
    BuildEnv,
    CEnv,
    DefaultPackage,
    DotnetEnv,
    DotnetPackage,
    GitPackage,
    GoEnv,
    GradleConfig,
    JavaEnv,
    JavascriptEnv,
    LanguageEnvironment,
    NimEnv,
    PackageFields,
    PackageSpec,
    PackageTypeVariant,
    PythonEnv,
    RustEnv,
    Submodule,
    TypescriptEnv,
    VirtualPackage,
    Violation,
)

DEFAULT_WORKDIR_ROOT = "~/.pkgforge/packages"
DEFAULT_CACHE_DIR = "~/.cache/sbuild"
DEFAULT_REVISION = "1"
DEFAULT_PATCHES_DIR = "patches"

PACKAGE_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9+.-]+$")
UPSTREAM_VERSION_RE = re.compile(r"^[0-9][A-Za-z0-9.+~]*$")
REVISION_RE = re.compile(r"^[A-Za-z0-9.+~]+$")
TOOL_VERSION_RE = re.compile(r"^[0-9A-Za-z][A-Za-z0-9.+~:_-]*$")
SEMVER_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")
DIGEST_RE = re.compile(r"^[0-9a-fA-F]+$")
DIGEST_LENGTHS = (40, 64, 128)
ARCHITECTURES = frozenset(
    {"amd64", "arm64", "armel", "armhf", "i386", "mips64el", "ppc64el", "riscv64", "s390x", "all"}
)
URL_SCHEMES = ("http", "https", "file")

TOOL_VERSION_FIELDS = (
    "debcrafter_version",
    "sbuild_version",
    "lintian_version",
    "piuparts_version",
    "autopkgtest_version",
)
STAGE_FLAGS = ("run_lintian", "run_piuparts", "run_autopkgtest")


class _Collector:
    """Accumulates violations while reading loosely-typed TOML tables."""

    def __init__(self) -> None:
        self.violations: list[Violation] = []

    def add(self, path: str, message: str) -> None:
        self.violations.append(Violation(path, message))

    def mark(self) -> int:
        return len(self.violations)

    def clean_since(self, mark: int) -> bool:
        return len(self.violations) == mark

    def table(self, parent: Mapping[str, Any], key: str, path: str) -> Mapping[str, Any] | None:
        value = parent.get(key)
        if value is None:
            self.add(path, "section is required")
            return None
        if not isinstance(value, Mapping):
            self.add(path, "must be a table")
            return None
        return value

    def required_str(self, table: Mapping[str, Any], key: str, path: str) -> str | None:
        value = table.get(key)
        if value is None:
            self.add(f"{path}.{key}", "field is required")
            return None
        if not isinstance(value, str):
            self.add(f"{path}.{key}", "must be a string")
            return None
        if not value.strip():
            self.add(f"{path}.{key}", "cannot be empty")
            return None
        return value.strip()

    def optional_str(self, table: Mapping[str, Any], key: str, path: str) -> str | None:
        if key not in table:
            return None
        return self.required_str(table, key, path)

    def boolean(self, table: Mapping[str, Any], key: str, path: str, default: bool) -> bool:
        value = table.get(key, default)
        if not isinstance(value, bool):
            self.add(f"{path}.{key}", "must be a boolean")
            return default
        return value

    def pattern(self, value: str | None, regex: re.Pattern[str], path: str, what: str) -> None:
        if value is not None and not regex.match(value):
            self.add(path, f"'{value}' is not a valid {what}")

    def digest(self, value: str | None, path: str) -> None:
        if value is None:
            return
        if not DIGEST_RE.match(value) or len(value) not in DIGEST_LENGTHS:
            self.add(path, "must be a hex SHA-1, SHA-256 or SHA-512 digest")

    def url(self, value: str | None, path: str) -> None:
        if value is not None and urlparse(value).scheme not in URL_SCHEMES:
            self.add(path, f"'{value}' is not an http, https or file URL")

    def only_keys(
        self, table: Mapping[str, Any], allowed: set[str], path: str, context: str
    ) -> None:
        for key in sorted(set(table) - allowed):
            self.add(f"{path}.{key}", f"field is not allowed for {context}")


def expand_path(value: str | Path, base: Path) -> Path:
    """Expands `~` and environment variables; relative paths resolve against `base`."""
    expanded = Path(os.path.expandvars(os.path.expanduser(str(value))))
    if not expanded.is_absolute():
        expanded = base / expanded
    return expanded


def _is_url(value: str) -> bool:
    return urlparse(value).scheme in URL_SCHEMES


# Language environments


def _toolchain_fields(
    prefix: str, checksum_field: str
) -> Callable[[_Collector, Mapping[str, Any], str], dict[str, str | None]]:
    def read(c: _Collector, table: Mapping[str, Any], path: str) -> dict[str, str | None]:
        version = c.required_str(table, f"{prefix}_version", path)
        url = c.required_str(table, f"{prefix}_binary_url", path)
        checksum = c.required_str(table, checksum_field, path)
        c.pattern(version, TOOL_VERSION_RE, f"{path}.{prefix}_version", "version")
        c.url(url, f"{path}.{prefix}_binary_url")
        c.digest(checksum, f"{path}.{checksum_field}")
        return {
            f"{prefix}_version": version,
            f"{prefix}_binary_url": url,
            checksum_field: checksum,
        }

    return read


_read_rust = _toolchain_fields("rust", "rust_binary_checksum")
_read_go = _toolchain_fields("go", "go_binary_checksum")
_read_node = _toolchain_fields("node", "node_binary_checksum")
_read_jdk = _toolchain_fields("jdk", "jdk_binary_checksum")
_read_gradle = _toolchain_fields("gradle", "gradle_binary_checksum")
_read_nim = _toolchain_fields("nim", "nim_version_checksum")


def _parse_dotnet(c: _Collector, table: Mapping[str, Any], path: str) -> DotnetEnv | None:
    mark = c.mark()
    raw_packages = table.get("dotnet_packages")
    packages: list[DotnetPackage] = []
    if raw_packages is None:
        c.add(f"{path}.dotnet_packages", "field is required")
    elif not isinstance(raw_packages, list) or not raw_packages:
        c.add(f"{path}.dotnet_packages", "must be a non-empty list of packages")
    else:
        for index, entry in enumerate(raw_packages):
            entry_path = f"{path}.dotnet_packages[{index}]"
            if not isinstance(entry, Mapping):
                c.add(entry_path, "must be a table with name, hash and url")
                continue
            name = c.required_str(entry, "name", entry_path)
            digest = c.required_str(entry, "hash", entry_path)
            url = c.required_str(entry, "url", entry_path)
            c.digest(digest, f"{entry_path}.hash")
            c.url(url, f"{entry_path}.url")
            if name and digest and url:
                packages.append(DotnetPackage(name=name, hash=digest.lower(), url=url))

    deps = table.get("deps", [])
    if not isinstance(deps, list) or not all(isinstance(d, str) and d.strip() for d in deps):
        c.add(f"{path}.deps", "must be a list of package names")
        deps = []
    use_backup = c.boolean(table, "use_backup_version", path, False)
    if not c.clean_since(mark):
        return None
    return DotnetEnv(
        dotnet_packages=tuple(packages),
        use_backup_version=use_backup,
        deps=tuple(d.strip() for d in deps),
    )


def _parse_java(c: _Collector, table: Mapping[str, Any], path: str) -> JavaEnv | None:
    mark = c.mark()
    values = _read_jdk(c, table, path)
    is_oracle = c.boolean(table, "is_oracle", path, False)
    gradle = None
    if "gradle" in table:
        gradle_table = c.table(table, "gradle", f"{path}.gradle")
        if gradle_table is not None:
            gradle_values = _read_gradle(c, gradle_table, f"{path}.gradle")
            c.only_keys(gradle_table, set(gradle_values), f"{path}.gradle", "gradle")
            if c.clean_since(mark):
                gradle = GradleConfig(**gradle_values)
    if not c.clean_since(mark):
        return None
    return JavaEnv(**values, is_oracle=is_oracle, gradle=gradle)


LANGUAGE_FIELDS: dict[str, set[str]] = {
    "rust": {"rust_version", "rust_binary_url", "rust_binary_checksum"},
    "go": {"go_version", "go_binary_url", "go_binary_checksum"},
    "javascript": {"node_version", "node_binary_url", "node_binary_checksum", "yarn_version"},
    "typescript": {"node_version", "node_binary_url", "node_binary_checksum", "yarn_version"},
    "java": {"jdk_version", "jdk_binary_url", "jdk_binary_checksum", "is_oracle", "gradle"},
    "dotnet": {"dotnet_packages", "use_backup_version", "deps"},
    "nim": {"nim_version", "nim_binary_url", "nim_version_checksum"},
    "c": set(),
    "python": set(),
}


def _parse_language_env(
    c: _Collector, table: Mapping[str, Any], path: str
) -> LanguageEnvironment | None:
    tag = c.required_str(table, "language_env", path)
    if tag is None:
        return None
    tag = tag.lower()
    if tag not in LANGUAGE_FIELDS:
        known = ", ".join(sorted(LANGUAGE_FIELDS))
        c.add(f"{path}.language_env", f"unknown language environment '{tag}' (expected one of: {known})")
        return None

    mark = c.mark()
    c.only_keys(table, LANGUAGE_FIELDS[tag] | {"language_env"}, path, f"language_env '{tag}'")
    env: LanguageEnvironment | None
    match tag:
        case "rust":
            values = _read_rust(c, table, path)
            env = RustEnv(**values) if c.clean_since(mark) else None
        case "go":
            values = _read_go(c, table, path)
            env = GoEnv(**values) if c.clean_since(mark) else None
        case "javascript" | "typescript":
            values = _read_node(c, table, path)
            yarn = c.optional_str(table, "yarn_version", path)
            c.pattern(yarn, TOOL_VERSION_RE, f"{path}.yarn_version", "version")
            cls = TypescriptEnv if tag == "typescript" else JavascriptEnv
            env = cls(**values, yarn_version=yarn) if c.clean_since(mark) else None
        case "java":
            env = _parse_java(c, table, path)
        case "dotnet":
            env = _parse_dotnet(c, table, path)
        case "nim":
            values = _read_nim(c, table, path)
            env = NimEnv(**values) if c.clean_since(mark) else None
        case "c":
            env = CEnv()
        case _:
            env = PythonEnv()
    return env if c.clean_since(mark) else None


# Package type variants

PACKAGE_TYPE_FIELDS: dict[str, set[str]] = {
    "virtual": set(),
    "default": {"tarball_url", "tarball_hash", "language_env"},
    "git": {"git_url", "git_tag", "submodules", "language_env"},
}


def _parse_submodules(
    c: _Collector, table: Mapping[str, Any], path: str
) -> tuple[Submodule, ...]:
    raw = table.get("submodules", [])
    if not isinstance(raw, list):
        c.add(f"{path}.submodules", "must be a list of {path, commit} tables")
        return ()
    submodules = []
    for index, entry in enumerate(raw):
        entry_path = f"{path}.submodules[{index}]"
        if not isinstance(entry, Mapping):
            c.add(entry_path, "must be a table with path and commit")
            continue
        sub_path = c.required_str(entry, "path", entry_path)
        commit = c.required_str(entry, "commit", entry_path)
        if sub_path is not None and (Path(sub_path).is_absolute() or ".." in Path(sub_path).parts):
            c.add(f"{entry_path}.path", "must be a relative path inside the repository")
        if sub_path and commit:
            submodules.append(Submodule(path=sub_path, commit=commit.lower()))
    return tuple(submodules)


def _parse_package_type(
    c: _Collector, document: Mapping[str, Any], config_root: Path
) -> PackageTypeVariant | None:
    path = "package_type"
    table = c.table(document, "package_type", path)
    if table is None:
        return None
    tag = c.required_str(table, "package_type", path)
    if tag is None:
        return None
    tag = tag.lower()
    if tag not in PACKAGE_TYPE_FIELDS:
        c.add(f"{path}.package_type", f"unknown package type '{tag}' (expected one of: default, git, virtual)")
        return None

    mark = c.mark()
    c.only_keys(table, PACKAGE_TYPE_FIELDS[tag] | {"package_type"}, path, f"package_type '{tag}'")
    if tag == "virtual":
        return VirtualPackage() if c.clean_since(mark) else None

    language_env = None
    env_table = c.table(table, "language_env", f"{path}.language_env")
    if env_table is not None:
        language_env = _parse_language_env(c, env_table, f"{path}.language_env")

    if tag == "default":
        tarball_url = c.required_str(table, "tarball_url", path)
        tarball_hash = c.optional_str(table, "tarball_hash", path)
        c.digest(tarball_hash, f"{path}.tarball_hash")
        if not c.clean_since(mark) or tarball_url is None or language_env is None:
            return None
        if not _is_url(tarball_url):
            tarball_url = str(expand_path(tarball_url, config_root))
        return DefaultPackage(
            tarball_url=tarball_url,
            tarball_hash=tarball_hash.lower() if tarball_hash else None,
            language_env=language_env,
        )

    git_url = c.required_str(table, "git_url", path)
    git_tag = c.required_str(table, "git_tag", path)
    submodules = _parse_submodules(c, table, path)
    if not c.clean_since(mark) or git_url is None or git_tag is None or language_env is None:
        return None
    return GitPackage(
        git_url=git_url, git_tag=git_tag, submodules=submodules, language_env=language_env
    )


# Package fields and build environment


def _parse_package_fields(
    c: _Collector, document: Mapping[str, Any], config_root: Path
) -> PackageFields | None:
    path = "package_fields"
    table = c.table(document, "package_fields", path)
    if table is None:
        return None
    mark = c.mark()
    spec_file = c.required_str(table, "spec_file", path)
    name = c.required_str(table, "package_name", path)
    version = c.required_str(table, "version_number", path)
    homepage = c.required_str(table, "homepage", path)
    revision = c.optional_str(table, "revision_number", path)
    patches_dir = c.optional_str(table, "patches_dir", path) or DEFAULT_PATCHES_DIR

    c.pattern(name, PACKAGE_NAME_RE, f"{path}.package_name", "package name")
    c.pattern(version, UPSTREAM_VERSION_RE, f"{path}.version_number", "upstream version")
    c.pattern(revision, REVISION_RE, f"{path}.revision_number", "revision")
    c.only_keys(
        table,
        {"spec_file", "package_name", "version_number", "revision_number", "homepage", "patches_dir"},
        path,
        "package_fields",
    )
    if not c.clean_since(mark):
        return None
    return PackageFields(
        spec_file=expand_path(spec_file, config_root),
        package_name=name,
        version_number=version,
        revision_number=revision or DEFAULT_REVISION,
        homepage=homepage,
        patches_dir=expand_path(patches_dir, config_root),
    )


def _semver(value: str) -> tuple[int, int, int] | None:
    match = SEMVER_RE.match(value)
    if match is None:
        return None
    major, minor, patch = (int(part) for part in match.groups())
    return major, minor, patch


def _parse_build_env(
    c: _Collector, document: Mapping[str, Any], config_root: Path, tool_version: str | None
) -> BuildEnv | None:
    path = "build_env"
    table = c.table(document, "build_env", path)
    if table is None:
        return None
    mark = c.mark()

    codename_value = c.required_str(table, "codename", path)
    distribution = None
    if codename_value is not None:
        distribution = DISTRIBUTIONS.get(codename_value.lower())
        if distribution is None:
            known = ", ".join(sorted(DISTRIBUTIONS))
            c.add(f"{path}.codename", f"unsupported codename '{codename_value}' (expected one of: {known})")

    arch = c.required_str(table, "arch", path)
    if arch is not None and arch not in ARCHITECTURES:
        c.add(f"{path}.arch", f"unsupported architecture '{arch}'")

    required_version = c.required_str(table, "pkg_builder_version", path)
    if required_version is not None:
        required = _semver(required_version)
        current = _semver(tool_version) if tool_version else None
        if required is None:
            c.add(f"{path}.pkg_builder_version", f"'{required_version}' is not a MAJOR.MINOR.PATCH version")
        elif current is not None and required > current:
            c.add(
                f"{path}.pkg_builder_version",
                f"required version {required_version} is newer than the running {tool_version}",
            )
        elif current is not None and required < current:
            logger.warning(
                "Specification targets an older pkgforge release",
                required=required_version,
                current=tool_version,
            )

    versions = {}
    for key in TOOL_VERSION_FIELDS:
        value = c.required_str(table, key, path)
        c.pattern(value, TOOL_VERSION_RE, f"{path}.{key}", "tool version")
        versions[key] = value

    flags = {key: c.boolean(table, key, path, True) for key in STAGE_FLAGS}
    create_env = c.boolean(table, "create_env_if_missing", path, False)

    workdir_value = table.get("workdir")
    cache_value = table.get("sbuild_cache_dir")
    for key, value in (("workdir", workdir_value), ("sbuild_cache_dir", cache_value)):
        if value is not None and (not isinstance(value, str) or not value.strip()):
            c.add(f"{path}.{key}", "must be a non-empty path string")

    c.only_keys(
        table,
        {
            "codename",
            "arch",
            "pkg_builder_version",
            "workdir",
            "sbuild_cache_dir",
            "create_env_if_missing",
            *TOOL_VERSION_FIELDS,
            *STAGE_FLAGS,
        },
        path,
        "build_env",
    )
    if not c.clean_since(mark) or distribution is None:
        return None

    if workdir_value is None:
        root = os.environ.get("PKGFORGE_WORKDIR_ROOT", DEFAULT_WORKDIR_ROOT)
        workdir = expand_path(root, config_root) / distribution.short
    else:
        workdir = expand_path(workdir_value, config_root)
    cache_dir = expand_path(
        cache_value or os.environ.get("PKGFORGE_CACHE_DIR", DEFAULT_CACHE_DIR), config_root
    )

    return BuildEnv(
        codename=distribution,
        arch=arch,
        pkg_builder_version=required_version,
        workdir=workdir,
        sbuild_cache_dir=cache_dir,
        create_env_if_missing=create_env,
        **versions,
        **flags,
    )


def parse_spec(
    document: Mapping[str, Any],
    *,
    config_root: Path,
    tool_version: str | None = None,
) -> PackageSpec:
    """Validates a raw document and returns the normalized, immutable spec."""
    c = _Collector()
    config_root = config_root.resolve()
    fields = _parse_package_fields(c, document, config_root)
    package_type = _parse_package_type(c, document, config_root)
    build_env = _parse_build_env(c, document, config_root, tool_version)
    for key in sorted(set(document) - {"package_fields", "package_type", "build_env"}):
        c.add(key, "unknown section")

    if c.violations or fields is None or package_type is None or build_env is None:
        raise SpecValidationError(c.violations)
    return PackageSpec(
        fields=fields,
        package_type=package_type,
        build_env=build_env,
        config_root=config_root,
    )
