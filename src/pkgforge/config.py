"""
Locating and loading specification documents and verification manifests.
"""

from collections.abc import Mapping
from pathlib import Path
import tomllib
from typing import Any

import attrs
from pyvider.telemetry import logger

from . import __version__
from .exceptions import SpecValidationError
from .models import PackageSpec, Violation
from .validation import DIGEST_LENGTHS, DIGEST_RE, parse_spec

CONFIG_FILE_NAME = "pkgforge.toml"
VERIFY_CONFIG_FILE_NAME = "pkgforge-verify.toml"


def resolve_config_path(location: str | Path | None) -> Path:
    """A directory (or nothing) means `<dir>/pkgforge.toml`."""
    path = Path(location) if location is not None else Path.cwd()
    if path.is_dir():
        path = path / CONFIG_FILE_NAME
    if not path.is_file():
        raise SpecValidationError([Violation(str(path), "specification file not found")])
    return path.resolve()


def load_document(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise SpecValidationError([Violation(str(path), f"invalid TOML: {e}")]) from e


def load_spec(
    location: str | Path | None = None,
    overrides: Mapping[str, bool | None] | None = None,
) -> PackageSpec:
    """
    Loads, validates and normalizes a specification document.

    `overrides` maps build_env stage flags (`run_lintian`, `run_piuparts`,
    `run_autopkgtest`, `create_env_if_missing`) to values that win over the
    document. `None` values are ignored.
    """
    path = resolve_config_path(location)
    logger.info("Loading package specification", path=str(path))
    document = load_document(path)
    spec = parse_spec(document, config_root=path.parent, tool_version=__version__)

    changes = {key: value for key, value in (overrides or {}).items() if value is not None}
    if changes:
        logger.debug("Applying command-line overrides", **changes)
        spec = attrs.evolve(spec, build_env=attrs.evolve(spec.build_env, **changes))
    return spec


def load_verify_manifest(path: Path) -> dict[str, str]:
    """Reads `[[verify.package_hash]]` entries into a name -> digest mapping."""
    if not path.is_file():
        raise SpecValidationError([Violation(str(path), "verification manifest not found")])
    document = load_document(path)
    violations: list[Violation] = []
    verify = document.get("verify")
    entries = verify.get("package_hash") if isinstance(verify, Mapping) else None
    if not isinstance(entries, list):
        raise SpecValidationError(
            [Violation("verify.package_hash", "must be an array of {name, hash} tables")]
        )

    manifest: dict[str, str] = {}
    for index, entry in enumerate(entries):
        entry_path = f"verify.package_hash[{index}]"
        name = entry.get("name") if isinstance(entry, Mapping) else None
        digest = entry.get("hash") if isinstance(entry, Mapping) else None
        if not isinstance(name, str) or not name:
            violations.append(Violation(f"{entry_path}.name", "field is required"))
        if not isinstance(digest, str) or not digest:
            violations.append(Violation(f"{entry_path}.hash", "field is required"))
        elif not DIGEST_RE.match(digest) or len(digest) not in DIGEST_LENGTHS:
            violations.append(
                Violation(f"{entry_path}.hash", "must be a hex SHA-1, SHA-256 or SHA-512 digest")
            )
        if isinstance(name, str) and name in manifest:
            violations.append(Violation(f"{entry_path}.name", f"duplicate entry '{name}'"))
        if not violations and isinstance(name, str) and isinstance(digest, str):
            manifest[name] = digest.lower()
    if violations:
        raise SpecValidationError(violations)
    return manifest
