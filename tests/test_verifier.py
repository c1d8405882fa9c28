"""Tests for artifact hash verification and the verification manifest."""

import hashlib

import pytest

from pkgforge.config import load_verify_manifest
from pkgforge.exceptions import ArtifactVerificationError, SpecValidationError
from pkgforge.packaging.verifier import NOT_PRODUCED, VerificationStatus, verify_artifacts
from pkgforge.tools.sbuild import collect_artifacts


@pytest.fixture
def artifacts_dir(tmp_path):
    directory = tmp_path / "artifacts"
    directory.mkdir()
    for name in ("a.deb", "b.changes", "c.dsc", "d.buildinfo", "e.orig.tar.gz"):
        (directory / name).write_bytes(name.encode())
    (directory / ".download").mkdir()
    (directory / ".patch-session.json").write_text("{}")
    return directory


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def test_every_produced_file_gets_one_outcome(artifacts_dir):
    expected = {
        "a.deb": _sha256(b"a.deb"),
        "b.changes": _sha256(b"b.changes"),
        "c.dsc": _sha256(b"tampered"),
    }

    outcomes = verify_artifacts(artifacts_dir, expected)

    statuses = {o.name: o.status for o in outcomes}
    assert len(outcomes) == 5
    assert statuses == {
        "a.deb": VerificationStatus.MATCH,
        "b.changes": VerificationStatus.MATCH,
        "c.dsc": VerificationStatus.MISMATCH,
        "d.buildinfo": VerificationStatus.MISSING,
        "e.orig.tar.gz": VerificationStatus.MISSING,
    }


def test_expected_file_not_produced_is_a_mismatch(artifacts_dir):
    outcomes = verify_artifacts(artifacts_dir, {"z.deb": _sha256(b"z.deb")})

    missing = outcomes[-1]
    assert len(outcomes) == 6
    assert missing.name == "z.deb"
    assert missing.status is VerificationStatus.MISMATCH
    assert missing.actual == NOT_PRODUCED


def test_hidden_entries_are_not_artifacts(artifacts_dir):
    names = collect_artifacts(artifacts_dir).names()

    assert names == ["a.deb", "b.changes", "c.dsc", "d.buildinfo", "e.orig.tar.gz"]


def test_verification_error_lists_only_failures(artifacts_dir):
    outcomes = verify_artifacts(artifacts_dir, {"a.deb": "00" * 32})

    error = ArtifactVerificationError(outcomes)

    assert error.exit_code == 3
    assert "a.deb: MISMATCH" in str(error)
    assert "d.buildinfo" not in str(error)


def test_manifest_is_loaded(tmp_path):
    manifest = tmp_path / "pkgforge-verify.toml"
    manifest.write_text(
        f"""
[[verify.package_hash]]
name = "a.deb"
hash = "{_sha256(b"a.deb").upper()}"

[[verify.package_hash]]
name = "b.changes"
hash = "{hashlib.sha1(b"b.changes").hexdigest()}"
"""
    )

    assert load_verify_manifest(manifest) == {
        "a.deb": _sha256(b"a.deb"),
        "b.changes": hashlib.sha1(b"b.changes").hexdigest(),
    }


def test_invalid_manifest_reports_every_entry(tmp_path):
    manifest = tmp_path / "pkgforge-verify.toml"
    manifest.write_text(
        """
[[verify.package_hash]]
name = "a.deb"
hash = "xyz"

[[verify.package_hash]]
hash = "00"
"""
    )

    with pytest.raises(SpecValidationError) as exc_info:
        load_verify_manifest(manifest)

    paths = {v.path for v in exc_info.value.violations}
    assert paths == {
        "verify.package_hash[0].hash",
        "verify.package_hash[1].name",
        "verify.package_hash[1].hash",
    }
