"""Tests for the BuildOrchestrator stage sequencing."""

import fcntl
import hashlib
import os
from pathlib import Path

import pytest

from pkgforge.environment import EnvironmentManager
from pkgforge.exceptions import DelegatedToolError, ErrorCategory
from pkgforge.models import StageStatus
from pkgforge.packaging.orchestrator import BuildOrchestrator
from pkgforge.tools.gates import default_gates
from pkgforge.tools.sbuild import collect_artifacts

TARBALL_URL = "https://example.org/hello-world-1.0.0.tar.gz"
GO_URL = "https://go.dev/dl/go1.22.1.linux-amd64.tar.gz"


class FakeMetadataTool:
    def __init__(self):
        self.calls = []

    def generate(self, spec, layout) -> Path:
        self.calls.append(spec)
        debian = layout.build_files_dir / "debian"
        debian.mkdir(parents=True, exist_ok=True)
        (debian / "control").write_text(f"Source: {spec.fields.package_name}\n")
        return debian


class FakeSbuild:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.builds = []

    def build(self, spec, layout, handle, setup_commands):
        self.builds.append(list(setup_commands))
        if self.error is not None:
            raise self.error
        layout.deb_file.write_bytes(b"deb")
        layout.changes_file.write_text("Format: 1.8\n")
        return collect_artifacts(layout.artifacts_dir)


@pytest.fixture
def sbuild() -> FakeSbuild:
    return FakeSbuild()


@pytest.fixture
def metadata_tool() -> FakeMetadataTool:
    return FakeMetadataTool()


@pytest.fixture
def orchestrate(tmp_path, bootstrapper, fake_fetcher, fake_runner, sbuild, metadata_tool):
    def _build(spec, **overrides):
        collaborators = dict(
            runner=fake_runner,
            fetcher=fake_fetcher,
            environments=EnvironmentManager(spec.build_env.sbuild_cache_dir, bootstrapper),
            metadata_tool=metadata_tool,
            sbuild=sbuild,
            gates=default_gates(fake_runner),
        )
        collaborators.update(overrides)
        return BuildOrchestrator(spec, **collaborators)

    return _build


@pytest.fixture
def upstream(tarball_factory) -> bytes:
    return tarball_factory({"main.go": b"package main\n"}, prefix="hello-world-1.0.0")


@pytest.fixture
def go_archive(tarball_factory) -> bytes:
    return tarball_factory({"bin/go": b"#!/bin/sh\n", "bin/gofmt": b"#!/bin/sh\n"}, prefix="go")


def _go_document(document, tarball_hash, go_checksum):
    document["package_type"] = {
        "package_type": "default",
        "tarball_url": TARBALL_URL,
        "tarball_hash": tarball_hash,
        "language_env": {
            "language_env": "go",
            "go_version": "1.22.1",
            "go_binary_url": GO_URL,
            "go_binary_checksum": go_checksum,
        },
    }
    return document


def _stages(report):
    return [(stage.stage, stage.status) for stage in report.stages]


def test_virtual_package_build(document, make_spec, orchestrate, fake_fetcher, sbuild):
    spec = make_spec(document, create_env_if_missing=True)

    report = orchestrate(spec).run()

    assert report.succeeded
    assert report.exit_code == 0
    assert _stages(report) == [
        ("validate", StageStatus.OK),
        ("environment", StageStatus.OK),
        ("source", StageStatus.OK),
        ("patches", StageStatus.SKIPPED),
        ("toolchain", StageStatus.SKIPPED),
        ("metadata", StageStatus.OK),
        ("build", StageStatus.OK),
        ("piuparts", StageStatus.OK),
        ("autopkgtest", StageStatus.OK),
        ("lintian", StageStatus.OK),
    ]
    assert fake_fetcher.calls == []
    assert sbuild.builds == [[]]
    assert report.layout.orig_tarball.is_file()
    assert sorted(report.artifacts.names()) == sorted(
        [report.layout.orig_tarball.name, report.layout.deb_file.name, report.layout.changes_file.name]
    )


def test_hash_mismatch_never_reaches_the_build(
    document, make_spec, orchestrate, fake_fetcher, bootstrapper, sbuild, metadata_tool, upstream
):
    spec = make_spec(_go_document(document, "00" * 32, "ab" * 32))
    fake_fetcher.content[TARBALL_URL] = upstream
    orchestrator = orchestrate(spec)
    orchestrator.environments.create(spec.descriptor)

    report = orchestrator.run()

    assert report.exit_code == 3
    assert report.failure.stage == "source"
    assert report.failure.category is ErrorCategory.INTEGRITY
    assert [stage.stage for stage in report.stages][-1] == "source"
    assert sbuild.builds == []
    assert metadata_tool.calls == []
    assert len(bootstrapper.created) == 1
    assert GO_URL not in fake_fetcher.calls


def test_missing_environment_stops_the_run(document, make_spec, orchestrate, fake_fetcher):
    spec = make_spec(document)

    report = orchestrate(spec).run()

    assert report.exit_code == 7
    assert report.failure.stage == "environment"
    assert "pkgforge env create" in report.failure.detail
    assert fake_fetcher.calls == []


def test_default_package_installs_toolchain(
    document, make_spec, orchestrate, fake_fetcher, fake_runner, sbuild, upstream, go_archive
):
    spec = make_spec(
        _go_document(
            document, hashlib.sha256(upstream).hexdigest(), hashlib.sha256(go_archive).hexdigest()
        ),
        create_env_if_missing=True,
        run_piuparts=False,
        run_autopkgtest=False,
        run_lintian=False,
    )
    fake_fetcher.content.update({TARBALL_URL: upstream, GO_URL: go_archive})
    fake_runner.on("go", stdout="go version go1.22.1 linux/amd64\n")

    report = orchestrate(spec).run()

    assert report.succeeded
    assert report.stage("toolchain").detail == "go-1.22.1 installed"
    assert report.stage("source").status is StageStatus.OK
    assert "go version" in sbuild.builds[0]
    assert [report.stage(name).status for name in ("piuparts", "autopkgtest", "lintian")] == [
        StageStatus.SKIPPED
    ] * 3


def test_unverified_source_is_a_warning(
    document, make_spec, orchestrate, fake_fetcher, upstream, go_archive
):
    doc = _go_document(document, None, hashlib.sha256(go_archive).hexdigest())
    del doc["package_type"]["tarball_hash"]
    spec = make_spec(doc, create_env_if_missing=True, run_piuparts=False, run_autopkgtest=False, run_lintian=False)
    fake_fetcher.content.update({TARBALL_URL: upstream, GO_URL: go_archive})

    report = orchestrate(spec).run()

    assert report.succeeded
    assert report.stage("source").status is StageStatus.WARNING


def test_tool_failure_keeps_its_diagnostic(document, make_spec, orchestrate):
    error = DelegatedToolError(
        "Command failed with exit code 2.\n  Stderr:\ndpkg-buildpackage: error: debian/rules build subprocess returned exit status 2",
        command=["sbuild"],
        returncode=2,
        stderr="dpkg-buildpackage: error: debian/rules build subprocess returned exit status 2\n",
    )
    spec = make_spec(document, create_env_if_missing=True)

    report = orchestrate(spec, sbuild=FakeSbuild(error)).run()

    assert report.exit_code == 4
    assert report.failure.stage == "build"
    assert "debian/rules build subprocess returned exit status 2" in report.failure.detail
    assert report.error is error
    assert report.gates == ()


def test_patch_conflict_stops_before_metadata(
    document, make_spec, orchestrate, fake_fetcher, metadata_tool, tmp_path, upstream
):
    patches = tmp_path / "patches"
    patches.mkdir()
    (patches / "series").write_text("absent.patch\n")
    spec = make_spec(
        _go_document(document, hashlib.sha256(upstream).hexdigest(), "ab" * 32),
        create_env_if_missing=True,
    )
    fake_fetcher.content[TARBALL_URL] = upstream

    report = orchestrate(spec).run()

    assert report.exit_code == 6
    assert report.failure.stage == "patches"
    assert metadata_tool.calls == []
    assert GO_URL not in fake_fetcher.calls


def test_virtual_package_ignores_patch_series(document, make_spec, orchestrate, metadata_tool, tmp_path):
    patches = tmp_path / "patches"
    patches.mkdir()
    (patches / "series").write_text("absent.patch\n")
    spec = make_spec(document, create_env_if_missing=True)

    report = orchestrate(spec).run()

    assert report.succeeded
    assert report.stage("patches").status is StageStatus.SKIPPED
    assert report.stage("patches").detail == "virtual package"
    assert len(metadata_tool.calls) == 1


def test_failing_gate_fails_the_run_but_not_other_gates(document, make_spec, orchestrate, fake_runner):
    spec = make_spec(document, create_env_if_missing=True)
    fake_runner.on("sudo -n piuparts", returncode=1, stderr="FAIL: Package purging left files on system\n")

    report = orchestrate(spec).run()

    assert report.exit_code == 8
    assert report.failure.stage == "piuparts"
    assert report.stage("lintian").status is StageStatus.OK
    assert [gate.passed for gate in report.gates] == [False, True, True]


def test_rerun_starts_from_clean_artifacts(document, make_spec, orchestrate):
    spec = make_spec(document, create_env_if_missing=True)
    orchestrator = orchestrate(spec)
    orchestrator.run()
    stale = orchestrator.layout.artifacts_dir / "stale.deb"
    stale.write_bytes(b"old")

    report = orchestrator.run()

    assert report.succeeded
    assert not stale.exists()


class LockProbingSbuild(FakeSbuild):
    """Records whether the environment key lock could be taken mid-build."""

    def __init__(self, lock_path: Path):
        super().__init__()
        self.lock_path = lock_path
        self.lock_was_free = None

    def build(self, spec, layout, handle, setup_commands):
        with self.lock_path.open("a") as lock:
            try:
                fcntl.flock(lock.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                self.lock_was_free = False
            else:
                fcntl.flock(lock.fileno(), fcntl.LOCK_UN)
                self.lock_was_free = True
        return super().build(spec, layout, handle, setup_commands)


def test_build_holds_the_environment_lock(document, make_spec, orchestrate):
    spec = make_spec(document, create_env_if_missing=True)
    lock_path = spec.build_env.sbuild_cache_dir / ".locks" / f"{spec.descriptor.cache_key}.lock"
    sbuild = LockProbingSbuild(lock_path)

    report = orchestrate(spec, sbuild=sbuild).run()

    assert report.succeeded
    assert sbuild.lock_was_free is False


def test_corrupt_upstream_tarball_is_recorded(
    document, make_spec, orchestrate, fake_fetcher, sbuild, tarball_factory
):
    doc = _go_document(document, None, "ab" * 32)
    del doc["package_type"]["tarball_hash"]
    spec = make_spec(doc, create_env_if_missing=True)
    complete = tarball_factory({"data.bin": os.urandom(256 * 1024)}, prefix="hello-world-1.0.0")
    fake_fetcher.content[TARBALL_URL] = complete[: len(complete) // 2]

    report = orchestrate(spec).run()

    assert report.exit_code == 3
    assert report.failure.stage == "source"
    assert report.failure.category is ErrorCategory.INTEGRITY
    assert sbuild.builds == []


def test_filesystem_error_is_recorded_as_tool_failure(document, make_spec, orchestrate):
    class UnwritableMetadataTool:
        def generate(self, spec, layout):
            raise PermissionError(13, "Permission denied", str(layout.build_files_dir / "debian"))

    spec = make_spec(document, create_env_if_missing=True)

    report = orchestrate(spec, metadata_tool=UnwritableMetadataTool()).run()

    assert report.exit_code == 4
    assert report.failure.stage == "metadata"
    assert "Permission denied" in report.failure.detail


def test_invalid_document_is_a_validate_failure(tmp_path):
    project = tmp_path / "project"
    project.mkdir()
    (project / "pkgforge.toml").write_text('[package_fields]\npackage_name = "hello-world"\n')

    report = BuildOrchestrator.from_config(project).run()

    assert report.exit_code == 2
    assert [(stage.stage, stage.status) for stage in report.stages] == [
        ("validate", StageStatus.FATAL)
    ]
    assert report.failure.category is ErrorCategory.VALIDATION
    assert "build_env" in report.failure.detail
    assert report.spec is None


def test_valid_document_is_loaded_by_the_validate_stage(
    spec_toml, tmp_path, bootstrapper, fake_fetcher, fake_runner, sbuild, metadata_tool
):
    orchestrator = BuildOrchestrator.from_config(
        spec_toml,
        {"create_env_if_missing": True, "run_piuparts": False},
        runner=fake_runner,
        fetcher=fake_fetcher,
        environments=EnvironmentManager(tmp_path / "cache", bootstrapper),
        metadata_tool=metadata_tool,
        sbuild=sbuild,
        gates=default_gates(fake_runner),
    )

    report = orchestrator.run()

    assert report.succeeded
    assert report.stage("validate").status is StageStatus.OK
    assert report.stage("piuparts").status is StageStatus.SKIPPED
    assert orchestrator.layout.deb_file.is_file()
