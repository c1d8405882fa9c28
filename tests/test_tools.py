"""Tests for the debcrafter and sbuild adapters."""

from pathlib import Path

import pytest

from pkgforge.environment import EnvironmentManager
from pkgforge.exceptions import SpecValidationError
from pkgforge.layout import PackageLayout
from pkgforge.tools.debcrafter import DebcrafterTool, add_control_fields, finish_metadata
from pkgforge.tools.sbuild import SbuildTool

CONTROL = """\
Source: hello-world
Section: utils
Priority: optional
Maintainer: Jane Doe <jane@example.org>
"""


def _debcrafter_output(args: list[str], cwd: Path | None) -> None:
    debian = Path(args[-1]) / "hello-world-1.0.0" / "debian"
    debian.mkdir(parents=True)
    (debian / "control").write_text(CONTROL)
    (debian / "rules").write_text("#!/usr/bin/make -f\n%:\n\tdh $@\n")


def test_control_fields_follow_priority():
    content = add_control_fields(CONTROL, "https://example.org/hello-world")

    lines = content.splitlines()
    priority = lines.index("Priority: optional")
    assert lines[priority + 1] == "Standards-Version: 4.5.1"
    assert lines[priority + 2] == "Homepage: https://example.org/hello-world"
    assert content.endswith("\n")


def test_control_fields_are_added_once():
    once = add_control_fields(CONTROL, "https://example.org")

    assert add_control_fields(once, "https://example.org") == once


def test_generate_writes_finished_debian_dir(document, make_spec, fake_runner, tmp_path):
    spec = make_spec(document)
    layout = PackageLayout.from_spec(spec)
    (tmp_path / "hello-world.sss").write_text("name = \"hello-world\"\n")
    overrides = tmp_path / "src" / "debian"
    overrides.mkdir(parents=True)
    (overrides / "copyright").write_text("Files: *\n")
    fake_runner.on("debcrafter_8189263", effect=_debcrafter_output)

    debian = DebcrafterTool(fake_runner).generate(spec, layout)

    assert debian == layout.build_files_dir / "debian"
    assert "Homepage: https://example.org/hello-world" in (debian / "control").read_text()
    assert (debian / "rules").is_file()
    assert (debian / "copyright").read_text() == "Files: *\n"
    assert (debian / "source" / "format").read_text() == "3.0 (quilt)\n"
    args, cwd = fake_runner.calls[0]
    assert args[:2] == ["debcrafter_8189263", "hello-world.sss"]
    assert cwd == tmp_path.resolve()


def test_generate_requires_spec_file(document, make_spec, fake_runner):
    spec = make_spec(document)

    with pytest.raises(SpecValidationError, match="package_fields.spec_file"):
        DebcrafterTool(fake_runner).generate(spec, PackageLayout.from_spec(spec))


def test_existing_source_format_is_kept(document, make_spec, tmp_path):
    spec = make_spec(document)
    build_dir = tmp_path / "build"
    (build_dir / "debian" / "source").mkdir(parents=True)
    (build_dir / "debian" / "source" / "format").write_text("3.0 (native)\n")

    finish_metadata(spec, build_dir)

    assert (build_dir / "debian" / "source" / "format").read_text() == "3.0 (native)\n"


def test_build_command(document, make_spec, bootstrapper, tmp_path):
    spec = make_spec(document)
    handle = EnvironmentManager(tmp_path / "cache", bootstrapper).handle_for(spec.descriptor)

    args = SbuildTool().build_command(spec, handle, ["go version"])

    assert args[:3] == ["sbuild", "-d", "bookworm"]
    assert args[args.index("-c") + 1] == str(handle.tarball)
    assert "--chroot-setup-commands=go version" in args
    assert "--no-run-lintian" in args


def test_noble_build_enables_extra_components(document, make_spec, bootstrapper, tmp_path):
    spec = make_spec(document, codename="noble")
    handle = EnvironmentManager(tmp_path / "cache", bootstrapper).handle_for(spec.descriptor)

    args = SbuildTool().build_command(spec, handle)

    assert args[:3] == ["sbuild", "-d", "noble"]
    assert "--chroot-setup-commands=add-apt-repository universe" in args


def test_create_environment_command(document, make_spec, fake_runner, tmp_path):
    spec = make_spec(document)
    tarball = tmp_path / "cache" / "bookworm" / "chroot.tar.gz"

    SbuildTool(fake_runner).create_environment(spec.descriptor, tarball)

    args = fake_runner.calls[0][0]
    assert args[:3] == ["sbuild-createchroot", "--chroot-mode=unshare", f"--make-sbuild-tarball={tarball}"]
    assert args[3] == "bookworm"
    assert args[-1] == "http://deb.debian.org/debian"


def test_control_fields_without_priority_go_first():
    content = add_control_fields("Source: hello-world\nSection: utils\n", "https://example.org")

    assert content.splitlines()[:3] == [
        "Standards-Version: 4.5.1",
        "Homepage: https://example.org",
        "Source: hello-world",
    ]


def test_finish_metadata_prepares_rules_and_quilt(document, make_spec, tmp_path):
    spec = make_spec(document)
    overrides = tmp_path / "src" / "debian"
    overrides.mkdir(parents=True)
    (overrides / "rules").write_text("#!/usr/bin/make -f\n%:\n\tdh $@\n")
    (overrides / "rules").chmod(0o644)
    build_dir = tmp_path / "build"
    build_dir.mkdir()

    finish_metadata(spec, build_dir)

    assert (build_dir / "debian" / "rules").stat().st_mode & 0o777 == 0o755
    assert (build_dir / ".pc" / ".version").read_text() == "2\n"
