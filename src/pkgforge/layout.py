"""On-disk layout of one package's working directory."""

from pathlib import Path

from attrs import define

from .models import PackageSpec


@define(frozen=True, slots=True)
class PackageLayout:
    artifacts_dir: Path
    build_files_dir: Path
    orig_tarball: Path
    deb_file: Path
    changes_file: Path
    toolchain_root: Path

    @classmethod
    def from_spec(cls, spec: PackageSpec) -> "PackageLayout":
        fields = spec.fields
        env = spec.build_env
        artifacts_dir = (
            env.workdir
            / f"{fields.package_name}-{fields.version_number}-{fields.revision_number}"
        )
        stem = f"{fields.package_name}_{fields.version_number}-{fields.revision_number}_{env.arch}"
        return cls(
            artifacts_dir=artifacts_dir,
            build_files_dir=artifacts_dir / f"{fields.package_name}-{fields.version_number}",
            orig_tarball=artifacts_dir
            / f"{fields.package_name}_{fields.version_number}.orig.tar.gz",
            deb_file=artifacts_dir / f"{stem}.deb",
            changes_file=artifacts_dir / f"{stem}.changes",
            toolchain_root=env.workdir / "toolchains",
        )
