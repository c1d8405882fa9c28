"""
Guarded archive extraction and reproducible tarball creation.
"""

import gzip
import io
import lzma
from pathlib import Path, PurePosixPath
import shutil
import tarfile
import zipfile
import zlib

from pyvider.telemetry import logger

from .exceptions import IntegrityError

EXCLUDED_NAMES = frozenset({".git"})
UNREADABLE_ARCHIVE = (
    tarfile.TarError,
    zipfile.BadZipFile,
    gzip.BadGzipFile,
    lzma.LZMAError,
    zlib.error,
    EOFError,
)


def _member_parts(name: str) -> tuple[str, ...]:
    return tuple(part for part in PurePosixPath(name).parts if part not in ("", "."))


def common_prefix_depth(names: list[str]) -> int:
    """Returns 1 when every entry sits under one top-level directory, else 0."""
    tops = set()
    nested = False
    for name in names:
        parts = _member_parts(name)
        if not parts:
            continue
        tops.add(parts[0])
        nested = nested or len(parts) > 1
    return 1 if len(tops) == 1 and nested else 0


def _target(dest: Path, name: str, strip: int) -> Path | None:
    """Maps an archive member onto `dest`, rejecting anything that escapes it."""
    if PurePosixPath(name).is_absolute() or name.startswith(("/", "\\")):
        raise IntegrityError(f"Archive entry '{name}' has an absolute path.", subject=name)
    parts = _member_parts(name)
    if ".." in parts:
        raise IntegrityError(f"Archive entry '{name}' escapes the destination.", subject=name)
    parts = parts[strip:]
    if not parts:
        return None
    target = dest.joinpath(*parts)
    if not target.resolve().is_relative_to(dest.resolve()):
        raise IntegrityError(f"Archive entry '{name}' escapes the destination.", subject=name)
    return target


def _check_link(dest: Path, target: Path, link: str, name: str) -> None:
    resolved = (target.parent / link).resolve()
    if PurePosixPath(link).is_absolute() or not resolved.is_relative_to(dest.resolve()):
        raise IntegrityError(
            f"Archive link '{name}' -> '{link}' points outside the destination.", subject=name
        )


def _extract_tar(archive: Path, dest: Path, strip: int | None) -> list[str]:
    written = []
    with tarfile.open(archive, "r:*") as tar:
        members = tar.getmembers()
        depth = common_prefix_depth([m.name for m in members]) if strip is None else strip
        for member in members:
            target = _target(dest, member.name, depth)
            if target is None:
                continue
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            if member.issym():
                _check_link(dest, target, member.linkname, member.name)
                target.unlink(missing_ok=True)
                target.symlink_to(member.linkname)
            elif member.islnk():
                source = _target(dest, member.linkname, depth)
                if source is None or not source.exists():
                    raise IntegrityError(
                        f"Archive hard link '{member.name}' has no target inside the archive.",
                        subject=member.name,
                    )
                target.unlink(missing_ok=True)
                shutil.copy2(source, target)
            elif member.isfile():
                extracted = tar.extractfile(member)
                if extracted is None:
                    raise IntegrityError(
                        f"Archive entry '{member.name}' has no readable content.", subject=member.name
                    )
                with extracted, target.open("wb") as out:
                    shutil.copyfileobj(extracted, out)
                target.chmod(member.mode & 0o755 | 0o644)
            else:
                logger.debug("Skipping special archive entry", entry=member.name)
                continue
            written.append(target.relative_to(dest).as_posix())
    return written


def _extract_zip(archive: Path, dest: Path, strip: int | None) -> list[str]:
    written = []
    with zipfile.ZipFile(archive) as zf:
        infos = zf.infolist()
        depth = common_prefix_depth([i.filename for i in infos]) if strip is None else strip
        for info in infos:
            target = _target(dest, info.filename, depth)
            if target is None:
                continue
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info) as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)
            mode = (info.external_attr >> 16) & 0o777
            if mode:
                target.chmod(mode & 0o755 | 0o644)
            written.append(target.relative_to(dest).as_posix())
    return written


def safe_extract(archive: Path, dest: Path, strip_components: int | None = None) -> list[str]:
    """
    Unpacks a tar (any compression) or zip archive into `dest`.

    With `strip_components=None` a single shared top-level directory is removed.
    Every entry is checked before it is written: absolute paths, `..` segments
    and links leading outside `dest` raise `IntegrityError`, as does a
    truncated or corrupt archive.
    Returns the relative paths of the files written.
    """
    dest.mkdir(parents=True, exist_ok=True)
    try:
        if zipfile.is_zipfile(archive):
            files = _extract_zip(archive, dest, strip_components)
        elif tarfile.is_tarfile(archive):
            files = _extract_tar(archive, dest, strip_components)
        else:
            raise IntegrityError(
                f"'{archive.name}' is not a tar or zip archive.", subject=str(archive)
            )
    except UNREADABLE_ARCHIVE as e:
        raise IntegrityError(
            f"'{archive.name}' is truncated or corrupt: {e}", subject=str(archive)
        ) from e
    logger.info("Archive extracted", archive=archive.name, dest=str(dest), files=len(files))
    return sorted(files)


def _reset(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    info.mtime = 0
    if info.isdir() or info.mode & 0o111:
        info.mode = 0o755
    else:
        info.mode = 0o644
    return info


def create_reproducible_tarball(src_dir: Path | None, dest: Path, prefix: str) -> Path:
    """
    Packs `src_dir` under `prefix/` into a gzip tarball whose bytes depend only
    on file names, contents and executable bits. `.git` is excluded.
    `src_dir=None` writes an empty archive.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.GNU_FORMAT) as tar:
        if src_dir is not None:
            entries = sorted(
                p
                for p in src_dir.rglob("*")
                if not EXCLUDED_NAMES.intersection(p.relative_to(src_dir).parts)
            )
            tar.addfile(_reset(tar.gettarinfo(str(src_dir), arcname=prefix)))
            for path in entries:
                arcname = f"{prefix}/{path.relative_to(src_dir).as_posix()}"
                info = _reset(tar.gettarinfo(str(path), arcname=arcname))
                if info.isfile():
                    with path.open("rb") as f:
                        tar.addfile(info, f)
                else:
                    tar.addfile(info)

    with dest.open("wb") as raw, gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
        gz.write(buffer.getvalue())
    logger.info("Reproducible tarball written", path=str(dest))
    return dest
