"""Compression and extraction of archives inside a server's data directory."""

from __future__ import annotations

import io
import os
import tarfile
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import BinaryIO, Callable, Iterable, Iterator

from .archive import Archive
from .errors import ErrorCode, FilesystemError, is_unknown_archive_format_error, wrap_error
from .filesystem import Filesystem


class ArchiveFormatError(ValueError):
    """Raised when a file is not an archive format that can be walked."""


@dataclass(frozen=True)
class ArchiveEntry:
    """One member of an archive being walked.

    Entries are only readable while the iteration that produced them is active.
    """

    name: str
    size: int
    mode: int
    mtime: datetime
    is_dir: bool
    _opener: Callable[[], BinaryIO] = field(repr=False, compare=False)

    def open(self) -> BinaryIO:
        """Return a binary stream with the entry's contents."""
        return self._opener()


def _open_tar_member(archive: tarfile.TarFile, member: tarfile.TarInfo) -> BinaryIO:
    if not member.isreg():
        return io.BytesIO(b"")
    handle = archive.extractfile(member)
    return handle if handle is not None else io.BytesIO(b"")


def _walk_tar(mode: str, path: str) -> Iterator[ArchiveEntry]:
    with tarfile.open(path, mode) as archive:
        for member in archive:
            yield ArchiveEntry(
                name=member.name,
                size=member.size,
                mode=member.mode & 0o7777,
                mtime=datetime.fromtimestamp(member.mtime),
                is_dir=member.isdir(),
                _opener=partial(_open_tar_member, archive, member),
            )


def _zip_mode(info: zipfile.ZipInfo) -> int:
    mode = (info.external_attr >> 16) & 0o7777
    if mode:
        return mode
    return 0o755 if info.is_dir() else 0o644


def _walk_zip(path: str) -> Iterator[ArchiveEntry]:
    with zipfile.ZipFile(path) as archive:
        for info in archive.infolist():
            yield ArchiveEntry(
                name=info.filename,
                size=info.file_size,
                mode=_zip_mode(info),
                mtime=datetime(*info.date_time),
                is_dir=info.is_dir(),
                _opener=partial(archive.open, info),
            )


_WALKERS: tuple[tuple[str, Callable[[str], Iterator[ArchiveEntry]]], ...] = (
    (".tar.gz", partial(_walk_tar, "r:gz")),
    (".tgz", partial(_walk_tar, "r:gz")),
    (".tar.bz2", partial(_walk_tar, "r:bz2")),
    (".tbz2", partial(_walk_tar, "r:bz2")),
    (".tar.xz", partial(_walk_tar, "r:xz")),
    (".txz", partial(_walk_tar, "r:xz")),
    (".tar", partial(_walk_tar, "r:")),
    (".zip", _walk_zip),
)

_UNWALKABLE = (".rar", ".tar.lz4", ".tar.sz", ".tar.zst", ".gz", ".bz2", ".xz", ".lz4", ".sz", ".zst")


def iter_archive(path: str) -> Iterator[ArchiveEntry]:
    """Walk the members of an archive, choosing the format by file name."""
    name = os.path.basename(path).lower()
    for suffix, walker in _WALKERS:
        if name.endswith(suffix):
            return walker(path)
    if name.endswith(_UNWALKABLE):
        raise ArchiveFormatError(f"format specified by archive filename is not a walker format: {path}")
    raise ArchiveFormatError(f"format unrecognized by filename: {path}")


def _archive_name() -> str:
    stamp = datetime.now().astimezone().isoformat(timespec="seconds")
    if stamp.endswith("+00:00"):
        stamp = stamp[:-6] + "Z"
    return f"archive-{stamp.replace(':', '')}.tar.gz"


def compress_files(fs: Filesystem, directory: str, paths: Iterable[str]) -> os.stat_result:
    """Archive the given paths, relative to a directory, into a new .tar.gz there."""
    root = fs.safe_path(directory)
    joined = [os.path.normpath(f"{root}/{p}") for p in paths]
    cleaned = fs.parallel_safe_path(joined)

    destination = os.path.join(root, _archive_name())
    Archive(base_path=root, files=cleaned).create(destination)

    try:
        info = os.stat(destination)
        fs.has_space_for(info.st_size)
    except (OSError, FilesystemError):
        try:
            os.remove(destination)
        except OSError:
            pass
        raise

    fs.disk.add(info.st_size)
    return info


def _walk_or_unknown(source: str) -> Iterator[ArchiveEntry]:
    try:
        return iter_archive(source)
    except ArchiveFormatError as exc:
        if is_unknown_archive_format_error(exc):
            raise FilesystemError(ErrorCode.UNKNOWN_ARCHIVE, cause=exc) from exc
        raise


def space_available_for_decompression(fs: Filesystem, directory: str, file: str) -> None:
    """Raise a disk space error if extracting the archive would exceed the limit."""
    limit = fs.disk.max_disk()
    if limit <= 0:
        return

    source = fs.safe_path(f"{directory}/{file}")
    try:
        dir_size = fs.disk_usage(False)
    except (OSError, FilesystemError):
        dir_size = fs.cached_usage()

    total = 0
    for entry in _walk_or_unknown(source):
        total += entry.size
        if total + dir_size > limit:
            raise FilesystemError(ErrorCode.DISK_SPACE)


def _reraise_wrapped(exc: BaseException, source: str) -> None:
    wrapped = wrap_error(exc, source)
    if wrapped is exc:
        raise exc
    raise wrapped from exc


def decompress_file(fs: Filesystem, directory: str, file: str) -> None:
    """Extract an archive inside the server, skipping denied or escaping members."""
    source = fs.safe_path(f"{directory}/{file}")
    os.stat(source)

    for entry in _walk_or_unknown(source):
        if entry.is_dir:
            continue
        target = f"{directory}/{entry.name}"
        try:
            fs.is_ignored(target)
        except (OSError, FilesystemError):
            continue
        try:
            with entry.open() as stream:
                fs.write_file(target, stream)
            fs.chmod(target, entry.mode)
            fs.chtimes(target, entry.mtime, entry.mtime)
        except (OSError, FilesystemError) as exc:
            _reraise_wrapped(exc, source)