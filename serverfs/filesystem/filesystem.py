"""A server's data directory, with every access confined to its root."""

from __future__ import annotations

import errno
import logging
import os
import shutil
import stat as _stat
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import BinaryIO, Iterable, Union

from .disk import DiskUsage
from .errors import ErrorCode, FilesystemError, new_bad_path_resolution
from .path import (
    IgnoreRules,
    is_in_data_directory,
    parallel_safe_path,
    safe_path,
    unsafe_file_path,
)
from .stat import Stat, detect_mimetype, stat_path

log = logging.getLogger(__name__)

_CHUNK = 4 * 1024
_TEXT_FILE_BUSY = getattr(errno, "ETXTBSY", None)
_OPEN_ATTEMPTS = 3

Writable = Union[bytes, bytearray, memoryview, BinaryIO]


def _go_ext(name: str) -> str:
    index = name.rfind(".")
    return name[index:] if index >= 0 else ""


def _timestamp(value: datetime | float | int) -> float:
    return value.timestamp() if isinstance(value, datetime) else float(value)


def _remaining_size(stream: BinaryIO) -> int:
    try:
        position = stream.tell()
        end = stream.seek(0, os.SEEK_END)
        stream.seek(position)
    except (AttributeError, OSError, ValueError):
        return _CHUNK
    return end - position


def _open_with_retry(path: str, mode: str) -> BinaryIO:
    busy = 0
    while True:
        try:
            return open(path, mode)
        except OSError as exc:
            if _TEXT_FILE_BUSY is not None and exc.errno == _TEXT_FILE_BUSY and busy < _OPEN_ATTEMPTS:
                time.sleep(0.1 * (1 << busy))
                busy += 1
                continue
            raise


class Filesystem:
    """Operations on the files of one server, never escaping its root.

    ``disk_limit`` is in bytes (zero is unlimited) and ``disk_check_interval``
    is how many seconds a measured disk usage stays valid. Ownership changes
    use ``uid``/``gid``; -1 leaves that id untouched. With ``is_test`` set,
    ownership, mode and time changes are skipped.
    """

    def __init__(
        self,
        root: str,
        disk_limit: int = 0,
        denylist: Iterable[str] = (),
        disk_check_interval: float = 150,
        uid: int = -1,
        gid: int = -1,
        is_test: bool = False,
    ) -> None:
        self.root = root
        self.uid = uid
        self.gid = gid
        self.is_test = is_test
        self.denylist = IgnoreRules(denylist)
        self.disk = DiskUsage(root, disk_limit, disk_check_interval, is_test)

    # Path handling -------------------------------------------------------

    def safe_path(self, p: str) -> str:
        """Resolve p inside the root or raise a path resolution error."""
        return safe_path(self.root, p)

    def parallel_safe_path(self, paths: Iterable[str]) -> list[str]:
        """Resolve many paths at once; raise if any of them escapes the root."""
        return parallel_safe_path(self.root, paths)

    def is_ignored(self, *args: str) -> None:
        """Raise a denylist error if any of the paths is on the denylist."""
        for p in args:
            resolved = self.safe_path(p)
            if self.denylist.matches(resolved):
                raise FilesystemError(ErrorCode.DENYLIST_FILE, path=p, resolved=resolved)

    # Reading --------------------------------------------------------------

    def stat(self, p: str) -> Stat:
        """Stat a file or directory inside the root."""
        return stat_path(self.safe_path(p))

    def file(self, p: str) -> tuple[BinaryIO, Stat]:
        """Open a regular file for reading and return it with its status."""
        cleaned = self.safe_path(p)
        st = stat_path(cleaned)
        if st.is_dir():
            raise FilesystemError(ErrorCode.IS_DIRECTORY, resolved=cleaned)
        return open(cleaned, "rb"), st

    def list_directory(self, p: str) -> list[Stat]:
        """List a directory: directories first, then files, names descending."""
        cleaned = self.safe_path(p)
        with os.scandir(cleaned) as scanned:
            entries = list(scanned)
        with ThreadPoolExecutor() as pool:
            stats = list(pool.map(lambda entry: self._describe(cleaned, entry), entries))
        stats.sort(key=lambda st: st.name, reverse=True)
        stats.sort(key=lambda st: not st.is_dir())
        return stats

    def _describe(self, directory: str, entry: os.DirEntry[str]) -> Stat:
        info = entry.stat(follow_symlinks=False)
        mime = "inode/directory"
        if not _stat.S_ISDIR(info.st_mode):
            target = os.path.join(directory, entry.name)
            resolvable = True
            if _stat.S_ISLNK(info.st_mode):
                try:
                    self.safe_path(target)
                except (FilesystemError, OSError):
                    resolvable = False
            if resolvable and not _stat.S_ISFIFO(info.st_mode):
                try:
                    mime = detect_mimetype(target)
                except OSError:
                    pass
            else:
                mime = "application/octet-stream"
        return Stat(name=entry.name, info=info, mimetype=mime)

    # Writing --------------------------------------------------------------

    def touch(self, p: str, mode: str = "w+b") -> BinaryIO:
        """Open a file inside the root, creating it and its parents if needed."""
        cleaned = self.safe_path(p)
        try:
            return open(cleaned, mode)
        except FileNotFoundError:
            pass

        parent = os.path.dirname(cleaned)
        if not os.path.exists(parent):
            os.makedirs(parent, 0o755, exist_ok=True)
            self.chown(parent)

        handle = _open_with_retry(cleaned, mode)
        try:
            self.chown(cleaned)
        except (OSError, FilesystemError):
            pass
        return handle

    def write_file(self, p: str, data: Writable) -> None:
        """Write bytes or a binary stream to a file, keeping disk usage current."""
        cleaned = self.safe_path(p)

        current = 0
        try:
            existing = os.stat(cleaned)
        except FileNotFoundError:
            pass
        else:
            if _stat.S_ISDIR(existing.st_mode):
                raise FilesystemError(ErrorCode.IS_DIRECTORY, resolved=cleaned)
            current = existing.st_size

        if isinstance(data, (bytes, bytearray, memoryview)):
            incoming = len(memoryview(data).cast("B"))
        else:
            incoming = _remaining_size(data)
        self.disk.has_space_for(incoming - current)

        written = 0
        try:
            with self.touch(cleaned, "w+b") as handle:
                if isinstance(data, (bytes, bytearray, memoryview)):
                    written = handle.write(data)
                else:
                    while chunk := data.read(_CHUNK):
                        written += handle.write(chunk)
        finally:
            self.disk.add(written - current)

        self.chown(cleaned)

    def create_directory(self, name: str, p: str) -> None:
        """Create directory ``name`` below ``p``, along with any missing parents."""
        cleaned = self.safe_path(f"{p}/{name}")
        os.makedirs(cleaned, 0o755, exist_ok=True)

    def rename(self, source: str, target: str) -> None:
        """Move a file or directory; the target must not exist yet."""
        cleaned_from = self.safe_path(source)
        cleaned_to = self.safe_path(target)

        if os.path.exists(cleaned_to):
            raise FileExistsError(errno.EEXIST, "file already exists", cleaned_to)
        if cleaned_to == self.root:
            raise PermissionError("attempting to rename into an invalid directory space")

        parent = os.path.dirname(cleaned_to)
        if parent != self.root:
            os.makedirs(parent, 0o755, exist_ok=True)

        os.rename(cleaned_from, cleaned_to)

    def copy(self, p: str) -> None:
        """Copy a regular file next to itself as "name copy.ext" (or a numbered copy)."""
        cleaned = self.safe_path(p)
        info = os.stat(cleaned)
        if not _stat.S_ISREG(info.st_mode):
            raise FileNotFoundError(errno.ENOENT, "no such file", cleaned)

        self.disk.has_space_for(info.st_size)

        base = os.path.basename(cleaned)
        relative = cleaned.removeprefix(self.root).removesuffix(base)
        extension = _go_ext(base)
        name = base.removesuffix(extension) if extension else base
        if name.endswith(".tar"):
            extension = ".tar" + extension
            name = name.removesuffix(".tar")

        with open(cleaned, "rb") as source:
            copy_name = self._find_copy_suffix(relative, name, extension)
            self.write_file(f"{relative.rstrip('/')}/{copy_name}", source)

    def _find_copy_suffix(self, directory: str, name: str, extension: str) -> str:
        suffix = " copy"
        for attempt in range(51):
            if attempt > 0:
                suffix = f" copy {attempt}"
            candidate = name + suffix + extension
            try:
                self.stat(f"{directory.rstrip('/')}/{candidate}")
            except FileNotFoundError:
                break
            if attempt == 50:
                suffix = "copy." + datetime.now().astimezone().isoformat(timespec="seconds")
        return name + suffix + extension

    def truncate_root_directory(self) -> None:
        """Remove everything in the root and reset the used disk space."""
        shutil.rmtree(self.root, ignore_errors=False) if os.path.exists(self.root) else None
        os.mkdir(self.root, 0o755)
        self.disk.reset()

    def delete(self, p: str) -> None:
        """Remove a file, symlink or directory without following symlinks."""
        resolved = unsafe_file_path(self.root, p)
        if not is_in_data_directory(self.root, resolved):
            raise new_bad_path_resolution(p, resolved)
        if resolved == self.root:
            raise PermissionError("cannot delete root server directory")

        try:
            info = os.lstat(resolved)
        except FileNotFoundError:
            return
        except OSError as exc:
            log.warning("error while attempting to stat file before deletion (root=%s): %s", self.root, exc)
            info = None

        if info is not None and _stat.S_ISDIR(info.st_mode):
            try:
                size = self.disk.directory_size(resolved)
            except (OSError, FilesystemError):
                pass
            else:
                self.disk.add(-size)
            shutil.rmtree(resolved)
            return

        if info is not None:
            self.disk.add(-info.st_size)
        try:
            os.remove(resolved)
        except FileNotFoundError:
            pass

    # Ownership, permissions and times ------------------------------------

    def chown(self, p: str) -> None:
        """Set the configured owner on a path and everything below it."""
        cleaned = self.safe_path(p)
        if self.is_test:
            return

        os.chown(cleaned, self.uid, self.gid)
        if not os.path.isdir(cleaned):
            return

        pending = [cleaned]
        while pending:
            with os.scandir(pending.pop()) as entries:
                for entry in entries:
                    if entry.is_symlink():
                        continue
                    os.chown(entry.path, self.uid, self.gid)
                    if entry.is_dir(follow_symlinks=False):
                        pending.append(entry.path)

    def chmod(self, p: str, mode: int) -> None:
        """Change the permission bits of a path inside the root."""
        cleaned = self.safe_path(p)
        if self.is_test:
            return
        os.chmod(cleaned, mode)

    def chtimes(self, p: str, atime: datetime | float, mtime: datetime | float) -> None:
        """Set the access and modification times of a path inside the root."""
        cleaned = self.safe_path(p)
        if self.is_test:
            return
        os.utime(cleaned, (_timestamp(atime), _timestamp(mtime)))

    # Disk usage -------------------------------------------------------------

    def has_space_available(self, allow_stale: bool) -> bool:
        return self.disk.has_space_available(allow_stale)

    def has_space_for(self, size: int) -> None:
        self.disk.has_space_for(size)

    def disk_usage(self, allow_stale: bool) -> int:
        return self.disk.usage(allow_stale)

    def cached_usage(self) -> int:
        return self.disk.cached_usage()

    def directory_size(self, directory: str) -> int:
        return self.disk.directory_size(directory)