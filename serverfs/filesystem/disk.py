"""Disk usage accounting and limits for a server's data directory."""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Iterator

from .errors import ErrorCode, FilesystemError, is_error_code
from .path import safe_path

log = logging.getLogger(__name__)


def _walk_error(exc: BaseException) -> OSError:
    error = OSError(f"server/filesystem: directorysize: failed to walk directory: {exc}")
    error.__cause__ = exc
    return error


class DiskUsage:
    """Tracks, caches and limits the disk space used below a root directory.

    ``check_interval`` is the number of seconds a measured value stays fresh;
    zero turns disk usage measurement off entirely.
    """

    def __init__(
        self,
        root: str,
        limit: int = 0,
        check_interval: float = 0,
        is_test: bool = False,
    ) -> None:
        self.root = root
        self.check_interval = check_interval
        self.is_test = is_test
        self._limit = limit
        self._used = 0
        self._value_lock = threading.Lock()
        self._update_lock = threading.Lock()
        self._lookup_in_progress = threading.Event()
        self._last_lookup: float | None = None

    def max_disk(self) -> int:
        """The maximum number of bytes that may be used; zero means unlimited."""
        with self._value_lock:
            return self._limit

    def set_disk_limit(self, limit: int) -> None:
        with self._value_lock:
            self._limit = limit

    def has_space_available(self, allow_stale: bool) -> bool:
        """Return True if the used space is within the limit."""
        try:
            size = self.usage(allow_stale)
        except (OSError, FilesystemError) as exc:
            log.warning("failed to determine root fs directory size (root=%s): %s", self.root, exc)
            size = self.cached_usage()

        limit = self.max_disk()
        if limit == 0:
            return True
        return size <= limit

    def has_space_err(self, allow_stale: bool) -> None:
        """Raise a disk space error if the used space exceeds the limit."""
        if not self.has_space_available(allow_stale):
            raise FilesystemError(ErrorCode.DISK_SPACE)

    def cached_usage(self) -> int:
        """The last known number of bytes used, without touching the disk."""
        with self._value_lock:
            return self._used

    def _is_fresh(self) -> bool:
        last = self._last_lookup
        return last is not None and last > time.monotonic() - self.check_interval

    def usage(self, allow_stale: bool) -> int:
        """Return the bytes used, measuring the disk when the cache has expired.

        With ``allow_stale`` an expired value is returned at once while a fresh
        measurement runs in the background.
        """
        if self.check_interval == 0:
            return 0

        if not self._is_fresh():
            if not allow_stale:
                return self.update_cached()
            if not self._lookup_in_progress.is_set():
                threading.Thread(target=self._background_update, daemon=True).start()

        return self.cached_usage()

    def _background_update(self) -> None:
        try:
            self.update_cached()
        except (OSError, FilesystemError) as exc:
            log.warning("failed to update fs disk usage from within routine (root=%s): %s", self.root, exc)

    def update_cached(self) -> int:
        """Measure the root directory and store the result, even on failure."""
        with self._update_lock:
            self._lookup_in_progress.set()
            try:
                size, error = self._measure("/")
                self._last_lookup = time.monotonic()
                with self._value_lock:
                    self._used = size
            finally:
                self._lookup_in_progress.clear()

        if error is not None:
            raise error
        return size

    def directory_size(self, directory: str) -> int:
        """Total size in bytes of the files below a directory inside the root."""
        size, error = self._measure(directory)
        if error is not None:
            raise error
        return size

    def _measure(self, directory: str) -> tuple[int, BaseException | None]:
        try:
            start = safe_path(self.root, directory)
        except (OSError, FilesystemError) as exc:
            return 0, exc

        total = 0
        try:
            for size in self._file_sizes(start):
                total += size
        except (OSError, FilesystemError) as exc:
            return total, _walk_error(exc)
        return total, None

    def _file_sizes(self, start: str) -> Iterator[int]:
        pending = [start]
        while pending:
            with os.scandir(pending.pop()) as entries:
                for entry in entries:
                    if entry.is_symlink():
                        try:
                            safe_path(self.root, entry.path)
                        except FilesystemError as exc:
                            if is_error_code(exc, ErrorCode.PATH_RESOLUTION):
                                continue
                            raise
                    if entry.is_dir(follow_symlinks=False):
                        pending.append(entry.path)
                        continue
                    try:
                        yield entry.stat(follow_symlinks=False).st_size
                    except OSError:
                        continue

    def has_space_for(self, size: int) -> None:
        """Raise a disk space error if ``size`` more bytes would exceed the limit."""
        limit = self.max_disk()
        if limit == 0:
            return
        if self.usage(True) + size > limit:
            raise FilesystemError(ErrorCode.DISK_SPACE)

    def add(self, delta: int) -> int:
        """Adjust the cached usage by ``delta`` bytes, never dropping below zero."""
        size = self.cached_usage()
        if not self.is_test:
            try:
                size = self.usage(True)
            except (OSError, FilesystemError):
                size = self.cached_usage()

        with self._value_lock:
            if size + delta < 0:
                self._used = 0
            else:
                self._used += delta
            return self._used

    def reset(self) -> None:
        """Forget the measured usage."""
        with self._value_lock:
            self._used = 0