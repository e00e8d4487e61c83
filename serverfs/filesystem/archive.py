"""Creation of gzip-compressed tar archives of a server's files."""

from __future__ import annotations

import gzip
import os
import stat as _stat
import tarfile
import time
from dataclasses import dataclass, field
from typing import BinaryIO, Iterator

from .path import IgnoreRules


class _ThrottledWriter:
    """Write-through wrapper limiting throughput with a token bucket."""

    def __init__(self, raw: BinaryIO, rate: int) -> None:
        self._raw = raw
        self._rate = rate
        self._tokens = float(rate)
        self._stamp = time.monotonic()

    def _refill(self) -> None:
        now = time.monotonic()
        self._tokens = min(float(self._rate), self._tokens + (now - self._stamp) * self._rate)
        self._stamp = now

    def write(self, data: bytes) -> int:
        view = memoryview(data).cast("B")
        offset = 0
        while offset < len(view):
            chunk = min(len(view) - offset, self._rate)
            self._refill()
            deficit = chunk - self._tokens
            if deficit > 0:
                time.sleep(deficit / self._rate)
                self._refill()
            self._raw.write(view[offset : offset + chunk])
            self._tokens -= chunk
            offset += chunk
        return len(view)

    def flush(self) -> None:
        self._raw.flush()


@dataclass
class Archive:
    """Describes which files below ``base_path`` go into an archive.

    ``files`` holds absolute paths and takes priority over ``ignore``, a
    gitignore-style list of exclusions. ``write_limit`` caps the output rate
    in bytes per second; zero leaves it unlimited.
    """

    base_path: str
    ignore: str = ""
    files: list[str] = field(default_factory=list)
    write_limit: int = 0

    def create(self, dst: str) -> None:
        """Write a .tar.gz archive of the selected files to ``dst``."""
        rules = IgnoreRules(self.ignore.split("\n")) if not self.files and self.ignore else None

        fd = os.open(dst, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as raw:
            sink = _ThrottledWriter(raw, self.write_limit) if self.write_limit > 0 else raw
            with gzip.GzipFile(fileobj=sink, mode="wb", compresslevel=1) as compressed:
                with tarfile.open(fileobj=compressed, mode="w") as tw:
                    for path in self._walk(self.base_path):
                        relative = path.removeprefix(self.base_path + os.sep).replace(os.sep, "/")
                        if self._included(path, relative, rules):
                            self._add(tw, path, relative)

    def _walk(self, start: str) -> Iterator[str]:
        pending = [start]
        while pending:
            with os.scandir(pending.pop()) as entries:
                for entry in sorted(entries, key=lambda item: item.name):
                    if entry.is_dir(follow_symlinks=False):
                        pending.append(entry.path)
                    else:
                        yield entry.path

    def _included(self, path: str, relative: str, rules: IgnoreRules | None) -> bool:
        if self.files:
            prefixed = path.removesuffix("/") + "/"
            return any(path == f or prefixed.startswith(f) for f in self.files)
        if rules is not None:
            return not rules.matches(relative)
        return True

    @staticmethod
    def _add(tw: tarfile.TarFile, path: str, relative: str) -> None:
        try:
            info = tw.gettarinfo(path, arcname=relative)
        except FileNotFoundError:
            return
        if info is None:
            return

        if not info.isreg() or info.size < 1:
            tw.addfile(info)
            return

        try:
            handle = open(path, "rb")
        except FileNotFoundError:
            return
        with handle:
            if not _stat.S_ISREG(os.fstat(handle.fileno()).st_mode):
                return
            tw.addfile(info, handle)