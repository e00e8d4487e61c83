"""Server backups stored as gzip-compressed tar archives."""

from __future__ import annotations

import hashlib
import logging
import os
import stat as _stat
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, BinaryIO, Callable, ClassVar, Optional

from ..filesystem.archive import Archive
from ..filesystem.compress import iter_archive

log = logging.getLogger(__name__)

_CHUNK = 4 * 1024

RestoreCallback = Callable[[str, BinaryIO, int, datetime, datetime], None]


class AdapterType(str, Enum):
    """Where a backup is stored."""

    LOCAL = "wings"
    S3 = "s3"


@dataclass(frozen=True)
class ArchiveDetails:
    """Checksum and size of a generated backup archive."""

    checksum: str
    checksum_type: str
    size: int

    def to_request(self, successful: bool) -> dict[str, Any]:
        """The payload reporting this backup's outcome."""
        return {
            "checksum": self.checksum,
            "checksum_type": self.checksum_type,
            "size": self.size,
            "successful": successful,
        }


@dataclass
class Backup:
    """A backup identified by its UUID, kept in ``backup_directory``.

    ``ignore`` holds gitignore-style exclusions; ``write_limit`` caps the
    archive write rate in bytes per second (zero is unlimited).
    """

    uuid: str
    backup_directory: str
    ignore: str = ""
    write_limit: int = 0
    log_context: dict[str, Any] = field(default_factory=dict)

    adapter: ClassVar[Optional[AdapterType]] = None

    @property
    def path(self) -> str:
        """Location of the archive on this machine."""
        return os.path.join(self.backup_directory, self.uuid + ".tar.gz")

    @property
    def log(self) -> logging.LoggerAdapter:
        adapter = self.adapter.value if self.adapter is not None else None
        return logging.LoggerAdapter(log, {"backup": self.uuid, "adapter": adapter, **self.log_context})

    def size(self) -> int:
        """Size of the archive in bytes."""
        return os.stat(self.path).st_size

    def checksum(self) -> bytes:
        """SHA-1 digest of the archive."""
        digest = hashlib.sha1()
        with open(self.path, "rb") as handle:
            while chunk := handle.read(_CHUNK):
                digest.update(chunk)
        return digest.digest()

    def details(self) -> ArchiveDetails:
        """Checksum and size of the archive on disk."""
        return ArchiveDetails(checksum=self.checksum().hex(), checksum_type="sha1", size=self.size())

    def remove(self) -> None:
        """Delete the archive."""
        os.remove(self.path)


@dataclass
class LocalBackup(Backup):
    """A backup kept on this machine's disk."""

    adapter: ClassVar[Optional[AdapterType]] = AdapterType.LOCAL

    def generate(self, base_path: str, ignore: str) -> ArchiveDetails:
        """Archive ``base_path`` (minus the ignored files) and describe the result."""
        archive = Archive(base_path=base_path, ignore=ignore, write_limit=self.write_limit)
        self.log.info("creating backup for server at %s", self.path)
        archive.create(self.path)
        self.log.info("created backup successfully")
        try:
            return self.details()
        except OSError as exc:
            raise OSError(f"backup: failed to get archive details for local backup: {exc}") from exc

    def restore(self, callback: RestoreCallback) -> None:
        """Call ``callback(name, stream, mode, atime, mtime)`` for every file in the archive."""
        for entry in iter_archive(self.path):
            if entry.is_dir:
                continue
            with entry.open() as stream:
                callback(entry.name, stream, entry.mode, entry.mtime, entry.mtime)


def locate_local(backup_directory: str, uuid: str) -> tuple[LocalBackup, os.stat_result]:
    """Find an existing local backup and return it with its file status."""
    backup = LocalBackup(uuid=uuid, backup_directory=backup_directory)
    info = os.stat(backup.path)
    if _stat.S_ISDIR(info.st_mode):
        raise IsADirectoryError("invalid archive, is directory")
    return backup, info