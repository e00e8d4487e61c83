"""File status information with a detected MIME type."""

from __future__ import annotations

import codecs
import os
import stat as _stat
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

_SNIFF_LENGTH = 3072

_SIGNATURES: tuple[tuple[int, bytes, str], ...] = (
    (0, b"\x1f\x8b", "application/gzip"),
    (0, b"PK\x03\x04", "application/zip"),
    (0, b"PK\x05\x06", "application/zip"),
    (0, b"\x89PNG\r\n\x1a\n", "image/png"),
    (0, b"\xff\xd8\xff", "image/jpeg"),
    (0, b"GIF87a", "image/gif"),
    (0, b"GIF89a", "image/gif"),
    (0, b"%PDF-", "application/pdf"),
    (0, b"Rar!\x1a\x07", "application/x-rar-compressed"),
    (0, b"7z\xbc\xaf\x27\x1c", "application/x-7z-compressed"),
    (0, b"BZh", "application/x-bzip2"),
    (0, b"\xfd7zXZ\x00", "application/x-xz"),
    (0, b"\x7fELF", "application/x-executable"),
    (257, b"ustar", "application/x-tar"),
)


def _looks_like_text(data: bytes) -> bool:
    if b"\x00" in data:
        return False
    decoder = codecs.getincrementaldecoder("utf-8")()
    try:
        decoder.decode(data, final=False)
    except UnicodeDecodeError:
        return False
    return True


def detect_mimetype(path: str | os.PathLike[str]) -> str:
    """Detect a file's MIME type from its leading bytes."""
    with open(path, "rb") as handle:
        head = handle.read(_SNIFF_LENGTH)
    if not head:
        return "text/plain"
    for offset, magic, mime in _SIGNATURES:
        if head[offset : offset + len(magic)] == magic:
            return mime
    if _looks_like_text(head):
        return "text/plain; charset=utf-8"
    return "application/octet-stream"


_TYPE_LETTERS: tuple[tuple[str, Any], ...] = (
    ("d", _stat.S_ISDIR),
    ("L", _stat.S_ISLNK),
    ("D", lambda m: _stat.S_ISBLK(m) or _stat.S_ISCHR(m)),
    ("p", _stat.S_ISFIFO),
    ("S", _stat.S_ISSOCK),
    ("u", lambda m: bool(m & _stat.S_ISUID)),
    ("g", lambda m: bool(m & _stat.S_ISGID)),
    ("c", _stat.S_ISCHR),
    ("t", lambda m: bool(m & _stat.S_ISVTX)),
)


def _mode_string(mode: int) -> str:
    letters = "".join(letter for letter, test in _TYPE_LETTERS if test(mode))
    perms = "".join(
        char if mode & (1 << (8 - index)) else "-" for index, char in enumerate("rwxrwxrwx")
    )
    return (letters or "-") + perms


def _rfc3339(moment: datetime) -> str:
    text = moment.isoformat(timespec="seconds")
    return text[:-6] + "Z" if text.endswith("+00:00") else text


def _local_time(ns: int) -> datetime:
    return datetime.fromtimestamp(ns / 1_000_000_000, tz=timezone.utc).astimezone()


@dataclass(frozen=True)
class Stat:
    """Status of a file or directory together with its MIME type."""

    name: str
    info: os.stat_result
    mimetype: str

    def is_dir(self) -> bool:
        return _stat.S_ISDIR(self.info.st_mode)

    def created(self) -> datetime:
        """Creation time; the modification time on Windows."""
        if sys.platform == "win32":
            return _local_time(self.info.st_mtime_ns)
        return _local_time(self.info.st_ctime_ns)

    def to_dict(self) -> dict[str, Any]:
        """Serialisable representation used in API responses."""
        mode = self.info.st_mode
        perm = _stat.S_IMODE(mode) & 0o777
        return {
            "name": self.name,
            "created": _rfc3339(self.created()),
            "modified": _rfc3339(_local_time(self.info.st_mtime_ns)),
            "mode": _mode_string(mode),
            "mode_bits": format(perm, "o"),
            "size": self.info.st_size,
            "directory": self.is_dir(),
            "file": not self.is_dir(),
            "symlink": bool(perm & _stat.S_IFLNK),
            "mime": self.mimetype,
        }


def stat_path(path: str | os.PathLike[str]) -> Stat:
    """Stat a path (following symlinks) and detect its MIME type."""
    info = os.stat(path)
    name = os.path.basename(os.path.normpath(os.fspath(path)))
    if _stat.S_ISDIR(info.st_mode):
        return Stat(name=name, info=info, mimetype="inode/directory")
    return Stat(name=name, info=info, mimetype=detect_mimetype(path))