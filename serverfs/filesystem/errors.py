"""Error types raised by the server filesystem layer."""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable codes carried by :class:`FilesystemError`."""

    IS_DIRECTORY = "E_ISDIR"
    DISK_SPACE = "E_NODISK"
    UNKNOWN_ARCHIVE = "E_UNKNFMT"
    PATH_RESOLUTION = "E_BADPATH"
    DENYLIST_FILE = "E_DENYLIST"
    UNKNOWN_ERROR = "E_UNKNOWN"


class FilesystemError(Exception):
    """An error raised by a filesystem operation, identified by its code."""

    def __init__(
        self,
        code: ErrorCode,
        cause: BaseException | None = None,
        resolved: str = "",
        path: str = "",
    ) -> None:
        super().__init__(code)
        self.code = ErrorCode(code)
        self.cause = cause
        self.resolved = resolved
        self.path = path
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        code = self.code
        if code is ErrorCode.IS_DIRECTORY:
            return f"filesystem: cannot perform action: [{self.resolved}] is a directory"
        if code is ErrorCode.DISK_SPACE:
            return "filesystem: not enough disk space"
        if code is ErrorCode.UNKNOWN_ARCHIVE:
            return "filesystem: unknown archive format"
        if code is ErrorCode.DENYLIST_FILE:
            resolved = self.resolved or "<empty>"
            return f"filesystem: file access prohibited: [{resolved}] is on the denylist"
        if code is ErrorCode.PATH_RESOLUTION:
            resolved = self.resolved or "<empty>"
            return (
                f"filesystem: server path [{self.path}] resolves to a location "
                f"outside the server root: {resolved}"
            )
        return f"filesystem: an error occurred: {self.cause}"


def _find_filesystem_error(err: BaseException | None) -> FilesystemError | None:
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, FilesystemError):
            return err
        seen.add(id(err))
        err = err.__cause__
    return None


def is_filesystem_error(err: BaseException | None) -> bool:
    """Return True if err, or anything in its cause chain, is a FilesystemError."""
    return _find_filesystem_error(err) is not None


def is_error_code(err: BaseException | None, code: ErrorCode) -> bool:
    """Return True if err is (or was caused by) a FilesystemError with the given code."""
    found = _find_filesystem_error(err)
    return found is not None and found.code is ErrorCode(code)


def is_unknown_archive_format_error(err: BaseException | None) -> bool:
    """Return True if err reports an archive in an unrecognised format."""
    return err is not None and str(err).startswith("format ")


def new_bad_path_resolution(path: str, resolved: str) -> FilesystemError:
    """Build the error for a path that resolves outside the server root."""
    return FilesystemError(ErrorCode.PATH_RESOLUTION, path=path, resolved=resolved)


def wrap_error(err: BaseException | None, resolved: str) -> BaseException | None:
    """Wrap err as an unknown FilesystemError unless it already is one."""
    if err is None or is_filesystem_error(err):
        return err
    return FilesystemError(ErrorCode.UNKNOWN_ERROR, cause=err, resolved=resolved)