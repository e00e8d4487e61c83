"""Path resolution that keeps every access inside a server's root directory."""

from __future__ import annotations

import os
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable

from .errors import new_bad_path_resolution

_MAGIC_STAR = "#$~"
_DIR_GLOB_PREFIX = re.compile(r"([^/+])/.*\*\.")


def _compile_ignore_line(line: str) -> tuple[re.Pattern[str], bool] | None:
    if line.startswith("#"):
        return None
    line = line.strip(" ")
    if not line:
        return None

    negate = False
    if line[0] == "!":
        negate = True
        line = line[1:]
    if line[:1] in ("#", "!"):
        line = line[1:]
    if not line:
        return None

    if _DIR_GLOB_PREFIX.search(line) and line[0] != "/":
        line = "/" + line

    line = line.replace(".", r"\.")
    if line.startswith("/**/"):
        line = line[1:]
    line = line.replace("/**/", "(/|/.+/)")
    line = line.replace("**/", "(|." + _MAGIC_STAR + "/)")
    line = line.replace("/**", "(|/." + _MAGIC_STAR + ")")
    line = line.replace("\\*", "\\" + _MAGIC_STAR)
    line = line.replace("*", "([^/]*)")
    line = line.replace("?", "\\?")
    line = line.replace(_MAGIC_STAR, "*")

    expr = line + ("(|.*)" if line.endswith("/") else "(|/.*)") + r"\Z"
    if expr.startswith("/"):
        expr = "^(|/)" + expr[1:]
    else:
        expr = "^(|.*/)" + expr

    try:
        return re.compile(expr), negate
    except re.error:
        return None


class IgnoreRules:
    """A compiled set of gitignore-style patterns."""

    def __init__(self, lines: Iterable[str] = ()) -> None:
        self._patterns = [
            compiled
            for compiled in (_compile_ignore_line(line) for line in lines)
            if compiled is not None
        ]

    def matches(self, path: str) -> bool:
        """Return True if the path is matched by the rules, honouring negations."""
        path = path.replace(os.sep, "/")
        matched = False
        for pattern, negate in self._patterns:
            if pattern.search(path):
                matched = not negate if not negate else False if matched else matched
        return matched


def _clean(path: str) -> str:
    return os.path.normpath(path) if path else "."


def unsafe_file_path(root: str, p: str) -> str:
    """Join p onto root and clean it, without checking where it resolves."""
    return _clean(root + "/" + p.removeprefix(root))


def is_in_data_directory(root: str, p: str) -> bool:
    """Return True if p lies lexically within root."""
    return (p.removesuffix("/") + "/").startswith(root.removesuffix("/") + "/")


def safe_path(root: str, p: str) -> str:
    """Resolve p within root, following symlinks, or raise a path resolution error."""
    resolved_path = unsafe_file_path(root, p)
    fallback = ""

    try:
        evaluated = os.path.realpath(resolved_path, strict=True)
    except FileNotFoundError:
        evaluated = ""
        parts = os.path.dirname(resolved_path).split("/")
        for end in range(len(parts), 0, -1):
            candidate = "/".join(parts[:end])
            if not is_in_data_directory(root, candidate):
                break
            try:
                fallback = os.path.realpath(candidate, strict=True)
            except OSError:
                continue
            break

    if fallback:
        if not is_in_data_directory(root, fallback):
            raise new_bad_path_resolution(p, fallback)
        return resolved_path

    if evaluated and is_in_data_directory(root, evaluated):
        return evaluated

    raise new_bad_path_resolution(p, resolved_path)


def parallel_safe_path(root: str, paths: Iterable[str]) -> list[str]:
    """Resolve many paths concurrently; raise the first resolution failure."""
    paths = list(paths)
    if not paths:
        return []
    with ThreadPoolExecutor() as pool:
        return list(pool.map(lambda item: safe_path(root, item), paths))