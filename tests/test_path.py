import os

import pytest

from serverfs.filesystem.errors import ErrorCode, FilesystemError, is_error_code
from serverfs.filesystem.path import (
    IgnoreRules,
    is_in_data_directory,
    parallel_safe_path,
    safe_path,
    unsafe_file_path,
)


@pytest.fixture
def base(tmp_path):
    base_dir = tmp_path.resolve()
    (base_dir / "server").mkdir()
    return base_dir


@pytest.fixture
def root(base):
    return str(base / "server")


@pytest.mark.parametrize(
    "requested, suffix",
    [
        ("test.txt", "/test.txt"),
        ("/test.txt", "/test.txt"),
        ("./test.txt", "/test.txt"),
        ("/foo/../test.txt", "/test.txt"),
        ("/foo/bar", "/foo/bar"),
        ("/foo/bar/", "/foo/bar"),
        ("/foo/bar/baz/quaz/../../ducks/testing.txt", "/foo/bar/ducks/testing.txt"),
    ],
)
def test_safe_path_returns_cleaned_path(root, requested, suffix):
    assert safe_path(root, requested) == root + suffix


@pytest.mark.parametrize("requested", ["/", ""])
def test_safe_path_root_access(root, requested):
    assert safe_path(root, requested) == root


@pytest.mark.parametrize("requested", ["../test.txt", "/../test.txt", "./foo/../../test.txt", ".."])
def test_safe_path_blocks_escape(root, requested):
    with pytest.raises(FilesystemError) as info:
        safe_path(root, requested)
    assert is_error_code(info.value, ErrorCode.PATH_RESOLUTION)


def test_safe_path_existing_file(root):
    with open(os.path.join(root, "real.txt"), "w") as handle:
        handle.write("data")
    assert safe_path(root, "real.txt") == root + "/real.txt"


@pytest.fixture
def symlinked(base, root):
    (base / "malicious.txt").write_text("external content")
    (base / "malicious_dir").mkdir()
    os.symlink(base / "malicious.txt", os.path.join(root, "symlinked.txt"))
    os.symlink(base / "malicious_dir", os.path.join(root, "external_dir"))
    return root


@pytest.mark.parametrize(
    "requested",
    ["symlinked.txt", "external_dir", "external_dir/foo.txt", "external_dir/foo/bar/my_dir"],
)
def test_safe_path_blocks_symlinks_outside_root(symlinked, requested):
    with pytest.raises(FilesystemError) as info:
        safe_path(symlinked, requested)
    assert is_error_code(info.value, ErrorCode.PATH_RESOLUTION)


def test_safe_path_allows_symlink_inside_root(root):
    target = os.path.join(root, "inner.txt")
    with open(target, "w") as handle:
        handle.write("x")
    os.symlink(target, os.path.join(root, "link.txt"))
    assert safe_path(root, "link.txt") == target


def test_unsafe_file_path_trims_root_prefix(root):
    assert unsafe_file_path(root, root + "/foo") == root + "/foo"
    assert unsafe_file_path(root, "a/../../b") == os.path.dirname(root) + "/b"


def test_is_in_data_directory(root):
    assert is_in_data_directory(root, root)
    assert is_in_data_directory(root, root + "/")
    assert is_in_data_directory(root, root + "/a/b")
    assert not is_in_data_directory(root, root + "2")
    assert not is_in_data_directory(root, os.path.dirname(root))
    assert not is_in_data_directory(root, "")


def test_parallel_safe_path_keeps_order(root):
    result = parallel_safe_path(root, ["b.txt", "a/c.txt", "/d"])
    assert result == [root + "/b.txt", root + "/a/c.txt", root + "/d"]


def test_parallel_safe_path_raises_on_escape(root):
    with pytest.raises(FilesystemError) as info:
        parallel_safe_path(root, ["ok.txt", "../bad.txt"])
    assert is_error_code(info.value, ErrorCode.PATH_RESOLUTION)


def test_parallel_safe_path_empty(root):
    assert parallel_safe_path(root, []) == []


def test_ignore_rules_wildcard_extension():
    rules = IgnoreRules(["*.log"])
    assert rules.matches("/srv/data/app.log")
    assert not rules.matches("/srv/data/app.txt")


def test_ignore_rules_negation():
    rules = IgnoreRules(["*.log", "!keep.log"])
    assert not rules.matches("a/keep.log")
    assert rules.matches("a/other.log")


def test_ignore_rules_directory_pattern():
    rules = IgnoreRules(["cache/"])
    assert rules.matches("a/cache/x")
    assert not rules.matches("a/cachefile")


def test_ignore_rules_anchored_pattern():
    rules = IgnoreRules(["/config.yml"])
    assert rules.matches("config.yml")
    assert rules.matches("/config.yml")
    assert not rules.matches("sub/config.yml")


def test_ignore_rules_comments_and_blanks():
    rules = IgnoreRules(["# comment", "", "   "])
    assert not rules.matches("anything")
    assert not IgnoreRules([]).matches("anything")


def test_ignore_rules_double_star():
    rules = IgnoreRules(["logs/**"])
    assert rules.matches("logs/a/b.txt")
    assert not rules.matches("other/a.txt")