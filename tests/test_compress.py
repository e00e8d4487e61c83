import io
import os
import tarfile
import zipfile

import pytest

from serverfs.filesystem.compress import (
    compress_files,
    decompress_file,
    iter_archive,
    space_available_for_decompression,
)
from serverfs.filesystem.errors import ErrorCode, FilesystemError, is_error_code
from serverfs.filesystem.filesystem import Filesystem

TREE = {
    "test/outside.txt": b"outside content",
    "test/inside/finside.txt": b"finside content",
}


@pytest.fixture
def root(tmp_path):
    path = os.path.realpath(tmp_path / "server")
    os.mkdir(path)
    return path


@pytest.fixture
def fs(root):
    return Filesystem(root, disk_check_interval=150, is_test=True)


def _read(fs, p):
    handle, _ = fs.file(p)
    with handle:
        return handle.read()


def _names(fs, p):
    return {st.name for st in fs.list_directory(p)}


def _write_tar(path, members, mode="w", dirs=("test", "test/inside")):
    with tarfile.open(path, mode) as archive:
        for name in dirs:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            archive.addfile(info)
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(data))


def _write_zip(path, members):
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("test/", "")
        archive.writestr("test/inside/", "")
        for name, data in members.items():
            archive.writestr(name, data)


def _make_archive(root, ext):
    path = os.path.join(root, f"test.{ext}")
    if ext == "zip":
        _write_zip(path, TREE)
    else:
        mode = {"tar": "w", "tar.gz": "w:gz", "tar.bz2": "w:bz2"}[ext]
        _write_tar(path, TREE, mode)
    return path


@pytest.mark.parametrize("ext", ["zip", "tar", "tar.gz", "tar.bz2"])
def test_decompress_file(fs, root, ext):
    _make_archive(root, ext)

    decompress_file(fs, "/", f"test.{ext}")

    assert _names(fs, "test") == {"inside", "outside.txt"}
    assert fs.stat("test/inside").is_dir()
    assert _read(fs, "test/outside.txt") == b"outside content"
    assert _read(fs, "test/inside/finside.txt") == b"finside content"


def test_iter_archive_lists_members(root):
    path = _make_archive(root, "tar")
    entries = {entry.name: entry for entry in iter_archive(path)}
    assert set(entries) == {"test", "test/inside", "test/outside.txt", "test/inside/finside.txt"}
    assert entries["test/inside"].is_dir is True
    assert entries["test/outside.txt"].size == len(TREE["test/outside.txt"])


def test_iter_archive_rejects_unknown_format(root):
    with pytest.raises(ValueError) as info:
        iter_archive(os.path.join(root, "notes.txt"))
    assert str(info.value).startswith("format ")


def test_decompress_unknown_format(fs, root):
    with open(os.path.join(root, "notes.txt"), "wb") as handle:
        handle.write(b"plain")
    with pytest.raises(FilesystemError) as info:
        decompress_file(fs, "/", "notes.txt")
    assert info.value.code is ErrorCode.UNKNOWN_ARCHIVE
    assert str(info.value) == "filesystem: unknown archive format"


def test_decompress_missing_archive(fs):
    with pytest.raises(FileNotFoundError):
        decompress_file(fs, "/", "missing.zip")


def test_decompress_skips_entries_outside_root(fs, root):
    path = os.path.join(root, "slip.tar")
    _write_tar(path, {"../escape.txt": b"bad", "ok.txt": b"good"}, dirs=())

    decompress_file(fs, "/", "slip.tar")

    assert _names(fs, "/") == {"slip.tar", "ok.txt"}
    assert _read(fs, "ok.txt") == b"good"
    assert not os.path.exists(os.path.join(os.path.dirname(root), "escape.txt"))


def test_decompress_skips_denylisted_files(root):
    fs = Filesystem(root, denylist=["*.jar"], disk_check_interval=150, is_test=True)
    path = os.path.join(root, "bundle.zip")
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("server.jar", b"binary")
        archive.writestr("readme.txt", b"text")

    decompress_file(fs, "/", "bundle.zip")

    assert _names(fs, "/") == {"bundle.zip", "readme.txt"}
    assert _read(fs, "readme.txt") == b"text"


def test_space_available_for_decompression(fs, root):
    _make_archive(root, "tar")

    fs.disk.set_disk_limit(fs.directory_size("/") + 5)
    with pytest.raises(FilesystemError) as info:
        space_available_for_decompression(fs, "/", "test.tar")
    assert is_error_code(info.value, ErrorCode.DISK_SPACE)

    fs.disk.set_disk_limit(10 * 1024 * 1024)
    assert space_available_for_decompression(fs, "/", "test.tar") is None


def test_space_check_reports_unknown_format(fs, root):
    with open(os.path.join(root, "data.bin"), "wb") as handle:
        handle.write(b"\x00\x01")
    fs.disk.set_disk_limit(1024)
    with pytest.raises(FilesystemError) as info:
        space_available_for_decompression(fs, "/", "data.bin")
    assert info.value.code is ErrorCode.UNKNOWN_ARCHIVE


def test_compress_files_only_includes_selected(fs, root):
    os.makedirs(os.path.join(root, "sub"))
    for name, data in {"a.txt": b"a", "b.txt": b"b", "sub/c.txt": b"c"}.items():
        with open(os.path.join(root, name), "wb") as handle:
            handle.write(data)

    info = compress_files(fs, "/", ["a.txt", "sub"])

    archives = [name for name in os.listdir(root) if name.startswith("archive-")]
    assert len(archives) == 1
    assert archives[0].endswith(".tar.gz")
    assert ":" not in archives[0]
    path = os.path.join(root, archives[0])
    assert os.path.getsize(path) == info.st_size
    with tarfile.open(path, "r:gz") as archive:
        assert set(archive.getnames()) == {"a.txt", "sub/c.txt"}
    assert fs.cached_usage() == info.st_size