# serverfs

`serverfs` manages the data directory of a hosted server process. Every
operation on that directory goes through one root. The package:

- keeps paths inside the root;
- tracks disk use against a quota;
- builds and unpacks archives;
- keeps local backups.

It uses only the standard library.

## Installation

```
pip install serverfs
```

To install the test dependencies as well:

```
pip install "serverfs[test]"
```

## Sandboxed filesystem

```python
from serverfs.filesystem.filesystem import Filesystem
from serverfs.filesystem.errors import ErrorCode, FilesystemError, is_error_code

fs = Filesystem(
    "/var/lib/servers/abc",
    disk_limit=512 * 1024 * 1024,
    denylist=["*.secret"],
    disk_check_interval=150,
    uid=1000,
    gid=1000,
)

fs.write_file("config/server.properties", b"motd=hello\n")
fs.create_directory("plugins", "/")
fs.copy("config/server.properties")        # creates "server copy.properties"
fs.rename("plugins", "mods")

for entry in fs.list_directory("/"):
    print(entry.to_dict())

try:
    fs.write_file("../../etc/passwd", b"")
except FilesystemError as err:
    assert is_error_code(err, ErrorCode.PATH_RESOLUTION)
```

### Paths

- `safe_path` cleans a path and follows symlinks. It checks that the result
  lies inside the root. When it does not, it raises a `FilesystemError` with
  code `E_BADPATH`.
- A path that does not exist yet is checked against the nearest parent that
  does exist.
- `delete` does not follow a final symlink. Deleting a link removes the link
  and leaves its target alone.
- Deleting the root directory raises `PermissionError`.
- `is_ignored` raises an `E_DENYLIST` error for paths that match the
  gitignore-style denylist.

### Listing and copying

- `list_directory` returns `Stat` objects. Directories come first, then
  files, with names in descending order.
- Each `Stat` carries a MIME type detected from the file's leading bytes.
- `copy` picks the first free name from `name copy.ext`, `name copy 1.ext`,
  and so on. It treats `.tar.gz` as a single extension.

### Ownership, permissions and times

- `chown` applies `uid`/`gid` to a path and recursively to everything below
  it, skipping symlinks. A value of `-1` leaves that id unchanged.
- With `is_test=True`, `chown`, `chmod` and `chtimes` do nothing.

### Disk usage

- `disk_usage`, `has_space_available` and `has_space_for` read the usage from
  a cache.
- The cache is refreshed once `disk_check_interval` seconds have passed.
- With `allow_stale=True`, an expired value is returned at once and a fresh
  measurement runs in a background thread.
- An interval of `0` turns measurement off.
- A limit of `0` means the space is unlimited.
- Going over the limit raises a `FilesystemError` with code `E_NODISK`.

`FilesystemError` instances carry a `code` from the `ErrorCode` enum.
`is_error_code` and `is_filesystem_error` also look through an error's
`__cause__` chain.

## Archives

```python
from serverfs.filesystem.compress import (
    compress_files,
    decompress_file,
    iter_archive,
    space_available_for_decompression,
)

info = compress_files(fs, "/", ["config", "world"])   # archive-<timestamp>.tar.gz
space_available_for_decompression(fs, "/", "upload.tar.gz")
decompress_file(fs, "/", "upload.tar.gz")

for entry in iter_archive(fs.safe_path("upload.tar.gz")):
    print(entry.name, entry.size, oct(entry.mode))
```

`iter_archive` picks the archive format from the file name. It reads:

- `.zip`
- `.tar`
- `.tar.gz` and `.tgz`
- `.tar.bz2` and `.tbz2`
- `.tar.xz` and `.txz`

Any other name makes `decompress_file` and
`space_available_for_decompression` raise an `E_UNKNFMT` error.

Extraction handles archive members as follows:

- Members that would land outside the root are skipped.
- Members that match the denylist are skipped.
- Each extracted file keeps the mode and modification time stored in the
  archive.

`serverfs.filesystem.archive.Archive` writes gzip-compressed tar files on its
own. It takes either an explicit list of files or gitignore-style ignore
rules. An optional `write_limit` caps the write rate in bytes per second.

## Local backups

```python
from serverfs.backup.backup import LocalBackup, locate_local

backup = LocalBackup(uuid="backup-uuid", backup_directory="/var/lib/backups")
details = backup.generate("/var/lib/servers/abc", "logs/\n*.tmp")
print(details.to_request(True))

backup, info = locate_local("/var/lib/backups", "backup-uuid")
backup.restore(lambda name, stream, mode, atime, mtime: print(name, mode))
backup.remove()
```

Backups are stored as `<uuid>.tar.gz` in the backup directory. Their details
hold:

- a SHA-1 checksum;
- the archive size.

`restore` calls the callback once for every regular file in the archive.

## Power actions

`serverfs.power` provides:

- the `PowerAction` enum: `start`, `stop`, `restart` and `kill`;
- `is_valid_power_action`;
- the `ServerStateError` family of errors: `ServerIsRunningError`,
  `ServerSuspendedError`, `ServerInstallingError`, `ServerTransferringError`,
  `ServerRestoringError`, `CrashTooFrequentError` and
  `ServerDoesNotExistError`.

## What the package does not do

- It has no command-line program and no network service.
- It does not start, stop or watch server processes. `PowerAction` and the
  state errors only describe such actions.
- Backups are local only. Nothing uploads an archive to remote storage.
- Settings are not read from a configuration file. Every limit, interval and
  owner id is passed in by the caller.