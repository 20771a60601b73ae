from datetime import datetime, timezone

import pytest

from backupservice.storage import (
    LocalStorage,
    LocalStorageAccessor,
    NameValidator,
    delete_folder,
    get_accessor,
    read_file,
    read_files,
    register_accessor,
    write_file,
)


def test_name_validator_accepts_suffix():
    NameValidator(".yaml").run("a/b/metadata.yaml")
    assert NameValidator("").suffix == ""


def test_name_validator_rejects():
    with pytest.raises(ValueError, match="skipped by filter '.conf'"):
        NameValidator(".conf").run("a/metadata.yaml")


def test_write_read_round_trip(tmp_path):
    storage = LocalStorage(str(tmp_path))
    write_file(storage, "routine/backup/metadata.yaml", b"content")
    assert read_file(storage, "routine/backup/metadata.yaml") == b"content"
    assert (tmp_path / "routine" / "backup" / "metadata.yaml").read_bytes() == b"content"


def test_leading_slash_stays_inside_storage(tmp_path):
    storage = LocalStorage(str(tmp_path))
    write_file(storage, "/inner/file.conf", b"x")
    assert (tmp_path / "inner" / "file.conf").read_bytes() == b"x"


def test_read_file_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_file(LocalStorage(str(tmp_path)), "missing.yaml")


def test_read_files_filters_nested(tmp_path):
    storage = LocalStorage(str(tmp_path))
    write_file(storage, "r/10/data/ns/metadata.yaml", b"one")
    write_file(storage, "r/20/data/ns/metadata.yaml", b"two")
    write_file(storage, "r/20/data/ns/backup.asb", b"data")
    assert read_files(storage, "r", "metadata.yaml", None) == [b"one", b"two"]


def test_read_files_without_filter(tmp_path):
    storage = LocalStorage(str(tmp_path))
    write_file(storage, "r/a.conf", b"a")
    write_file(storage, "r/b.asb", b"b")
    assert sorted(read_files(storage, "r", "", datetime(2024, 1, 1, tzinfo=timezone.utc))) == [b"a", b"b"]


def test_read_files_missing_directory(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_files(LocalStorage(str(tmp_path)), "nothing", ".yaml", None)


def test_list_files_returns_keys(tmp_path):
    storage = LocalStorage(str(tmp_path))
    write_file(storage, "dir/x.conf", b"1")
    write_file(storage, "dir/y.yaml", b"2")
    keys = LocalStorageAccessor().list_files(storage, "dir", NameValidator(".conf"), None)
    assert keys == ["dir/x.conf"]


def test_delete_folder(tmp_path):
    storage = LocalStorage(str(tmp_path))
    write_file(storage, "r/incremental/1/data/ns/f.asb", b"x")
    delete_folder(storage, "r/incremental")
    assert not (tmp_path / "r" / "incremental").exists()
    assert (tmp_path / "r").exists()


def test_delete_missing_folder_is_quiet(tmp_path):
    storage = LocalStorage(str(tmp_path))
    delete_folder(storage, "absent")
    assert list(tmp_path.iterdir()) == []


def test_get_accessor_local(tmp_path):
    storage = LocalStorage(str(tmp_path))
    accessor = get_accessor(storage)
    accessor.write(storage, "f.conf", b"x")
    assert accessor.read(storage, "f.conf") == b"x"
    assert (tmp_path / "f.conf").read_bytes() == b"x"


def test_get_accessor_unsupported():
    with pytest.raises(TypeError, match="unsupported storage type"):
        get_accessor(object())


def test_register_accessor():
    class Memory:
        pass

    class MemoryAccessor:
        def __init__(self):
            self.files = {}

        def supports(self, storage):
            return isinstance(storage, Memory)

        def list_files(self, storage, path, validator, start_scan_from):
            return sorted(self.files)

        def read(self, storage, path):
            return self.files[path]

        def write(self, storage, path, content):
            self.files[path] = content

        def remove(self, storage, path):
            self.files.pop(path, None)

    accessor = MemoryAccessor()
    register_accessor(accessor)
    storage = Memory()
    write_file(storage, "k", b"v")
    assert get_accessor(storage) is accessor
    assert read_file(storage, "k") == b"v"