import io
import zipfile
from datetime import datetime, timedelta, timezone

import pytest

from backupservice.backend import (
    BackendsHolder,
    BackupBackend,
    BackupNotFoundError,
    backend_for_routine,
    latest_backup_before_time,
)
from backupservice.models import (
    BackupDetails,
    BackupMetadata,
    BackupPolicy,
    BackupRoutine,
    TimeBounds,
    time_bounds_to,
)
from backupservice.storage import LocalStorage, write_file

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def ms(n):
    return EPOCH + timedelta(milliseconds=n)


def make_backend(tmp_path, remove_full_backup):
    return BackupBackend(LocalStorage(str(tmp_path)), "routine/backup",
                         "routine/incremental", remove_full_backup)


def test_full_backup_remove_files(tmp_path):
    backend = make_backend(tmp_path, True)
    path = backend.full_backups_path + "/data/source-ns1/"
    backend.write_backup_metadata(path, BackupMetadata(created=ms(10), namespace="source-ns1"))

    backups = backend.full_backup_list(time_bounds_to(ms(1000)))
    assert len(backups) == 1
    assert backups[0].key == "routine/backup/data/source-ns1"
    assert backups[0].created == ms(10)


def test_full_backup_keep_files(tmp_path):
    backend = make_backend(tmp_path, False)
    for t in (10, 20, 30):
        path = f"{backend.full_backups_path}/{t}/data/source-ns1/"
        backend.write_backup_metadata(path, BackupMetadata(created=ms(t), namespace="source-ns1"))

    backups = backend.full_backup_list(time_bounds_to(ms(25)))
    assert len(backups) == 2
    assert sorted(b.key for b in backups) == [
        "routine/backup/10/data/source-ns1",
        "routine/backup/20/data/source-ns1",
    ]


def test_list_of_missing_folder_is_empty(tmp_path):
    backend = make_backend(tmp_path, False)
    assert backend.full_backup_list(TimeBounds()) == []
    assert backend.incremental_backup_list(TimeBounds()) == []


def test_bad_metadata_raises(tmp_path):
    backend = make_backend(tmp_path, False)
    write_file(backend.storage, "routine/backup/1/data/ns/metadata.yaml", b"- not a mapping")
    with pytest.raises(ValueError, match="error decoding backup metadata"):
        backend.full_backup_list(TimeBounds())


def test_latest_full_backup_before_time():
    backups = [BackupDetails(BackupMetadata(created=ms(t))) for t in (10, 20, 20, 30)]
    result = latest_backup_before_time(backups, ms(25))
    assert len(result) == 2
    assert result[0] == backups[1]
    assert all(b.created == ms(20) for b in result)


def test_latest_full_backup_before_time_not_found():
    backups = [BackupDetails(BackupMetadata(created=ms(t))) for t in (10, 20, 30)]
    assert latest_backup_before_time(backups, ms(5)) == []


def test_find_last_full_backup(tmp_path):
    backend = make_backend(tmp_path, False)
    for t in (10, 20):
        for ns in ("ns1", "ns2"):
            backend.write_backup_metadata(f"routine/backup/{t}/data/{ns}",
                                          BackupMetadata(created=ms(t), namespace=ns))
    result = backend.find_last_full_backup(ms(100))
    assert sorted(b.namespace for b in result) == ["ns1", "ns2"]
    assert all(b.created == ms(20) for b in result)


def test_find_last_full_backup_not_found(tmp_path):
    backend = make_backend(tmp_path, False)
    backend.write_backup_metadata("routine/backup/10/data/ns1",
                                  BackupMetadata(created=ms(10), namespace="ns1"))
    with pytest.raises(BackupNotFoundError):
        backend.find_last_full_backup(ms(5))


def test_find_incremental_backups_for_namespace_sorted(tmp_path):
    backend = make_backend(tmp_path, False)
    for t, ns in ((30, "ns1"), (10, "ns1"), (20, "ns2"), (20, "ns1")):
        backend.write_backup_metadata(f"routine/incremental/{t}/data/{ns}",
                                      BackupMetadata(created=ms(t), namespace=ns))
    result = backend.find_incremental_backups_for_namespace(TimeBounds(ms(15), ms(100)), "ns1")
    assert [b.created for b in result] == [ms(20), ms(30)]
    assert all(b.namespace == "ns1" for b in result)


def test_read_state(tmp_path):
    backend = make_backend(tmp_path, False)
    backend.write_backup_metadata("routine/backup/10/data/ns1",
                                  BackupMetadata(created=ms(10), namespace="ns1"))
    backend.write_backup_metadata("routine/incremental/20/data/ns1",
                                  BackupMetadata(created=ms(20), namespace="ns1"))
    state = backend.read_state()
    assert state.last_full_run == ms(10)
    assert state.last_incr_run == ms(20)
    assert state.last_run() == ms(20)


def test_read_state_empty(tmp_path):
    state = make_backend(tmp_path, False).read_state()
    assert state.last_full_run_is_empty()
    assert state.last_run() is None


def test_read_cluster_configuration(tmp_path):
    backend = make_backend(tmp_path, False)
    write_file(backend.storage, "routine/backup/1/configuration/aerospike_0.conf", b"first")
    write_file(backend.storage, "routine/backup/1/configuration/aerospike_1.conf", b"second")
    write_file(backend.storage, "routine/backup/1/configuration/notes.txt", b"ignored")
    data = backend.read_cluster_configuration("routine/backup/1/configuration")
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        assert archive.namelist() == ["aerospike_0.conf", "aerospike_1.conf"]
        assert archive.read("aerospike_0.conf") == b"first"
        assert archive.read("aerospike_1.conf") == b"second"


def test_read_cluster_configuration_none_found(tmp_path):
    backend = make_backend(tmp_path, False)
    write_file(backend.storage, "routine/backup/1/configuration/notes.txt", b"x")
    with pytest.raises(BackupNotFoundError):
        backend.read_cluster_configuration("routine/backup/1/configuration")


def test_read_cluster_configuration_missing_folder(tmp_path):
    backend = make_backend(tmp_path, False)
    with pytest.raises(FileNotFoundError):
        backend.read_cluster_configuration("routine/backup/1/configuration")


def test_full_backup_in_progress_flag(tmp_path):
    backend = make_backend(tmp_path, False)
    assert backend.full_backup_in_progress.acquire(blocking=False)
    assert not backend.full_backup_in_progress.acquire(blocking=False)
    backend.full_backup_in_progress.release()
    assert not backend.full_backup_in_progress.locked()


def test_backend_for_routine(tmp_path):
    routine = BackupRoutine(backup_policy=BackupPolicy(remove_full_backup=True),
                            storage=LocalStorage(str(tmp_path)))
    backend = backend_for_routine("daily", routine)
    assert backend.full_backups_path == "daily/backup"
    assert backend.incremental_backups_path == "daily/incremental"
    assert backend.remove_full_backup is True
    assert backend.storage is routine.storage


def test_backends_holder(tmp_path):
    holder = BackendsHolder()
    assert holder.get("a") is None
    routines = {"a": BackupRoutine(storage=LocalStorage(str(tmp_path))),
                "b": BackupRoutine(storage=LocalStorage(str(tmp_path)))}
    holder.init(routines)
    assert holder.get("a") is holder.reader("a")
    assert holder.get("a").full_backups_path == "a/backup"
    assert set(holder.all_readers()) == {"a", "b"}
    assert holder.reader("missing") is None

    holder.init({"c": BackupRoutine(storage=LocalStorage(str(tmp_path)))})
    assert set(holder.all_readers()) == {"c"}