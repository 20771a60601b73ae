from datetime import datetime, timedelta, timezone

from backupservice.models import BackupMetadata
from backupservice.paths import (
    backup_key,
    config_file_name,
    configuration_file,
    format_time,
    full_path,
    incremental_path,
    incremental_path_for_namespace,
)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def ms(n):
    return EPOCH + timedelta(milliseconds=n)


def test_format_time_is_unix_millis():
    assert format_time(ms(1234)) == "1234"
    assert format_time(EPOCH) == "0"


def test_format_time_naive_treated_as_utc():
    assert format_time(datetime(1970, 1, 1, 0, 0, 1)) == format_time(ms(1000))


def test_full_path_without_timestamp():
    assert full_path("routine/backup", True, "ns1", ms(1234)) == "routine/backup/data/ns1"


def test_full_path_with_timestamp():
    assert full_path("routine/backup", False, "ns1", ms(1234)) == "routine/backup/1234/data/ns1"


def test_incremental_paths():
    assert incremental_path("routine/incremental", ms(77)) == "routine/incremental/77"
    result = incremental_path_for_namespace("routine/incremental", "ns1", ms(77))
    assert result == "routine/incremental/77/data/ns1"
    assert result.startswith(incremental_path("routine/incremental", ms(77)))


def test_config_file_name():
    assert config_file_name(0) == "aerospike_0.conf"
    assert config_file_name(3) == "aerospike_3.conf"


def test_configuration_file():
    assert (configuration_file("routine/backup", False, ms(1234), 0)
            == "routine/backup/1234/configuration/aerospike_0.conf")
    assert (configuration_file("routine/backup", True, ms(1234), 2)
            == "routine/backup/configuration/aerospike_2.conf")


def test_backup_key():
    metadata = BackupMetadata(created=ms(50), namespace="ns1")
    assert backup_key("routine/backup", metadata, True) == "routine/backup/data/ns1"
    assert backup_key("routine/backup", metadata, False) == "routine/backup/50/data/ns1"


def test_backup_key_matches_full_path():
    metadata = BackupMetadata(created=ms(999), namespace="ns2")
    for remove in (True, False):
        assert (backup_key("r/backup", metadata, remove)
                == full_path("r/backup", remove, "ns2", ms(999)))