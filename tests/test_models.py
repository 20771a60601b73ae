from datetime import datetime, timedelta, timezone

import pytest

from backupservice.models import (
    BackupDetails,
    BackupMetadata,
    BackupState,
    BackupStats,
    TimeBounds,
    metadata_from_yaml,
    time_bounds_from,
    time_bounds_to,
)


def ms(value):
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def test_bounds_from_inclusive_to_exclusive():
    bounds = TimeBounds(ms(10), ms(20))
    assert bounds.contains(ms(10))
    assert bounds.contains(ms(19))
    assert not bounds.contains(ms(20))
    assert not bounds.contains(ms(9))


def test_bounds_inverted_raises():
    with pytest.raises(ValueError):
        TimeBounds(ms(20), ms(10))


def test_bounds_to_and_from():
    assert time_bounds_to(ms(25)).contains(ms(20))
    assert not time_bounds_to(ms(25)).contains(ms(30))
    assert time_bounds_from(ms(25)).contains(ms(30))
    assert not time_bounds_from(ms(25)).contains(ms(20))
    assert time_bounds_from(None).contains(ms(0))


def test_metadata_round_trip():
    metadata = BackupMetadata(
        created=ms(10), namespace="source-ns1", record_count=7, byte_count=1024,
        file_count=2, secondary_index_count=1, udf_count=3,
    )
    assert metadata_from_yaml(metadata.to_yaml()) == metadata


def test_metadata_round_trip_with_from_time():
    metadata = BackupMetadata(created=ms(50), from_time=ms(20), namespace="ns")
    restored = metadata_from_yaml(metadata.to_yaml())
    assert restored.from_time == ms(20)
    assert restored.created == ms(50)


@pytest.mark.parametrize("data", [b"[1, 2", b"- a\n- b\n", b"namespace: ns\n"])
def test_metadata_invalid(data):
    with pytest.raises(ValueError):
        metadata_from_yaml(data)


def test_backup_details_delegates():
    details = BackupDetails(BackupMetadata(created=ms(5), namespace="ns1", record_count=4), key="k")
    assert details.created == ms(5)
    assert details.namespace == "ns1"
    assert details.record_count == 4


def test_backup_stats_is_empty():
    assert BackupStats().is_empty()
    assert not BackupStats(read_records=1).is_empty()
    assert not BackupStats(udfs=1).is_empty()


def test_backup_state_last_run():
    state = BackupState()
    assert state.last_full_run_is_empty()
    assert state.last_run() is None
    now = datetime.now(timezone.utc)
    state.set_last_full_run(now)
    assert not state.last_full_run_is_empty()
    assert state.last_run() == now
    state.set_last_incr_run(now + timedelta(minutes=1))
    assert state.last_run() == now + timedelta(minutes=1)