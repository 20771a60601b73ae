"""Data types shared by the backup and restore services."""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import yaml


class JobStatus(str, Enum):
    """State of a restore job."""

    RUNNING = "Running"
    DONE = "Done"
    FAILED = "Failed"

    def __str__(self) -> str:
        return self.value


@dataclass
class TimeBounds:
    """A time range; ``from_time`` is inclusive and ``to_time`` exclusive."""

    from_time: datetime | None = None
    to_time: datetime | None = None

    def __post_init__(self) -> None:
        if (self.from_time is not None and self.to_time is not None
                and self.from_time > self.to_time):
            raise ValueError(
                f"invalid time bounds: from {self.from_time} is after to {self.to_time}")

    def contains(self, moment: datetime) -> bool:
        """Tell whether ``moment`` lies within the bounds."""
        if self.from_time is not None and moment < self.from_time:
            return False
        if self.to_time is not None and moment >= self.to_time:
            return False
        return True


def time_bounds_to(to_time: datetime) -> TimeBounds:
    """Bounds open at the start and ending before ``to_time``."""
    return TimeBounds(to_time=to_time)


def time_bounds_from(from_time: datetime | None) -> TimeBounds:
    """Bounds starting at ``from_time`` and open at the end."""
    return TimeBounds(from_time=from_time)


def _parse_time(value: Any, name: str) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str):
        try:
            moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError(f"invalid {name} time {value!r}") from exc
    else:
        raise ValueError(f"invalid {name} time {value!r}")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


_METADATA_KEYS = {
    "created": "created",
    "from_time": "from",
    "namespace": "namespace",
    "record_count": "record-count",
    "byte_count": "byte-count",
    "file_count": "file-count",
    "secondary_index_count": "secondary-index-count",
    "udf_count": "udf-count",
}


@dataclass
class BackupMetadata:
    """Facts about one namespace backup, stored next to its data."""

    created: datetime
    namespace: str = ""
    from_time: datetime | None = None
    record_count: int = 0
    byte_count: int = 0
    file_count: int = 0
    secondary_index_count: int = 0
    udf_count: int = 0

    def to_yaml(self) -> bytes:
        """Serialise to YAML bytes."""
        document: dict[str, Any] = {}
        for attr, key in _METADATA_KEYS.items():
            value = getattr(self, attr)
            if isinstance(value, datetime):
                value = value.isoformat()
            if value is not None:
                document[key] = value
        return yaml.safe_dump(document, sort_keys=False).encode()


def metadata_from_yaml(data: bytes | str) -> BackupMetadata:
    """Parse metadata written by :meth:`BackupMetadata.to_yaml`."""
    try:
        document = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        raise ValueError(f"invalid backup metadata: {exc}") from exc
    if not isinstance(document, dict):
        raise ValueError("invalid backup metadata: not a mapping")
    if "created" not in document:
        raise ValueError("invalid backup metadata: missing created time")
    values: dict[str, Any] = {}
    for attr, key in _METADATA_KEYS.items():
        if key not in document:
            continue
        value = document[key]
        if attr in ("created", "from_time"):
            value = _parse_time(value, key)
        elif attr != "namespace":
            value = int(value)
        else:
            value = str(value)
        values[attr] = value
    return BackupMetadata(**values)


@dataclass
class BackupDetails:
    """A backup's metadata together with where it lives."""

    metadata: BackupMetadata
    key: str = ""
    storage: Any = None

    @property
    def created(self) -> datetime:
        return self.metadata.created

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def record_count(self) -> int:
        return self.metadata.record_count


@dataclass
class BackupStats:
    """Progress counters of a running backup."""

    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    read_records: int = 0
    total_records: int = 0
    file_count: int = 0
    bytes_written: int = 0
    sindexes: int = 0
    udfs: int = 0

    def is_empty(self) -> bool:
        """True when nothing at all was backed up."""
        return self.read_records == 0 and self.sindexes == 0 and self.udfs == 0


@dataclass
class RestoreStats:
    """Progress counters of a running restore."""

    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    read_records: int = 0
    records_inserted: int = 0
    sindexes: int = 0
    udfs: int = 0
    records_fresher: int = 0
    records_skipped: int = 0
    records_existed: int = 0
    records_expired: int = 0
    total_bytes_read: int = 0


@dataclass
class RunningJob:
    """Progress and estimated completion of a running job."""

    start_time: datetime
    done_records: int
    total_records: int
    estimated_end_time: datetime | None
    percentage_done: int


@dataclass
class RestoreJobStatus:
    """Aggregated status of a restore job."""

    status: JobStatus
    read_records: int = 0
    inserted_records: int = 0
    index_count: int = 0
    udf_count: int = 0
    fresher_records: int = 0
    skipped_records: int = 0
    existed_records: int = 0
    expired_records: int = 0
    total_bytes: int = 0
    current_restore: RunningJob | None = None
    error: str = ""


@dataclass
class CurrentBackups:
    """Currently running full and incremental backups of a routine."""

    full: RunningJob | None = None
    incremental: RunningJob | None = None


@dataclass
class BackupState:
    """Times of the last successful full and incremental runs."""

    last_full_run: datetime | None = None
    last_incr_run: datetime | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def set_last_full_run(self, moment: datetime) -> None:
        with self._lock:
            self.last_full_run = moment

    def set_last_incr_run(self, moment: datetime) -> None:
        with self._lock:
            self.last_incr_run = moment

    def last_full_run_is_empty(self) -> bool:
        with self._lock:
            return self.last_full_run is None

    def last_run(self) -> datetime | None:
        """The later of the last full and last incremental run."""
        with self._lock:
            runs = [run for run in (self.last_full_run, self.last_incr_run) if run is not None]
        return max(runs, default=None)


@dataclass(eq=False)
class AerospikeCluster:
    """Connection settings of a database cluster; compared by identity."""

    cluster_label: str | None = None
    hosts: list[tuple[str, int]] = field(default_factory=list)
    max_parallel_scans: int | None = None


@dataclass
class BackupPolicy:
    """How a routine backs up; timeouts and delays are in milliseconds."""

    parallel: int | None = None
    file_limit: int | None = None
    records_per_second: int | None = None
    bandwidth: int | None = None
    total_timeout: int | None = None
    socket_timeout: int | None = None
    no_records: bool = False
    no_indexes: bool = False
    no_udfs: bool = False
    sealed: bool = False
    remove_full_backup: bool = False
    remove_incremental_backup: bool = False
    retry_delay: int = 60_000
    max_retries: int = 3
    compression_policy: Any = None
    encryption_policy: Any = None


@dataclass(eq=False)
class BackupRoutine:
    """A configured, scheduled backup of one cluster to one storage."""

    backup_policy: BackupPolicy = field(default_factory=BackupPolicy)
    source_cluster: AerospikeCluster | None = None
    storage: Any = None
    interval_cron: str = ""
    incr_interval_cron: str = ""
    namespaces: list[str] = field(default_factory=list)
    set_list: list[str] = field(default_factory=list)
    bin_list: list[str] = field(default_factory=list)
    secret_agent: Any = None


@dataclass
class RestoreRequest:
    """Restore the backup at ``backup_data_path`` in ``source_storage``."""

    destination_cluster: AerospikeCluster | None = None
    policy: Any = None
    source_storage: Any = None
    backup_data_path: str = ""
    secret_agent: Any = None


@dataclass
class RestoreTimestampRequest:
    """Restore a routine's state as of ``time``."""

    routine: str = ""
    time: datetime | None = None
    destination_cluster: AerospikeCluster | None = None
    policy: Any = None
    secret_agent: Any = None


class BackupHandler(Protocol):
    """A running backup."""

    def stats(self) -> BackupStats:
        """Current statistics of the backup."""

    def wait(self) -> None:
        """Block until done; raise if the backup failed."""


class RestoreHandler(Protocol):
    """A running restore."""

    def stats(self) -> RestoreStats:
        """Current statistics of the restore."""

    def wait(self) -> None:
        """Block until done; raise if the restore failed."""


class BackupListReader(Protocol):
    """Read access to the backups of a routine."""

    def full_backup_list(self, bounds: TimeBounds) -> list[BackupDetails]:
        """Full backups created within ``bounds``."""

    def incremental_backup_list(self, bounds: TimeBounds) -> list[BackupDetails]:
        """Incremental backups created within ``bounds``."""

    def read_cluster_configuration(self, path: str) -> bytes:
        """Backed up cluster configuration as a zip archive."""

    def find_last_full_backup(self, to_time: datetime) -> list[BackupDetails]:
        """The latest full backup before ``to_time``, one entry per namespace."""

    def find_incremental_backups_for_namespace(
        self, bounds: TimeBounds, namespace: str
    ) -> list[BackupDetails]:
        """Incremental backups of ``namespace`` within ``bounds``, oldest first."""


__all__ = [name for name in dir() if not name.startswith("_") and name not in {
    "annotations", "asdict", "dataclass", "field", "datetime", "timezone", "Enum",
    "Any", "Protocol", "threading", "yaml"}]