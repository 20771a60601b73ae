"""Listing and reading of the backups of a routine."""

from __future__ import annotations

import io
import posixpath
import threading
import zipfile
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from backupservice import storage
from backupservice.models import (
    BackupDetails,
    BackupListReader,
    BackupMetadata,
    BackupRoutine,
    BackupState,
    TimeBounds,
    metadata_from_yaml,
    time_bounds_to,
)
from backupservice.paths import (
    CONFIG_EXT,
    FULL_BACKUP_DIRECTORY,
    INCREMENTAL_BACKUP_DIRECTORY,
    METADATA_FILE,
    backup_key,
    config_file_name,
)


class BackupNotFoundError(LookupError):
    """No backup matches the request."""


def latest_backup_before_time(backups: Iterable[BackupDetails],
                              upper_bound: datetime) -> list[BackupDetails]:
    """The backups sharing the latest creation time not after ``upper_bound``."""
    result: list[BackupDetails] = []
    for backup in backups:
        if backup.created > upper_bound:
            continue
        if not result or result[0].created < backup.created:
            result = [backup]
        elif backup.created == result[0].created:
            result.append(backup)
    return result


def _last_backup_time(backups: list[BackupDetails]) -> datetime | None:
    latest = latest_backup_before_time(backups, datetime.now(timezone.utc))
    return latest[0].created if latest else None


class BackupBackend:
    """Reads and writes backup metadata of one routine in its storage.

    ``full_backup_in_progress`` is a lock held while a full backup runs.
    """

    def __init__(self, storage: Any, full_backups_path: str, incremental_backups_path: str,
                 remove_full_backup: bool):
        self.storage = storage
        self.full_backups_path = full_backups_path
        self.incremental_backups_path = incremental_backups_path
        self.remove_full_backup = remove_full_backup
        self.full_backup_in_progress = threading.Lock()

    def read_state(self) -> BackupState:
        """Reconstruct last run times from the backups found in storage."""
        bounds = time_bounds_to(datetime.now(timezone.utc))
        try:
            full = self.full_backup_list(bounds)
        except Exception:
            full = []
        try:
            incremental = self.incremental_backup_list(bounds)
        except Exception:
            incremental = []
        return BackupState(last_full_run=_last_backup_time(full),
                           last_incr_run=_last_backup_time(incremental))

    def write_backup_metadata(self, path: str, metadata: BackupMetadata) -> None:
        """Store ``metadata`` in the backup folder ``path``."""
        storage.write_file(self.storage, posixpath.join(path, METADATA_FILE), metadata.to_yaml())

    def full_backup_list(self, bounds: TimeBounds) -> list[BackupDetails]:
        """Full backups created within ``bounds``."""
        return self._read_metadata_list(bounds, is_full_backup=True)

    def incremental_backup_list(self, bounds: TimeBounds) -> list[BackupDetails]:
        """Incremental backups created within ``bounds``."""
        return self._read_metadata_list(bounds, is_full_backup=False)

    def _read_metadata_list(self, bounds: TimeBounds, is_full_backup: bool) -> list[BackupDetails]:
        root = self.full_backups_path if is_full_backup else self.incremental_backups_path
        try:
            files = storage.read_files(self.storage, root, METADATA_FILE, bounds.from_time)
        except FileNotFoundError:
            return []

        no_timestamp = self.remove_full_backup and is_full_backup
        backups = []
        for content in files:
            try:
                metadata = metadata_from_yaml(content)
            except ValueError as exc:
                raise ValueError(f"error decoding backup metadata YAML: {exc}") from exc
            if bounds.contains(metadata.created):
                backups.append(BackupDetails(metadata=metadata,
                                             key=backup_key(root, metadata, no_timestamp),
                                             storage=self.storage))
        return backups

    def find_last_full_backup(self, to_time: datetime) -> list[BackupDetails]:
        """The latest full backup before ``to_time``, one entry per namespace."""
        full_backups = self.full_backup_list(time_bounds_to(to_time))
        latest = latest_backup_before_time(full_backups, to_time)
        if not latest:
            raise BackupNotFoundError(f"backup not found: {to_time}")
        return latest

    def find_incremental_backups_for_namespace(self, bounds: TimeBounds,
                                               namespace: str) -> list[BackupDetails]:
        """Incremental backups of ``namespace`` within ``bounds``, oldest first."""
        backups = [backup for backup in self.incremental_backup_list(bounds)
                   if backup.namespace == namespace]
        return sorted(backups, key=lambda backup: backup.created)

    def read_cluster_configuration(self, path: str) -> bytes:
        """The configuration files under ``path`` packed into a zip archive."""
        config_files = storage.read_files(self.storage, path, CONFIG_EXT, None)
        if not config_files:
            raise BackupNotFoundError(f"no configuration backups found for {path}")
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            for index, content in enumerate(config_files):
                archive.writestr(config_file_name(index), content)
        return buffer.getvalue()


def backend_for_routine(routine_name: str, routine: BackupRoutine) -> BackupBackend:
    """The backend of a configured routine."""
    return BackupBackend(
        storage=routine.storage,
        full_backups_path=posixpath.join(routine_name, FULL_BACKUP_DIRECTORY),
        incremental_backups_path=posixpath.join(routine_name, INCREMENTAL_BACKUP_DIRECTORY),
        remove_full_backup=routine.backup_policy.remove_full_backup,
    )


class BackendsHolder:
    """Backends by routine name, shared by API handlers and backup jobs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, BackupBackend] = {}

    def init(self, routines: Mapping[str, BackupRoutine]) -> None:
        """Replace all backends with new ones built from ``routines``."""
        data = {name: backend_for_routine(name, routine) for name, routine in routines.items()}
        with self._lock:
            self._data = data

    def reader(self, name: str) -> BackupListReader | None:
        """The backend of routine ``name`` as a reader, or None."""
        with self._lock:
            return self._data.get(name)

    def get(self, name: str) -> BackupBackend | None:
        """The backend of routine ``name``, or None."""
        with self._lock:
            return self._data.get(name)

    def all_readers(self) -> dict[str, BackupListReader]:
        """All backends by routine name."""
        with self._lock:
            return dict(self._data)