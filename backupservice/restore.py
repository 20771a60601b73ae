"""Restoring backups, by path or by point in time, and retrieving configuration."""

from __future__ import annotations

import logging
import posixpath
import threading
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from backupservice import storage
from backupservice.backend import BackendsHolder
from backupservice.client_manager import ClientManager
from backupservice.jobs import RestoreJobsHolder
from backupservice.models import (
    BackupDetails,
    BackupListReader,
    BackupRoutine,
    RestoreHandler,
    RestoreJobStatus,
    RestoreRequest,
    RestoreTimestampRequest,
    TimeBounds,
    metadata_from_yaml,
)
from backupservice.paths import CONFIGURATION_BACKUP_DIRECTORY, METADATA_FILE
from backupservice.util import parse_s3_path

logger = logging.getLogger(__name__)

_MIN_TIME = datetime.min.replace(tzinfo=timezone.utc)


class BackendNotFoundError(LookupError):
    """No backend is configured for the requested routine."""


def calculate_configuration_backup_path(backup_key: str) -> str:
    """Folder of the cluster configuration saved with the backup at ``backup_key``."""
    _, path = parse_s3_path(backup_key)
    base = posixpath.dirname(posixpath.dirname(path))
    return posixpath.join(base, CONFIGURATION_BACKUP_DIRECTORY)


def records_in_backup(request: RestoreRequest) -> int:
    """Number of records in the backup a request points at, from its metadata."""
    content = storage.read_file(request.source_storage,
                                posixpath.join(request.backup_data_path, METADATA_FILE))
    return metadata_from_yaml(content).record_count


class RestoreManager:
    """Starts restore jobs in the background and reports on them.

    ``restore_service`` has a ``run(client, request)`` method returning a
    :class:`RestoreHandler`.
    """

    def __init__(self, backends: BackendsHolder, routines: Mapping[str, BackupRoutine],
                 restore_service: Any, client_manager: ClientManager,
                 jobs: RestoreJobsHolder):
        self._backends = backends
        self._routines = routines
        self._restore_service = restore_service
        self._client_manager = client_manager
        self._jobs = jobs

    def restore(self, request: RestoreRequest) -> int:
        """Start restoring the backup at the request's path; return the job id."""
        job_id = self._jobs.new_job(request.backup_data_path)
        try:
            total_records = records_in_backup(request)
        except Exception as exc:
            logger.info("Could not read backup metadata: %s", exc)
            total_records = 0
        threading.Thread(target=self._restore_sync, args=(request, job_id, total_records),
                         daemon=True).start()
        return job_id

    def _restore_sync(self, request: RestoreRequest, job_id: int, total_records: int) -> None:
        try:
            client = self._client_manager.get_client(request.destination_cluster)
        except Exception as exc:
            logger.error("Failed to restore by path, cluster %s: %s",
                         request.destination_cluster, exc)
            self._jobs.set_failed(job_id, exc)
            return
        try:
            try:
                handler = self._restore_service.run(client, request)
            except Exception as exc:
                self._jobs.set_failed(
                    job_id, RuntimeError(f"failed to start restore operation: {exc}"))
                return
            self._jobs.add_total_records(job_id, total_records)
            self._jobs.add_handler(job_id, handler)
            try:
                handler.wait()
            except Exception as exc:
                self._jobs.set_failed(job_id, RuntimeError(f"failed restore operation: {exc}"))
                return
            self._jobs.set_done(job_id)
        finally:
            self._client_manager.close(client)

    def restore_by_time(self, request: RestoreTimestampRequest) -> int:
        """Start restoring a routine as of the request's time; return the job id.

        Raises BackendNotFoundError for an unknown routine and
        BackupNotFoundError when there is no full backup before the time.
        """
        reader = self._backends.reader(request.routine)
        if reader is None:
            raise BackendNotFoundError(f"backend not found: routine {request.routine}")
        to_time = request.time if request.time is not None else _MIN_TIME
        full_backups = reader.find_last_full_backup(to_time)
        job_id = self._jobs.new_job(request.routine)
        threading.Thread(target=self._restore_by_time_sync,
                         args=(reader, request, to_time, job_id, full_backups),
                         daemon=True).start()
        return job_id

    def _restore_by_time_sync(self, reader: BackupListReader, request: RestoreTimestampRequest,
                              to_time: datetime, job_id: int,
                              full_backups: list[BackupDetails]) -> None:
        try:
            client = self._client_manager.get_client(request.destination_cluster)
        except Exception as exc:
            logger.error("Failed to restore by timestamp, cluster %s: %s",
                         request.destination_cluster, exc)
            self._jobs.set_failed(job_id, exc)
            return

        errors: list[Exception] = []
        errors_lock = threading.Lock()

        def restore_one(full_backup: BackupDetails) -> None:
            try:
                self._restore_namespace(client, reader, request, to_time, job_id, full_backup)
            except Exception as exc:
                with errors_lock:
                    errors.append(RuntimeError(
                        f"failed to restore routine {request.routine}, namespace "
                        f"{full_backup.namespace} by timestamp: {exc}"))

        try:
            workers = [threading.Thread(target=restore_one, args=(backup,), daemon=True)
                       for backup in full_backups]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join()
        finally:
            self._client_manager.close(client)

        if len(errors) == 1:
            self._jobs.set_failed(job_id, errors[0])
        elif errors:
            self._jobs.set_failed(job_id, RuntimeError("; ".join(str(e) for e in errors)))
        else:
            self._jobs.set_done(job_id)

    def _restore_namespace(self, client: Any, reader: BackupListReader,
                           request: RestoreTimestampRequest, to_time: datetime, job_id: int,
                           full_backup: BackupDetails) -> None:
        bounds = TimeBounds(from_time=full_backup.created, to_time=to_time)
        try:
            incremental = reader.find_incremental_backups_for_namespace(
                bounds, full_backup.namespace)
        except Exception as exc:
            raise RuntimeError(f"could not find incremental backups for namespace "
                               f"{full_backup.namespace}: {exc}") from exc

        all_backups = [full_backup, *incremental]
        for backup in all_backups:
            self._jobs.add_total_records(job_id, backup.record_count)

        for backup in all_backups:
            handler = self._restore_from_path(client, request, backup.key)
            self._jobs.add_handler(job_id, handler)
            handler.wait()

    def _restore_from_path(self, client: Any, request: RestoreTimestampRequest,
                           backup_path: str) -> RestoreHandler:
        routine = self._routines[request.routine]
        restore_request = RestoreRequest(
            destination_cluster=request.destination_cluster,
            policy=request.policy,
            source_storage=routine.storage,
            backup_data_path=backup_path,
            secret_agent=request.secret_agent,
        )
        try:
            return self._restore_service.run(client, restore_request)
        except Exception as exc:
            raise RuntimeError(
                f"could not start restore from backup at {backup_path}: {exc}") from exc

    def job_status(self, job_id: int) -> RestoreJobStatus:
        """Status of a job; KeyError if there is no such job."""
        return self._jobs.status(job_id)

    def retrieve_configuration(self, routine: str, to_time: datetime) -> bytes:
        """The cluster configuration saved with the last full backup before ``to_time``."""
        reader = self._backends.reader(routine)
        if reader is None:
            raise BackendNotFoundError(f"backend not found: routine {routine}")
        full_backups = reader.find_last_full_backup(to_time)
        # All namespaces of one full backup share the same configuration.
        config_path = calculate_configuration_backup_path(full_backups[0].key)
        return reader.read_cluster_configuration(config_path)