"""Backup logic of a single routine: full and incremental runs."""

from __future__ import annotations

import copy
import logging
import posixpath
import threading
import time
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from backupservice import metrics, storage
from backupservice.backend import BackupBackend
from backupservice.client_manager import BackupClient, ClientManager
from backupservice.estimates import current_backup_status
from backupservice.models import (
    BackupHandler,
    BackupMetadata,
    BackupRoutine,
    CurrentBackups,
    TimeBounds,
)
from backupservice.paths import (
    configuration_file,
    full_path,
    incremental_path,
    incremental_path_for_namespace,
)
from backupservice.retry import RetryService

logger = logging.getLogger(__name__)

NAMESPACE_INFO = "namespaces"
DEFAULT_RETRY_DELAY_MS = 60_000
DEFAULT_MAX_RETRIES = 3


def namespaces_to_backup(namespaces: Sequence[str], client: Any) -> list[str]:
    """The configured namespaces, or every namespace of the cluster if none are.

    ``client`` is a database client whose ``info(command)`` returns the
    answer of a node to an info command.
    """
    if namespaces:
        return list(namespaces)
    try:
        answer = client.info(NAMESPACE_INFO)
    except Exception as exc:
        raise RuntimeError(f"failed to get cluster info: {exc}") from exc
    return answer.split(";")


def _cluster_configuration(client: Any) -> list[str]:
    """Configuration text of each active node; empty if it cannot be read."""
    try:
        return [str(conf) for conf in client.cluster_configuration()]
    except Exception as exc:
        logger.error("Error reading configuration: %s", exc)
        return []


def _without_metadata(policy: Any) -> Any:
    """A copy of ``policy`` that skips indexes and UDFs."""
    result = copy.copy(policy)
    result.no_indexes = True
    result.no_udfs = True
    return result


def _elapsed_millis(start: float) -> float:
    return (time.monotonic() - start) * 1000


class BackupRoutineHandler:
    """Runs the full and incremental backups of one routine.

    ``backup_service`` has a ``backup_run(routine, policy, client, storage,
    secret_agent, bounds, namespace, path)`` method returning a
    :class:`BackupHandler`.
    """

    def __init__(self, routine_name: str, routine: BackupRoutine, backend: BackupBackend,
                 backup_service: Any, client_manager: ClientManager):
        self.routine_name = routine_name
        self.routine = routine
        self.backend = backend
        self.full_policy = routine.backup_policy
        # incremental backups do not carry indexes and UDFs
        self.incr_policy = _without_metadata(routine.backup_policy)
        self.namespaces = list(routine.namespaces or [])
        self.storage = routine.storage
        self.secret_agent = routine.secret_agent
        self.state = backend.read_state()
        self._backup_service = backup_service
        self._client_manager = client_manager
        self._retry = RetryService(routine_name)
        self._lock = threading.Lock()
        self._full_handlers: dict[str, BackupHandler] = {}
        self._incr_handlers: dict[str, BackupHandler] = {}

    @property
    def _sealed(self) -> bool:
        return bool(getattr(self.full_policy, "sealed", False))

    def _retry_delay_seconds(self) -> float:
        delay = getattr(self.full_policy, "retry_delay", None)
        return (DEFAULT_RETRY_DELAY_MS if delay is None else delay) / 1000

    def _max_retries(self) -> int:
        retries = getattr(self.full_policy, "max_retries", None)
        return DEFAULT_MAX_RETRIES if retries is None else retries

    def run_full_backup(self, now: datetime) -> None:
        """Back up every namespace, retrying on failure as the policy says."""
        self._retry.retry(lambda: self._run_full_backup_internal(now),
                          self._retry_delay_seconds(), self._max_retries())

    def _run_full_backup_internal(self, now: datetime) -> None:
        in_progress = self.backend.full_backup_in_progress
        if not in_progress.acquire(blocking=False):
            logger.info("[%s] Full backup is currently in progress, skipping full backup",
                        self.routine_name)
            return
        try:
            client = self._client_manager.get_client(self.routine.source_cluster)
            try:
                self._start_full_backups(now, client)
                self._wait_for_full_backups(now)
                metrics.backup_counter.inc()
                self.state.set_last_full_run(now)
                if getattr(self.full_policy, "remove_incremental_backup", False):
                    self._delete_folder(self.backend.incremental_backups_path)
                self._write_cluster_configuration(client.aerospike_client, now)
            finally:
                self._client_manager.close(client)
                with self._lock:
                    self._full_handlers.clear()
        finally:
            in_progress.release()

    def _start_full_backups(self, upper_bound: datetime, client: BackupClient) -> None:
        with self._lock:
            self._full_handlers.clear()
        bounds = TimeBounds(from_time=None, to_time=upper_bound if self._sealed else None)
        for namespace in namespaces_to_backup(self.namespaces, client.aerospike_client):
            folder = full_path(self.backend.full_backups_path, self.backend.remove_full_backup,
                               namespace, upper_bound)
            try:
                handler = self._backup_service.backup_run(
                    self.routine, self.full_policy, client, self.storage, self.secret_agent,
                    bounds, namespace, folder)
            except Exception as exc:
                metrics.backup_failure_counter.inc()
                raise RuntimeError(f"could not start backup of namespace {namespace}, "
                                   f"routine {self.routine_name}: {exc}") from exc
            with self._lock:
                self._full_handlers[namespace] = handler

    def _wait_for_full_backups(self, backup_time: datetime) -> None:
        start = time.monotonic()
        with self._lock:
            handlers = list(self._full_handlers.items())
        for namespace, handler in handlers:
            try:
                handler.wait()
            except Exception as exc:
                metrics.backup_failure_counter.inc()
                raise RuntimeError(f"error during backup namespace {namespace}, "
                                   f"routine {self.routine_name}: {exc}") from exc
            folder = full_path(self.backend.full_backups_path, self.backend.remove_full_backup,
                               namespace, backup_time)
            self._write_backup_metadata(handler.stats(), backup_time, namespace, folder)
        metrics.backup_duration_gauge.set(_elapsed_millis(start))

    def _write_cluster_configuration(self, client: Any, now: datetime) -> None:
        configurations = _cluster_configuration(client)
        if not configurations:
            logger.warning("[%s] Could not read aerospike configuration", self.routine_name)
            return
        for index, conf in enumerate(configurations):
            path = configuration_file(self.backend.full_backups_path,
                                      self.backend.remove_full_backup, now, index)
            try:
                storage.write_file(self.storage, path, conf.encode())
            except Exception as exc:
                logger.error("[%s] Failed to write cluster configuration backup: %s",
                             self.routine_name, exc)

    def _write_backup_metadata(self, stats: Any, created: datetime, namespace: str,
                               folder: str) -> None:
        metadata = BackupMetadata(
            created=created,
            namespace=namespace,
            record_count=stats.read_records,
            file_count=stats.file_count,
            byte_count=stats.bytes_written,
            secondary_index_count=stats.sindexes,
            udf_count=stats.udfs,
        )
        try:
            self.backend.write_backup_metadata(folder, metadata)
        except Exception as exc:
            logger.error("[%s] Could not write backup metadata to %s: %s",
                         self.routine_name, folder, exc)
            raise

    def _delete_folder(self, path: str) -> None:
        try:
            storage.delete_folder(self.storage, path)
        except Exception as exc:
            logger.error("[%s] Could not delete folder %s: %s", self.routine_name, path, exc)

    def run_incremental_backup(self, now: datetime) -> None:
        """Back up changes since the last run, unless a full backup is due or running."""
        if self.state.last_full_run_is_empty():
            logger.debug("[%s] Skip incremental backup until initial full backup is done",
                         self.routine_name)
            return
        if self.backend.full_backup_in_progress.locked():
            logger.debug("[%s] Full backup is currently in progress, skipping incremental "
                         "backup", self.routine_name)
            return
        with self._lock:
            busy = bool(self._incr_handlers)
        if busy:
            logger.debug("[%s] Incremental backup is currently in progress, skipping "
                         "incremental backup", self.routine_name)
            return

        try:
            client = self._client_manager.get_client(self.routine.source_cluster)
        except Exception as exc:
            logger.error("[%s] cannot create backup client: %s", self.routine_name, exc)
            return

        try:
            self._start_incremental_backups(client, now)
            self._wait_for_incremental_backups(now)
            metrics.incr_backup_counter.inc()
            self.state.set_last_incr_run(now)
        finally:
            self._client_manager.close(client)
            with self._lock:
                self._incr_handlers.clear()

    def _start_incremental_backups(self, client: BackupClient, upper_bound: datetime) -> None:
        bounds = TimeBounds(from_time=self.state.last_run(),
                            to_time=upper_bound if self._sealed else None)
        with self._lock:
            self._incr_handlers.clear()
        try:
            namespaces = namespaces_to_backup(self.namespaces, client.aerospike_client)
        except Exception as exc:
            logger.warning("[%s] could not list namespaces: %s", self.routine_name, exc)
            return
        for namespace in namespaces:
            folder = incremental_path_for_namespace(self.backend.incremental_backups_path,
                                                    namespace, upper_bound)
            try:
                handler = self._backup_service.backup_run(
                    self.routine, self.incr_policy, client, self.storage, self.secret_agent,
                    bounds, namespace, folder)
            except Exception as exc:
                metrics.incr_backup_failure_counter.inc()
                logger.warning("[%s] could not start backup of namespace %s: %s",
                               self.routine_name, namespace, exc)
                continue
            with self._lock:
                self._incr_handlers[namespace] = handler

    def _wait_for_incremental_backups(self, backup_time: datetime) -> None:
        start = time.monotonic()
        has_backup = False
        with self._lock:
            handlers = list(self._incr_handlers.items())
        for namespace, handler in handlers:
            try:
                handler.wait()
            except Exception as exc:
                logger.warning("[%s] Failed incremental backup: %s", self.routine_name, exc)
                metrics.incr_backup_failure_counter.inc()

            folder = incremental_path_for_namespace(self.backend.incremental_backups_path,
                                                    namespace, backup_time)
            stats = handler.stats()
            if stats.is_empty():
                self._delete_folder(folder)
                continue
            try:
                self._write_backup_metadata(stats, backup_time, namespace, folder)
            except Exception:
                pass  # already logged
            has_backup = True

        if not has_backup:
            self._delete_folder(
                posixpath.normpath(incremental_path(self.backend.incremental_backups_path,
                                                    backup_time)))
        metrics.incr_backup_duration_gauge.set(_elapsed_millis(start))

    def current_stat(self) -> CurrentBackups:
        """Progress of the full and incremental backups running now."""
        with self._lock:
            full = dict(self._full_handlers)
            incremental = dict(self._incr_handlers)
        return CurrentBackups(full=current_backup_status(full),
                              incremental=current_backup_status(incremental))