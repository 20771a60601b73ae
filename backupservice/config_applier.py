"""Applying a new configuration: backends, handlers and schedules."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping, MutableMapping
from typing import Any

from backupservice.backend import BackendsHolder
from backupservice.client_manager import ClientManager
from backupservice.models import BackupRoutine
from backupservice.routine_handler import BackupRoutineHandler
from backupservice.scheduler import GROUP_SCHEDULED, Scheduler, schedule_routines

logger = logging.getLogger(__name__)


def make_handlers(client_manager: ClientManager, routines: Mapping[str, BackupRoutine],
                  backends: BackendsHolder, backup_service: Any) -> dict[str, BackupRoutineHandler]:
    """A backup handler for each configured routine, by routine name."""
    return {
        name: BackupRoutineHandler(name, routine, backends.get(name), backup_service,
                                   client_manager)
        for name, routine in routines.items()
    }


class ConfigApplier:
    """Rebuilds backends and handlers from the routines and reschedules them.

    ``handlers`` is the shared mapping of routine handlers; it is updated in
    place so that its other users see the new handlers.
    """

    def __init__(self, scheduler: Scheduler, routines: Mapping[str, BackupRoutine],
                 backends: BackendsHolder, client_manager: ClientManager,
                 handlers: MutableMapping[str, BackupRoutineHandler], backup_service: Any):
        self._scheduler = scheduler
        self._routines = routines
        self._backends = backends
        self._client_manager = client_manager
        self._handlers = handlers
        self._backup_service = backup_service
        self._lock = threading.Lock()

    def apply_new_config(self) -> None:
        """Replace periodic jobs, backends and handlers with ones for the routines."""
        with self._lock:
            self._clear_periodic_jobs()
            self._backends.init(self._routines)
            self._handlers.clear()
            self._handlers.update(make_handlers(self._client_manager, self._routines,
                                                self._backends, self._backup_service))
            schedule_routines(self._scheduler, self._routines, self._handlers)

    def _clear_periodic_jobs(self) -> None:
        # ad-hoc jobs are kept
        keys = self._scheduler.job_keys(GROUP_SCHEDULED)
        logger.info("Delete scheduled jobs: %s", keys)
        for key in keys:
            try:
                self._scheduler.delete_job(key)
            except KeyError as exc:
                raise RuntimeError(f"cannot delete job: {exc}") from exc