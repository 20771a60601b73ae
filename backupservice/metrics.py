"""Service metrics: counters, gauges and a periodic progress collector."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from typing import Any

from backupservice.estimates import restore_job_status
from backupservice.jobs import RestoreJobsHolder

logger = logging.getLogger(__name__)


class Counter:
    """A monotonically increasing, thread-safe counter."""

    def __init__(self, name: str, help_text: str = ""):
        self.name = name
        self.help_text = help_text
        self._value = 0
        self._lock = threading.Lock()

    def inc(self) -> None:
        """Add one to the counter."""
        with self._lock:
            self._value += 1

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class Gauge:
    """A thread-safe value that can go up and down."""

    def __init__(self, name: str, help_text: str = ""):
        self.name = name
        self.help_text = help_text
        self._value = 0.0
        self._lock = threading.Lock()

    def set(self, value: float) -> None:
        """Replace the current value."""
        with self._lock:
            self._value = float(value)

    @property
    def value(self) -> float:
        with self._lock:
            return self._value


class LabeledGauge:
    """A family of gauges told apart by label values."""

    def __init__(self, name: str, help_text: str, label_names: tuple[str, ...]):
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        self._values: dict[tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def set(self, labels: tuple[str, ...], value: float) -> None:
        """Set the gauge for one combination of label values."""
        labels = tuple(labels)
        if len(labels) != len(self.label_names):
            raise ValueError(
                f"{self.name}: expected {len(self.label_names)} label values, got {len(labels)}")
        with self._lock:
            self._values[labels] = float(value)

    def reset(self) -> None:
        """Drop every labelled value."""
        with self._lock:
            self._values.clear()

    def values(self) -> dict[tuple[str, ...], float]:
        """A snapshot of all labelled values."""
        with self._lock:
            return dict(self._values)


backup_counter = Counter("aerospike_backup_service_runs_total", "Backup runs counter.")
incr_backup_counter = Counter("aerospike_backup_service_incremental_runs_total",
                              "Incremental backup runs counter.")
backup_skipped_counter = Counter("aerospike_backup_service_skip_total", "Backup skip counter.")
incr_backup_skipped_counter = Counter("aerospike_backup_service_incremental_skip_total",
                                      "Incremental backup skip counter.")
backup_failure_counter = Counter("aerospike_backup_service_failure_total",
                                 "Backup failure counter.")
incr_backup_failure_counter = Counter("aerospike_backup_service_incremental_failure_total",
                                      "Incremental backup failure counter.")
backup_duration_gauge = Gauge("aerospike_backup_service_duration_millis",
                              "Full backup duration in milliseconds.")
incr_backup_duration_gauge = Gauge("aerospike_backup_service_incremental_duration_millis",
                                   "Incremental backup duration in milliseconds.")
backup_progress = LabeledGauge("aerospike_backup_service_backup_progress_pct",
                               "Progress of backup processes in percentage",
                               ("routine", "type"))
restore_progress = LabeledGauge("aerospike_backup_service_restore_progress_pct",
                                "Progress of restore processes in percentage",
                                ("label",))

REGISTRY = (
    backup_counter,
    incr_backup_counter,
    backup_skipped_counter,
    incr_backup_skipped_counter,
    backup_failure_counter,
    incr_backup_failure_counter,
    backup_duration_gauge,
    incr_backup_duration_gauge,
    backup_progress,
    restore_progress,
)


class MetricsCollector:
    """Periodically records the progress of running backups and restores.

    ``backup_handlers`` maps routine names to handlers with a
    ``current_stat()`` method returning :class:`CurrentBackups`.
    """

    def __init__(self, backup_handlers: Mapping[str, Any], jobs: RestoreJobsHolder):
        self._backup_handlers = backup_handlers
        self._jobs = jobs
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def collect(self) -> None:
        """Refresh the backup and restore progress gauges once."""
        self._collect_backup_metrics()
        self._collect_restore_metrics()

    def _collect_backup_metrics(self) -> None:
        backup_progress.reset()
        for routine_name, handler in list(self._backup_handlers.items()):
            current = handler.current_stat()
            if current.full is not None:
                backup_progress.set((routine_name, "Full"), current.full.percentage_done)
            if current.incremental is not None:
                backup_progress.set((routine_name, "Incremental"),
                                    current.incremental.percentage_done)

    def _collect_restore_metrics(self) -> None:
        restore_progress.reset()
        for job in self._jobs.jobs().values():
            # current_restore exists only for running jobs
            running = restore_job_status(job).current_restore
            if running is not None:
                restore_progress.set((job.label,), running.percentage_done)

    def start(self, interval: float) -> None:
        """Collect every ``interval`` seconds in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, args=(interval,), daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the background collection."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                self.collect()
            except Exception:
                logger.exception("Failed to collect metrics")