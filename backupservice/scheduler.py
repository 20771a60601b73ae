"""Scheduling of periodic and ad-hoc backup jobs."""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from backupservice import metrics
from backupservice.models import BackupRoutine

logger = logging.getLogger(__name__)

GROUP_AD_HOC = "ad-hoc"
GROUP_SCHEDULED = "scheduled"
GROUP_DEFAULT = "default"


class JobType(str, Enum):
    """Kind of backup a job performs."""

    FULL = "full"
    INCREMENTAL = "incremental"

    def __str__(self) -> str:
        return self.value


def _job_key(name: str, group: str) -> str:
    return f"{group}::{name}"


def full_job_key(routine_name: str) -> str:
    """Key of the scheduled full backup job of a routine."""
    return _job_key(f"{routine_name}-{JobType.FULL}", GROUP_SCHEDULED)


def incr_job_key(routine_name: str) -> str:
    """Key of the scheduled incremental backup job of a routine."""
    return _job_key(f"{routine_name}-{JobType.INCREMENTAL}", GROUP_SCHEDULED)


def adhoc_key(routine_name: str) -> str:
    """A fresh key for an ad-hoc job of a routine."""
    return _job_key(f"{routine_name}-adhoc-{time.time_ns() // 1_000_000}", GROUP_AD_HOC)


_MONTH_NAMES = {name: number for number, name in enumerate(
    ["JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"],
    start=1)}
_DAY_NAMES = {name: number for number, name in enumerate(
    ["SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"], start=1)}

# (field name, lowest value, highest value, names)
_FIELDS = (
    ("second", 0, 59, {}),
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day of month", 1, 31, {}),
    ("month", 1, 12, _MONTH_NAMES),
    ("day of week", 1, 7, _DAY_NAMES),
    ("year", 1970, 2199, {}),
)

_DESCRIPTORS = {
    "@YEARLY": "0 0 0 1 1 *",
    "@ANNUALLY": "0 0 0 1 1 *",
    "@MONTHLY": "0 0 0 1 * *",
    "@WEEKLY": "0 0 0 * * 1",
    "@DAILY": "0 0 0 * * *",
    "@MIDNIGHT": "0 0 0 * * *",
    "@HOURLY": "0 0 * * * *",
}


def _parse_value(text: str, field: str, low: int, high: int, names: dict[str, int]) -> int:
    value = names.get(text)
    if value is None:
        if not text.isdigit():
            raise ValueError(f"invalid {field} value {text!r}")
        value = int(text)
    if not low <= value <= high:
        raise ValueError(f"{field} value {value} out of range {low}-{high}")
    return value


def _parse_field(text: str, field: str, low: int, high: int,
                 names: dict[str, int]) -> frozenset[int] | None:
    if text in ("*", "?"):
        return None
    values: set[int] = set()
    for part in text.split(","):
        base, slash, step_text = part.partition("/")
        step = 1
        if slash:
            if not step_text.isdigit() or int(step_text) == 0:
                raise ValueError(f"invalid {field} step {step_text!r}")
            step = int(step_text)
        if base in ("*", "?"):
            start, end = low, high
        elif "-" in base:
            first, _, last = base.partition("-")
            start = _parse_value(first, field, low, high, names)
            end = _parse_value(last, field, low, high, names)
            if start > end:
                raise ValueError(f"invalid {field} range {base!r}")
        else:
            start = _parse_value(base, field, low, high, names)
            end = high if slash else start
        values.update(range(start, end + 1, step))
    return frozenset(values)


def _next_month(moment: datetime) -> datetime:
    if moment.month == 12:
        return moment.replace(year=moment.year + 1, month=1, day=1, hour=0, minute=0, second=0)
    return moment.replace(month=moment.month + 1, day=1, hour=0, minute=0, second=0)


class CronTrigger:
    """Fires at the times of a cron expression with a leading seconds field.

    Six or seven fields (second, minute, hour, day of month, month, day of
    week with 1 for Sunday, optional year) or a descriptor such as ``@daily``.
    """

    def __init__(self, expression: str):
        self.expression = expression
        normalized = expression.strip().upper()
        normalized = _DESCRIPTORS.get(normalized, normalized)
        parts = normalized.split()
        if len(parts) not in (6, 7):
            raise ValueError(f"invalid cron expression {expression!r}")
        parsed = [_parse_field(text, field, low, high, names)
                  for text, (field, low, high, names) in zip(parts, _FIELDS)]
        if len(parsed) == 6:
            parsed.append(None)
        (self._seconds, self._minutes, self._hours, self._days,
         self._months, self._weekdays, self._years) = parsed

    def _day_matches(self, moment: datetime) -> bool:
        if self._days is not None and moment.day not in self._days:
            return False
        weekday = (moment.weekday() + 1) % 7 + 1
        return self._weekdays is None or weekday in self._weekdays

    def next_fire_time(self, after: datetime) -> datetime:
        """The first fire time strictly after ``after``; ValueError if there is none."""
        moment = after.replace(microsecond=0) + timedelta(seconds=1)
        last_year = max(self._years) if self._years else moment.year + 10
        while moment.year <= last_year:
            if self._years is not None and moment.year not in self._years:
                moment = moment.replace(year=moment.year + 1, month=1, day=1,
                                        hour=0, minute=0, second=0)
            elif self._months is not None and moment.month not in self._months:
                moment = _next_month(moment)
            elif not self._day_matches(moment):
                moment = (moment + timedelta(days=1)).replace(hour=0, minute=0, second=0)
            elif self._hours is not None and moment.hour not in self._hours:
                moment = moment.replace(minute=0, second=0) + timedelta(hours=1)
            elif self._minutes is not None and moment.minute not in self._minutes:
                moment = moment.replace(second=0) + timedelta(minutes=1)
            elif self._seconds is not None and moment.second not in self._seconds:
                moment += timedelta(seconds=1)
            else:
                return moment
        raise ValueError(f"cron expression {self.expression!r} never fires after {after}")


class RunOnceTrigger:
    """Fires once, ``delay`` seconds after it is first asked."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self._fired = False

    def next_fire_time(self, after: datetime) -> datetime | None:
        """``after`` plus the delay the first time; None afterwards."""
        if self._fired:
            return None
        self._fired = True
        return after + timedelta(seconds=self.delay)


class BackupJob:
    """Runs a routine's full or incremental backup, never two at once."""

    def __init__(self, handler: Any, job_type: JobType):
        self.handler = handler
        self.job_type = job_type
        self._running = threading.Lock()

    def execute(self) -> None:
        """Run the backup, or count it as skipped if one is still running."""
        if not self._running.acquire(blocking=False):
            logger.debug("[%s %s] Backup is currently in progress, skipping it",
                         self.handler.routine_name, self.job_type)
            if self.job_type == JobType.FULL:
                metrics.backup_skipped_counter.inc()
            elif self.job_type == JobType.INCREMENTAL:
                metrics.incr_backup_skipped_counter.inc()
            return
        try:
            now = datetime.now(timezone.utc)
            if self.job_type == JobType.FULL:
                self.handler.run_full_backup(now)
            elif self.job_type == JobType.INCREMENTAL:
                self.handler.run_incremental_backup(now)
            else:
                logger.error("[%s] Unsupported backup type %s",
                             self.handler.routine_name, self.job_type)
        finally:
            self._running.release()

    def description(self) -> str:
        return f"{self.handler.routine_name} {self.job_type} backup job"


def _now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class _Entry:
    job: Any
    trigger: Any
    seq: int


class Scheduler:
    """Runs jobs at the times given by their triggers, each in its own thread.

    A fire time missed by more than ``outdated_threshold`` seconds is skipped.
    """

    def __init__(self, outdated_threshold: float = 1.0):
        self._threshold = timedelta(seconds=outdated_threshold)
        self._cond = threading.Condition()
        self._entries: dict[str, _Entry] = {}
        self._queue: list[tuple[datetime, int, str]] = []
        self._seq = itertools.count()
        self._running = False
        self._thread: threading.Thread | None = None

    def schedule_job(self, key: str, job: Any, trigger: Any) -> None:
        """Add a job under ``key``; ValueError if the key is taken or it never fires."""
        with self._cond:
            if key in self._entries:
                raise ValueError(f"job already exists: {key}")
            fire_time = trigger.next_fire_time(_now())
            if fire_time is None:
                raise ValueError(f"trigger of job {key} never fires")
            seq = next(self._seq)
            self._entries[key] = _Entry(job, trigger, seq)
            heapq.heappush(self._queue, (fire_time, seq, key))
            self._cond.notify()

    def delete_job(self, key: str) -> None:
        """Remove a job; KeyError if there is none under ``key``."""
        with self._cond:
            if key not in self._entries:
                raise KeyError(f"job not found: {key}")
            del self._entries[key]
            self._cond.notify()

    def job_keys(self, group: str | None = None) -> list[str]:
        """Keys of the scheduled jobs, optionally only those of ``group``."""
        with self._cond:
            keys = list(self._entries)
        if group is None:
            return keys
        prefix = f"{group}::"
        return [key for key in keys if key.startswith(prefix)]

    def start(self) -> None:
        """Start running jobs in a background thread."""
        with self._cond:
            if self._running:
                return
            self._running = True
            self._thread = threading.Thread(target=self._loop, daemon=True)
            self._thread.start()

    def stop(self) -> None:
        """Stop the scheduler; jobs already started run to completion."""
        with self._cond:
            self._running = False
            self._cond.notify()
            thread = self._thread
            self._thread = None
        if thread is not None:
            thread.join()

    def __enter__(self) -> Scheduler:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _loop(self) -> None:
        with self._cond:
            while self._running:
                if not self._queue:
                    self._cond.wait()
                    continue
                fire_time, seq, key = self._queue[0]
                wait = (fire_time - _now()).total_seconds()
                if wait > 0:
                    self._cond.wait(wait)
                    continue
                heapq.heappop(self._queue)
                entry = self._entries.get(key)
                if entry is None or entry.seq != seq:
                    continue
                now = _now()
                if now - fire_time <= self._threshold:
                    threading.Thread(target=self._execute, args=(key, entry.job),
                                     daemon=True).start()
                    base = fire_time
                else:
                    logger.debug("Job %s is outdated, skipping it", key)
                    base = now
                try:
                    next_time = entry.trigger.next_fire_time(base)
                except Exception as exc:
                    logger.error("Cannot reschedule job %s: %s", key, exc)
                    next_time = None
                if next_time is None:
                    del self._entries[key]
                else:
                    entry.seq = next(self._seq)
                    heapq.heappush(self._queue, (next_time, entry.seq, key))

    @staticmethod
    def _execute(key: str, job: Any) -> None:
        try:
            job.execute()
        except Exception:
            logger.exception("Job %s failed", key)


_job_store: dict[str, BackupJob] = {}
_job_store_lock = threading.Lock()


def _store_job(key: str, job: BackupJob) -> None:
    with _job_store_lock:
        _job_store[key] = job


def new_adhoc_full_backup_job(routine_name: str) -> tuple[str, BackupJob] | None:
    """A fresh ad-hoc key with the routine's full backup job, or None if unknown."""
    with _job_store_lock:
        job = _job_store.get(full_job_key(routine_name))
    if job is None:
        return None
    return adhoc_key(routine_name), job


def need_to_run_full_backup_now(last_full_run: datetime | None, trigger: Any) -> bool:
    """Tell whether a full backup is due, because it never ran or its turn has passed."""
    if last_full_run is None:
        return True
    try:
        fire_time = trigger.next_fire_time(last_full_run)
    except Exception:
        return True  # run to be safe
    if fire_time is None:
        return True
    return fire_time < datetime.now(last_full_run.tzinfo)


def _schedule_full_backup(scheduler: Scheduler, handler: Any, interval: str,
                          routine_name: str) -> None:
    trigger = CronTrigger(interval)
    job = BackupJob(handler, JobType.FULL)
    key = full_job_key(routine_name)
    scheduler.schedule_job(key, job, trigger)
    _store_job(key, job)
    if need_to_run_full_backup_now(handler.state.last_full_run, trigger):
        logger.debug("Schedule initial full backup for %s", routine_name)
        scheduler.schedule_job(_job_key(routine_name, GROUP_DEFAULT), job, RunOnceTrigger(0))


def _schedule_incremental_backup(scheduler: Scheduler, handler: Any, interval: str,
                                 routine_name: str) -> None:
    trigger = CronTrigger(interval)
    job = BackupJob(handler, JobType.INCREMENTAL)
    key = incr_job_key(routine_name)
    scheduler.schedule_job(key, job, trigger)
    _store_job(key, job)


def schedule_routines(scheduler: Scheduler, routines: Mapping[str, BackupRoutine],
                      handlers: Mapping[str, Any]) -> None:
    """Schedule the full and incremental backups of every routine."""
    for routine_name, routine in routines.items():
        handler = handlers[routine_name]
        try:
            _schedule_full_backup(scheduler, handler, routine.interval_cron, routine_name)
        except ValueError as exc:
            raise ValueError(f"failed to schedule full backup: {exc}") from exc
        if routine.incr_interval_cron:
            try:
                _schedule_incremental_backup(scheduler, handler, routine.incr_interval_cron,
                                             routine_name)
            except ValueError as exc:
                raise ValueError(f"failed to schedule incremental backup: {exc}") from exc