"""Progress and completion estimates of running jobs."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from backupservice.models import (
    BackupHandler,
    JobStatus,
    RestoreJobStatus,
    RunningJob,
)


def _estimated_end_time(start_time: datetime, percent_done: float) -> datetime | None:
    if percent_done < 0.01:  # too early to estimate
        return None
    elapsed = datetime.now(start_time.tzinfo) - start_time
    return start_time + elapsed / percent_done


def new_running_job(start_time: datetime, done: int, total: int) -> RunningJob | None:
    """Progress of a job; None when the total is unknown."""
    if total == 0:
        return None
    percentage = done / total
    return RunningJob(
        start_time=start_time,
        done_records=done,
        total_records=total,
        estimated_end_time=_estimated_end_time(start_time, percentage),
        percentage_done=int(percentage * 100),
    )


def current_backup_status(handlers: Mapping[str, BackupHandler]) -> RunningJob | None:
    """Combined progress of the namespace backups of one routine."""
    if not handlers:
        return None
    all_stats = [handler.stats() for handler in handlers.values()]
    done = sum(stats.read_records for stats in all_stats)
    total = sum(stats.total_records for stats in all_stats)
    # All namespaces of a routine start together, so any start time will do.
    return new_running_job(all_stats[0].start_time, done, total)


def restore_job_status(job: Any) -> RestoreJobStatus:
    """Status of a restore job.

    Running jobs carry progress and an estimate, failed jobs their error.
    """
    status = RestoreJobStatus(status=job.status)
    for handler in job.handlers:
        stats = handler.stats()
        status.read_records += stats.read_records
        status.inserted_records += stats.records_inserted
        status.index_count += stats.sindexes
        status.udf_count += stats.udfs
        status.fresher_records += stats.records_fresher
        status.skipped_records += stats.records_skipped
        status.existed_records += stats.records_existed
        status.expired_records += stats.records_expired
        status.total_bytes += stats.total_bytes_read

    if job.status == JobStatus.RUNNING:
        status.current_restore = new_running_job(job.start_time, status.read_records,
                                                 job.total_records)
    if job.error is not None:
        status.error = str(job.error)
    return status