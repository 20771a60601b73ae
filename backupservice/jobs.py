"""Bookkeeping of restore jobs."""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from backupservice.estimates import restore_job_status
from backupservice.models import JobStatus, RestoreHandler, RestoreJobStatus


@dataclass
class JobInfo:
    """State of one restore job."""

    label: str = ""
    status: JobStatus = JobStatus.RUNNING
    handlers: list[RestoreHandler] = field(default_factory=list)
    error: BaseException | None = None
    total_records: int = 0
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RestoreJobsHolder:
    """Thread-safe registry of restore jobs by id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[int, JobInfo] = {}

    def new_job(self, label: str) -> int:
        """Register a running job and return its id."""
        job_id = random.randrange(2**63)
        with self._lock:
            self._jobs[job_id] = JobInfo(label=label)
        return job_id

    def add_handler(self, job_id: int, handler: RestoreHandler) -> None:
        """Attach the handler of one restore run (full or incremental)."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                job.handlers.append(handler)

    def add_total_records(self, job_id: int, total: int) -> None:
        """Add to the number of records the job is expected to restore."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                job.total_records += total

    def set_done(self, job_id: int) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                job.status = JobStatus.DONE

    def set_failed(self, job_id: int, error: BaseException) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                job.status = JobStatus.FAILED
                job.error = error

    def status(self, job_id: int) -> RestoreJobStatus:
        """Status of a job; KeyError if there is no such job."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(f"job with ID {job_id} not found")
            return restore_job_status(job)

    def jobs(self) -> dict[int, JobInfo]:
        """A snapshot of all jobs by id."""
        with self._lock:
            return dict(self._jobs)