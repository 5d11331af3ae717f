"""Thread-safe in-memory queue of scan jobs with bounded history."""

from __future__ import annotations

import copy
import threading
import time
from datetime import datetime

from fman.models import (
    DEFAULT_QUEUE_SIZE,
    DaemonError,
    Job,
    JobNotFoundError,
    JobStatus,
)

DEFAULT_MAX_HISTORY = 1000
_CANCEL_POLL_INTERVAL = 0.05


def _now() -> datetime:
    return datetime.now().astimezone()


def _status_filter(status: JobStatus | str | None) -> JobStatus | None:
    if status is None or status == "":
        return None
    if isinstance(status, JobStatus):
        return status
    try:
        return JobStatus(status)
    except ValueError:
        return None


class JobQueue:
    """FIFO of pending jobs plus the running set and per-outcome history."""

    def __init__(self, max_queue_size: int = 0, max_history: int = 0) -> None:
        self.max_queue_size = max_queue_size if max_queue_size > 0 else DEFAULT_QUEUE_SIZE
        self.max_history = max_history if max_history > 0 else DEFAULT_MAX_HISTORY
        self._cond = threading.Condition(threading.Lock())
        self._jobs: dict[str, Job] = {}
        self._pending: list[Job] = []
        self._running: dict[str, Job] = {}
        self._completed: list[Job] = []
        self._failed: list[Job] = []
        self._cancelled: list[Job] = []
        self._total_added = 0
        self._total_completed = 0
        self._total_failed = 0
        self._total_cancelled = 0

    def add(self, job: Job | None) -> None:
        """Queue ``job`` as pending.

        Raises ValueError for a missing job and DaemonError when the ID is
        taken, the queue is full, or the path is already pending or running.
        """
        if job is None:
            raise ValueError("job cannot be None")
        with self._cond:
            if job.id in self._jobs:
                raise DaemonError(f"job with ID {job.id} already exists")
            if len(self._pending) >= self.max_queue_size:
                raise DaemonError(f"queue is full (max size: {self.max_queue_size})")
            if any(pending.path == job.path for pending in self._pending):
                raise DaemonError(f"job for path {job.path} is already pending")
            if any(running.path == job.path for running in self._running.values()):
                raise DaemonError(f"job for path {job.path} is already running")

            job.status = JobStatus.PENDING
            job.created_at = _now()
            self._jobs[job.id] = job
            self._pending.append(job)
            self._total_added += 1
            self._cond.notify_all()

    def next(
        self,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Job:
        """Take the oldest pending job and mark it running, blocking until one exists.

        Raises TimeoutError when ``timeout`` seconds pass and InterruptedError
        when ``cancel`` is set while waiting.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._pending:
                    job = self._pending.pop(0)
                    job.status = JobStatus.RUNNING
                    job.started_at = _now()
                    self._running[job.id] = job
                    return job
                if cancel is not None and cancel.is_set():
                    raise InterruptedError("wait for next job cancelled")
                wait: float | None = None
                if deadline is not None:
                    wait = deadline - time.monotonic()
                    if wait <= 0:
                        raise TimeoutError("timed out waiting for a job")
                if cancel is not None:
                    wait = _CANCEL_POLL_INTERVAL if wait is None else min(wait, _CANCEL_POLL_INTERVAL)
                self._cond.wait(wait)

    def get(self, job_id: str) -> Job:
        """A copy of the job with ``job_id``; raises JobNotFoundError."""
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError()
            return copy.copy(job)

    def update(self, job: Job | None) -> None:
        """Copy status, stats, error and progress onto the stored job and file it."""
        if job is None:
            raise ValueError("job cannot be None")
        with self._cond:
            existing = self._jobs.get(job.id)
            if existing is None:
                raise JobNotFoundError()

            existing.status = job.status
            existing.stats = job.stats
            existing.error = job.error
            existing.progress = job.progress

            if job.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
                if existing.completed_at is None:
                    existing.completed_at = _now()
                self._running.pop(job.id, None)

            if job.status is JobStatus.COMPLETED:
                self._completed.append(existing)
                self._total_completed += 1
                self._trim(self._completed)
            elif job.status is JobStatus.FAILED:
                self._failed.append(existing)
                self._total_failed += 1
                self._trim(self._failed)
            elif job.status is JobStatus.CANCELLED:
                self._remove_pending(job.id)
                self._cancelled.append(existing)
                self._total_cancelled += 1
                self._trim(self._cancelled)

    def list(self, status: JobStatus | str | None = None) -> list[Job]:
        """Copies of the jobs in ``status``, or of every known job when no status is given."""
        wanted = _status_filter(status)
        with self._cond:
            if wanted is JobStatus.PENDING:
                source = self._pending
            elif wanted is JobStatus.RUNNING:
                source = list(self._running.values())
            elif wanted is JobStatus.COMPLETED:
                source = self._completed
            elif wanted is JobStatus.FAILED:
                source = self._failed
            elif wanted is JobStatus.CANCELLED:
                source = self._cancelled
            else:
                source = list(self._jobs.values())
            return [copy.copy(job) for job in source]

    def cancel(self, job_id: str) -> None:
        """Cancel a pending or running job."""
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError()
            if job.status not in (JobStatus.PENDING, JobStatus.RUNNING):
                raise DaemonError(f"job {job_id} cannot be cancelled (status: {job.status})")
            job.status = JobStatus.CANCELLED
            job.completed_at = _now()
            self._remove_pending(job_id)
            self._running.pop(job_id, None)
            self._cancelled.append(job)
            self._total_cancelled += 1
            self._trim(self._cancelled)

    def clear(self) -> None:
        """Drop every pending job."""
        with self._cond:
            for job in self._pending:
                self._jobs.pop(job.id, None)
            self._pending = []

    def size(self) -> int:
        """Number of pending jobs."""
        with self._cond:
            return len(self._pending)

    def stats(self) -> dict[str, int]:
        """Current counts and running totals."""
        with self._cond:
            return {
                "pending": len(self._pending),
                "running": len(self._running),
                "completed": len(self._completed),
                "failed": len(self._failed),
                "cancelled": len(self._cancelled),
                "total_added": self._total_added,
                "total_completed": self._total_completed,
                "total_failed": self._total_failed,
                "total_cancelled": self._total_cancelled,
            }

    def _remove_pending(self, job_id: str) -> None:
        self._pending = [job for job in self._pending if job.id != job_id]

    def _trim(self, history: list[Job]) -> None:
        excess = len(history) - self.max_history
        if excess > 0:
            del history[:excess]