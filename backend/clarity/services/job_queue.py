"""
Background job queue.

A single-process, single-worker priority queue. Jobs live in memory
while they are pending or running and are mirrored into the
processing_jobs table so status survives restarts:

- enqueue() writes the row first; the job only becomes runnable once
  the row exists
- start() reloads pending and interrupted rows before the worker starts
- get_status() falls back to the table for ids not held in memory

Ordering is highest priority first, then arrival. Each run is bounded by
a timeout; a failed run goes back to pending and is re-queued after a
fixed delay until max_retries attempts have failed.

The queue is an ordinary object owned by whoever constructs it (the
FastAPI lifespan in production, fixtures in tests).
"""

import asyncio
import heapq
import itertools
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clarity.db.models import JobStatus, JobType, ProcessingJob
from clarity.exceptions import JobTimeoutError, ValidationError

logger = logging.getLogger(__name__)

JobHandler = Callable[[AsyncSession, dict[str, Any]], Awaitable[dict[str, Any] | None]]

ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)
TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    """In-memory view of a job. Snapshots handed to callers are copies."""

    id: UUID
    job_type: str
    input_data: dict[str, Any]
    user_id: UUID | None = None
    brain_id: UUID | None = None
    priority: int = 0
    status: str = JobStatus.PENDING.value
    retry_count: int = 0
    output_data: dict[str, Any] | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: ProcessingJob) -> "Job":
        return cls(
            id=row.id,
            job_type=row.job_type,
            input_data=dict(row.input_data or {}),
            user_id=row.user_id,
            brain_id=row.brain_id,
            priority=row.priority,
            status=row.status,
            retry_count=row.retry_count,
            output_data=row.output_data,
            error_message=row.error_message,
            created_at=row.created_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobQueue:
    """Priority job queue with one worker, retries and a per-job timeout."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        handlers: dict[str, JobHandler] | None = None,
        *,
        max_retries: int = 3,
        job_timeout: float = 5 * 60,
        retry_delay: float = 30,
    ):
        self.session_factory = session_factory
        self.handlers: dict[str, JobHandler] = dict(handlers or {})
        self.max_retries = max_retries
        self.job_timeout = job_timeout
        self.retry_delay = retry_delay

        self._jobs: dict[UUID, Job] = {}
        self._heap: list[tuple[int, int, UUID]] = []
        self._sequence = itertools.count()
        self._wakeup = asyncio.Event()
        self._worker: asyncio.Task | None = None
        self._retry_tasks: set[asyncio.Task] = set()
        self._current: Job | None = None

    def register(self, job_type: JobType | str, handler: JobHandler) -> None:
        self.handlers[JobType(job_type).value] = handler

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Reload unfinished jobs from the table and start the worker."""
        if self.is_running:
            return
        recovered = await self._recover()
        self._worker = asyncio.create_task(self._run(), name="job-queue-worker")
        logger.info("Job queue started (%d jobs recovered)", recovered)

    async def stop(self) -> None:
        """
        Stop the worker and pending retry timers.

        A job interrupted mid-run is written back as pending so the next
        start() picks it up again.
        """
        timers = list(self._retry_tasks)
        for task in timers:
            task.cancel()
        # Cancelled timers put their job back in the heap before returning
        await asyncio.gather(*timers, return_exceptions=True)
        self._retry_tasks.clear()
        if self._worker is not None:
            self._worker.cancel()
            with suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
        logger.info("Job queue stopped")

    async def _recover(self) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ProcessingJob)
                .where(ProcessingJob.status.in_(ACTIVE_STATUSES))
                .order_by(ProcessingJob.created_at)
            )
            rows = list(result.scalars())
            recovered = self._requeue_stranded()
            for row in rows:
                if row.id in self._jobs:
                    continue
                if row.status == JobStatus.PROCESSING.value:
                    logger.warning("Job %s was interrupted while processing; re-queueing", row.id)
                    row.status = JobStatus.PENDING.value
                    row.started_at = None
                self._push(Job.from_row(row))
                recovered += 1
            await db.commit()
        return recovered

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: JobType | str,
        input_data: dict[str, Any],
        *,
        user_id: UUID | None = None,
        brain_id: UUID | None = None,
        priority: int = 0,
    ) -> UUID:
        """Persist a pending job and make it runnable. Returns the job id."""
        try:
            job_type = JobType(job_type).value
        except ValueError:
            raise ValidationError(
                f"Unknown job type: {job_type}", fields={"job_type": "unknown job type"}
            ) from None

        job = Job(
            id=uuid4(),
            job_type=job_type,
            input_data=dict(input_data),
            user_id=user_id,
            brain_id=brain_id,
            priority=priority,
        )
        self._jobs[job.id] = job
        try:
            async with self.session_factory() as db:
                db.add(
                    ProcessingJob(
                        id=job.id,
                        user_id=user_id,
                        brain_id=brain_id,
                        job_type=job.job_type,
                        status=job.status,
                        priority=priority,
                        input_data=job.input_data,
                        retry_count=0,
                        created_at=job.created_at,
                    )
                )
                await db.commit()
        except Exception:
            del self._jobs[job.id]
            logger.exception("Failed to persist new %s job", job_type)
            raise

        self._push(job)
        logger.info("Queued %s job %s (priority %d)", job.job_type, job.id, priority)
        return job.id

    async def get_status(self, job_id: UUID) -> Job | None:
        """Current state of a job, from memory or else from the table."""
        job = self._jobs.get(job_id)
        if job is not None:
            return replace(job, input_data=dict(job.input_data))
        async with self.session_factory() as db:
            row = await db.get(ProcessingJob, job_id)
            return Job.from_row(row) if row is not None else None

    async def cancel(self, job_id: UUID) -> bool:
        """
        Cancel a pending or running job.

        A running handler is not interrupted; its outcome is discarded.
        """
        job = self._jobs.get(job_id)
        if job is not None:
            if job.status not in ACTIVE_STATUSES:
                return False
            job.status = JobStatus.CANCELLED.value
            job.completed_at = _utcnow()
            await self._persist(job)
            logger.info("Cancelled job %s", job_id)
            return True

        async with self.session_factory() as db:
            result = await db.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == job_id, ProcessingJob.status.in_(ACTIVE_STATUSES))
                .values(status=JobStatus.CANCELLED.value, completed_at=_utcnow())
            )
            await db.commit()
        return result.rowcount > 0

    async def retry_failed(self, job_ids: list[UUID], user_id: UUID | None = None) -> list[UUID]:
        """Re-enqueue terminally failed jobs as new jobs. Returns the new ids."""
        new_ids = []
        for job_id in job_ids:
            job = await self.get_status(job_id)
            if job is None or job.status != JobStatus.FAILED.value:
                continue
            if user_id is not None and job.user_id != user_id:
                continue
            new_ids.append(
                await self.enqueue(
                    job.job_type,
                    job.input_data,
                    user_id=job.user_id,
                    brain_id=job.brain_id,
                    priority=1,
                )
            )
        return new_ids

    async def list_user_jobs(self, user_id: UUID, limit: int = 20) -> list[Job]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ProcessingJob)
                .where(ProcessingJob.user_id == user_id)
                .order_by(ProcessingJob.created_at.desc())
                .limit(limit)
            )
            rows = list(result.scalars())
        jobs = []
        for row in rows:
            live = self._jobs.get(row.id)
            jobs.append(replace(live) if live is not None else Job.from_row(row))
        return jobs

    async def cleanup(self, days_old: int = 7, user_id: UUID | None = None) -> int:
        """
        Delete completed and failed jobs finished more than `days_old` days ago.

        With `user_id`, only that user's jobs are removed.
        """
        cutoff = _utcnow() - timedelta(days=days_old)
        finished = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)

        query = delete(ProcessingJob).where(
            ProcessingJob.status.in_(finished),
            ProcessingJob.completed_at < cutoff,
        )
        if user_id is not None:
            query = query.where(ProcessingJob.user_id == user_id)
        async with self.session_factory() as db:
            result = await db.execute(query)
            await db.commit()

        stale = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status in finished
            and job.completed_at is not None
            and job.completed_at < cutoff
            and (user_id is None or job.user_id == user_id)
        ]
        for job_id in stale:
            del self._jobs[job_id]

        logger.info("Cleaned up %d old jobs", result.rowcount)
        return result.rowcount

    def stats(self) -> dict[str, Any]:
        by_status = Counter(job.status for job in self._jobs.values())
        return {
            "total": len(self._jobs),
            "by_status": {status.value: by_status.get(status.value, 0) for status in JobStatus},
            "queued": sum(1 for _, _, job_id in self._heap if self._is_runnable(job_id)),
            "current_job_id": self._current.id if self._current else None,
            "is_running": self.is_running,
        }

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    def _push(self, job: Job) -> None:
        self._jobs[job.id] = job
        heapq.heappush(self._heap, (-job.priority, next(self._sequence), job.id))
        self._wakeup.set()

    def _requeue_stranded(self) -> int:
        """Push in-memory pending jobs that are neither queued nor waiting on a retry timer."""
        queued = {job_id for _, _, job_id in self._heap}
        stranded = [
            job
            for job in self._jobs.values()
            if job.id not in queued
            and job.status in ACTIVE_STATUSES
            and job is not self._current
        ]
        for job in stranded:
            job.status = JobStatus.PENDING.value
            job.started_at = None
            self._push(job)
        return len(stranded)

    def _is_runnable(self, job_id: UUID) -> bool:
        job = self._jobs.get(job_id)
        return job is not None and job.status == JobStatus.PENDING.value

    def _next_job(self) -> Job | None:
        while self._heap:
            _, _, job_id = heapq.heappop(self._heap)
            if self._is_runnable(job_id):
                return self._jobs[job_id]
        return None

    async def _run(self) -> None:
        while True:
            job = self._next_job()
            if job is None:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            await self._execute(job)

    async def _execute(self, job: Job) -> None:
        handler = self.handlers.get(job.job_type)
        self._current = job
        job.status = JobStatus.PROCESSING.value
        job.started_at = _utcnow()

        try:
            await self._persist(job)
            logger.info("Processing %s job %s (attempt %d)", job.job_type, job.id, job.retry_count + 1)
            if handler is None:
                raise ValidationError(f"No handler registered for {job.job_type}")
            async with self.session_factory() as db:
                output = await asyncio.wait_for(handler(db, dict(job.input_data)), self.job_timeout)
        except asyncio.CancelledError:
            if job.status == JobStatus.PROCESSING.value:
                job.status = JobStatus.PENDING.value
                job.started_at = None
                self._push(job)
                await self._persist(job)
            raise
        except asyncio.TimeoutError:
            await self._handle_failure(
                job, JobTimeoutError(f"Job timed out after {self.job_timeout:g} seconds")
            )
        except Exception as e:
            await self._handle_failure(job, e)
        else:
            if job.status == JobStatus.CANCELLED.value:
                logger.info("Job %s finished after cancellation; result discarded", job.id)
                return
            job.status = JobStatus.COMPLETED.value
            job.output_data = output
            job.error_message = None
            job.completed_at = _utcnow()
            await self._persist(job)
            logger.info("Completed %s job %s", job.job_type, job.id)
        finally:
            self._current = None

    async def _handle_failure(self, job: Job, error: Exception) -> None:
        if job.status == JobStatus.CANCELLED.value:
            logger.info("Job %s failed after cancellation: %s", job.id, error)
            return

        job.retry_count += 1
        job.error_message = str(error) or type(error).__name__
        if job.retry_count < self.max_retries:
            job.status = JobStatus.PENDING.value
            job.started_at = None
            await self._persist(job)
            logger.warning(
                "Job %s failed (attempt %d/%d), retrying in %gs: %s",
                job.id, job.retry_count, self.max_retries, self.retry_delay, job.error_message,
            )
            self._schedule_retry(job)
        else:
            job.status = JobStatus.FAILED.value
            job.completed_at = _utcnow()
            await self._persist(job)
            logger.error(
                "Job %s failed permanently after %d attempts: %s",
                job.id, job.retry_count, job.error_message,
            )

    def _schedule_retry(self, job: Job) -> None:
        async def requeue_later() -> None:
            # Also runs when stop() cancels the timer, so the job is waiting in the heap on restart
            try:
                await asyncio.sleep(self.retry_delay)
            finally:
                if self._is_runnable(job.id):
                    self._push(job)

        task = asyncio.create_task(requeue_later(), name=f"job-retry-{job.id}")
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _persist(self, job: Job) -> None:
        """Mirror a job's state into its row. Failures are logged, never raised."""
        try:
            async with self.session_factory() as db:
                await db.execute(
                    update(ProcessingJob)
                    .where(ProcessingJob.id == job.id)
                    .values(
                        status=job.status,
                        retry_count=job.retry_count,
                        output_data=job.output_data,
                        error_message=job.error_message,
                        started_at=job.started_at,
                        completed_at=job.completed_at,
                    )
                )
                await db.commit()
        except Exception:
            logger.exception("Failed to persist state of job %s", job.id)
