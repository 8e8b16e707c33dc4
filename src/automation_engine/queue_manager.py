from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import heapq
import itertools
import logging
from typing import Any, Callable

from src.automation_engine.base import JobHandler, JobStore
from src.automation_engine.errors import QueueError
from src.automation_engine.events import JOB_COMPLETED, JOB_FAILED, EventEmitter
from src.automation_engine.models import JobStatus, JobType, QueueJob, utc_now
from src.config import Settings


logger = logging.getLogger(__name__)


class QueueManager:
    """Multi-type priority job scheduler.

    Each job type has its own priority queue (higher priority first, FIFO on
    ties) and its own dispatch loop that runs at most ``max_concurrent`` jobs
    per batch. Jobs scheduled in the future wait in a delayed heap until the
    sweep loop moves them over. Failed jobs are retried with exponential
    backoff until ``max_attempts`` is reached.
    """

    def __init__(
        self,
        *,
        max_concurrent: int = 5,
        poll_interval_seconds: float = 1.0,
        sweep_interval_seconds: float = 60.0,
        retry_base_delay_seconds: float = 60.0,
        retry_max_delay_seconds: float = 300.0,
        default_max_attempts: int = 3,
        job_store: JobStore | None = None,
        events: EventEmitter | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._max_concurrent = max(1, max_concurrent)
        self._poll_interval_seconds = poll_interval_seconds
        self._sweep_interval_seconds = sweep_interval_seconds
        self._retry_base_delay_seconds = retry_base_delay_seconds
        self._retry_max_delay_seconds = retry_max_delay_seconds
        self._default_max_attempts = max(1, default_max_attempts)
        self._job_store = job_store
        self._clock = clock
        self.events = events or EventEmitter()
        self._queues: dict[JobType, list[tuple[int, int, QueueJob]]] = {
            job_type: [] for job_type in JobType
        }
        self._delayed: list[tuple[datetime, int, QueueJob]] = []
        self._sequence = itertools.count()
        self._handlers: dict[JobType, JobHandler] = {}
        self._busy: set[JobType] = set()
        self._paused: set[JobType] = set()
        self._tasks: list[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> QueueManager:
        return cls(
            max_concurrent=settings.queue_max_concurrent,
            poll_interval_seconds=settings.queue_poll_interval_seconds,
            sweep_interval_seconds=settings.queue_sweep_interval_seconds,
            retry_base_delay_seconds=settings.queue_retry_base_delay_seconds,
            retry_max_delay_seconds=settings.queue_retry_max_delay_seconds,
            default_max_attempts=settings.queue_max_attempts,
            **kwargs,
        )

    def register_handler(self, job_type: JobType, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    def create_job(
        self,
        owner_id: int,
        job_type: JobType,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        scheduled_at: datetime | None = None,
        max_attempts: int | None = None,
    ) -> QueueJob:
        now = self._clock()
        return QueueJob(
            owner_id=owner_id,
            job_type=job_type,
            payload=payload,
            priority=priority,
            scheduled_at=scheduled_at or now,
            max_attempts=max(1, max_attempts or self._default_max_attempts),
            created_at=now,
            updated_at=now,
        )

    async def enqueue(
        self,
        owner_id: int,
        job_type: JobType,
        payload: dict[str, Any],
        **kwargs: Any,
    ) -> QueueJob:
        job = self.create_job(owner_id, job_type, payload, **kwargs)
        return await self.add_job(job)

    async def add_job(self, job: QueueJob, now: datetime | None = None) -> QueueJob:
        if job.is_terminal:
            raise QueueError(f"job {job.id} is already {job.status.value}")
        if job.job_type not in self._queues:
            raise QueueError(f"unknown job type {job.job_type!r}")
        now = now or self._clock()
        job.status = JobStatus.PENDING
        job.updated_at = now
        if job.scheduled_at > now:
            heapq.heappush(self._delayed, (job.scheduled_at, next(self._sequence), job))
            logger.debug(
                "job delayed",
                extra=job.log_extra("job_delayed"),
            )
        else:
            heapq.heappush(
                self._queues[job.job_type],
                (-job.priority, next(self._sequence), job),
            )
            logger.debug("job queued", extra=job.log_extra("job_queued"))
        self._persist(job)
        return job

    async def run_once(self, job_type: JobType) -> list[QueueJob]:
        """Dispatch one batch for ``job_type`` and wait for it to finish."""
        batch = self._take_batch(job_type)
        if batch:
            await self._run_batch(job_type, batch)
        return batch

    async def sweep_delayed(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        moved = 0
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job = heapq.heappop(self._delayed)
            await self.add_job(job, now=now)
            moved += 1
        if moved:
            logger.info(
                "delayed jobs released",
                extra={"event": "queue_sweep", "status": f"{moved} released"},
            )
        return moved

    def retry_delay_seconds(self, attempts: int) -> float:
        delay = self._retry_base_delay_seconds * (2 ** max(0, attempts - 1))
        return min(delay, self._retry_max_delay_seconds)

    async def restore(self) -> int:
        """Reload unfinished jobs from the job store after a restart."""
        if self._job_store is None:
            return 0
        restored = 0
        for job in self._job_store.list_unfinished_jobs():
            await self.add_job(job)
            restored += 1
        logger.info(
            "queue restored from store",
            extra={"event": "queue_restored", "status": f"{restored} jobs"},
        )
        return restored

    async def start(self) -> None:
        if self._tasks:
            return
        for job_type in JobType:
            self._tasks.append(
                asyncio.create_task(
                    self._dispatch_loop(job_type), name=f"queue_{job_type.value}_loop"
                )
            )
        self._tasks.append(
            asyncio.create_task(self._sweep_loop(), name="queue_delayed_sweep_loop")
        )
        logger.info("queue manager started", extra={"event": "queue_started"})

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("queue manager stopped", extra={"event": "queue_stopped"})

    def pause_queue(self, job_type: JobType) -> None:
        self._paused.add(job_type)
        logger.info("queue paused", extra={"event": "queue_paused", "job_type": job_type.value})

    def resume_queue(self, job_type: JobType) -> None:
        self._paused.discard(job_type)
        logger.info("queue resumed", extra={"event": "queue_resumed", "job_type": job_type.value})

    def clear_queue(self, job_type: JobType) -> int:
        queue = self._queues[job_type]
        cleared = [job for _, _, job in queue]
        queue.clear()
        for job in cleared:
            job.status = JobStatus.FAILED
            job.error_message = "queue cleared"
            job.updated_at = self._clock()
            self._persist(job)
        logger.info(
            "queue cleared",
            extra={"event": "queue_cleared", "job_type": job_type.value},
        )
        return len(cleared)

    def pending_jobs(self, job_type: JobType) -> list[QueueJob]:
        return [job for _, _, job in sorted(self._queues[job_type])]

    def delayed_jobs(self) -> list[QueueJob]:
        return [job for _, _, job in sorted(self._delayed)]

    def is_busy(self, job_type: JobType) -> bool:
        return job_type in self._busy

    def stats(self) -> dict[str, dict[str, Any]]:
        delayed_by_type: dict[JobType, int] = {}
        for _, _, job in self._delayed:
            delayed_by_type[job.job_type] = delayed_by_type.get(job.job_type, 0) + 1
        return {
            job_type.value: {
                "pending": len(queue),
                "delayed": delayed_by_type.get(job_type, 0),
                "busy": job_type in self._busy,
                "paused": job_type in self._paused,
            }
            for job_type, queue in self._queues.items()
        }

    def _take_batch(self, job_type: JobType) -> list[QueueJob]:
        if job_type in self._busy or job_type in self._paused:
            return []
        queue = self._queues[job_type]
        batch: list[QueueJob] = []
        while queue and len(batch) < self._max_concurrent:
            batch.append(heapq.heappop(queue)[2])
        if batch:
            self._busy.add(job_type)
        return batch

    async def _run_batch(self, job_type: JobType, batch: list[QueueJob]) -> None:
        try:
            await asyncio.gather(*(self._process(job) for job in batch))
        finally:
            self._busy.discard(job_type)

    async def _process(self, job: QueueJob) -> None:
        job.status = JobStatus.PROCESSING
        job.updated_at = self._clock()
        self._persist(job)
        logger.debug("job processing", extra=job.log_extra("job_processing"))
        handler = self._handlers.get(job.job_type)
        try:
            if handler is None:
                raise QueueError(f"no handler registered for {job.job_type.value}")
            await handler(job)
        except Exception as exc:
            await self._handle_failure(job, exc)
            return
        job.status = JobStatus.COMPLETED
        job.updated_at = self._clock()
        self._persist(job)
        logger.debug("job completed", extra=job.log_extra("job_completed"))
        await self.events.emit(JOB_COMPLETED, {"job": job})

    async def _handle_failure(self, job: QueueJob, exc: Exception) -> None:
        now = self._clock()
        job.attempts += 1
        job.error_message = str(exc) or exc.__class__.__name__
        job.updated_at = now
        if job.attempts < job.max_attempts:
            delay = self.retry_delay_seconds(job.attempts)
            job.status = JobStatus.PENDING
            job.scheduled_at = now + timedelta(seconds=delay)
            heapq.heappush(self._delayed, (job.scheduled_at, next(self._sequence), job))
            self._persist(job)
            logger.warning(
                "job failed, retry scheduled in %.0fs: %s",
                delay,
                job.error_message,
                extra=job.log_extra("job_retry_scheduled"),
            )
            return
        job.status = JobStatus.FAILED
        self._persist(job)
        logger.error(
            "job failed permanently: %s",
            job.error_message,
            extra=job.log_extra("job_failed", severity="critico"),
        )
        await self.events.emit(JOB_FAILED, {"job": job})

    def _persist(self, job: QueueJob) -> None:
        if self._job_store is None:
            return
        try:
            self._job_store.save_job(job)
        except Exception:
            logger.warning(
                "failed to persist job",
                extra=job.log_extra("job_persist_error"),
                exc_info=True,
            )

    async def _dispatch_loop(self, job_type: JobType) -> None:
        while True:
            batch = self._take_batch(job_type)
            if batch:
                task = asyncio.create_task(
                    self._run_batch(job_type, batch),
                    name=f"queue_{job_type.value}_batch",
                )
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
            await asyncio.sleep(self._poll_interval_seconds)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_seconds)
            try:
                await self.sweep_delayed()
            except Exception:
                logger.exception("delayed sweep failed", extra={"event": "queue_sweep_error"})
