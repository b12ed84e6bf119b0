"""Durable job queue and worker pool.

Jobs live in the ``queue_jobs`` table. A fixed number of asyncio workers
pull the oldest visible job, run the handler under a timeout, and either
complete the job, reschedule it with a backoff delay, or abandon it once
its attempts are exhausted.

SQLite has no ``SELECT ... FOR UPDATE SKIP LOCKED``, so a claim is a
conditional ``UPDATE`` that re-checks visibility in its ``WHERE`` clause;
``rowcount == 1`` means this worker owns the job. A job is visible when it
is pending and due, or when it is running under a lease older than
``release_after`` (its worker died or hung).

Idle workers wait on a bounded wake queue. ``enqueue`` and a periodic
ticker put wake signals on it; ``poll_interval`` bounds the wait if no
signal arrives.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Protocol

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apps.queue.exceptions import PermanentJobError
from apps.queue.models import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_RUNNING,
    QueueJob,
)
from apps.report.schemas import TaskMetadata
from common.utils import Clock, utc_now

logger = logging.getLogger(__name__)

DEFAULT_QUEUE = "generate_pdf"
# 一次领取时考察的候选任务数
_CLAIM_BATCH = 5


def retry_delay(
    attempt: int,
    base: float = 5.0,
    factor: float = 2.0,
    cap: float = 300.0,
) -> timedelta:
    """Backoff before the attempt following ``attempt`` (1-based).

    ``base * factor ** (attempt - 1)`` seconds, capped at ``cap``.
    """
    exponent = max(int(attempt), 1) - 1
    seconds = min(base * (factor ** exponent), cap)
    return timedelta(seconds=max(seconds, 0.0))


@dataclass(frozen=True)
class JobEnvelope:
    """A claimed job as seen by the handler."""

    id: str
    task_id: str
    attempt: int
    max_attempts: int
    claimed_by: str
    payload: dict[str, Any] = field(default_factory=dict)


class JobHandler(Protocol):
    def __call__(self, envelope: JobEnvelope) -> Awaitable[None]: ...

    async def on_abandoned(self, envelope: JobEnvelope, message: str) -> None: ...


class JobQueue:
    """Database-backed queue with a bounded pool of asyncio workers.

    Args:
        session_factory: Async session factory.
        handler: Awaitable job handler with an ``on_abandoned`` hook.
        concurrency: Number of workers (clamped to at least 1).
        queue_name: Logical queue name stored on each job.
        max_attempts: Attempt cap per job, first attempt included.
        timeout: Seconds a single attempt may run.
        release_after: Seconds after which a running job's lease expires.
        wake_interval: Seconds between wake ticks.
        poll_interval: Longest an idle worker waits without a wake signal.
        backoff: ``attempt -> timedelta`` delay before the next attempt.
        clock: Current UTC time source.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        handler: JobHandler,
        concurrency: int = 1,
        *,
        queue_name: str = DEFAULT_QUEUE,
        max_attempts: int = 3,
        timeout: float = 600.0,
        release_after: float = 1800.0,
        wake_interval: float = 1.0,
        poll_interval: float = 5.0,
        backoff: Callable[[int], timedelta] = retry_delay,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._handler = handler
        self._concurrency = max(int(concurrency), 1)
        self._queue_name = queue_name
        self._max_attempts = max(int(max_attempts), 1)
        self._timeout = timeout
        self._release_after = timedelta(seconds=release_after)
        self._wake_interval = wake_interval
        self._poll_interval = poll_interval
        self._backoff = backoff
        self._clock = clock
        self._started = False
        self._wake: Optional[asyncio.Queue] = None
        self._tasks: list[asyncio.Task] = []

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def enqueue(self, task_id: str, metadata: TaskMetadata) -> list[str]:
        """Durably record a job for ``task_id`` and wake an idle worker."""
        now = self._clock()
        job = QueueJob(
            queue=self._queue_name,
            task_id=task_id,
            payload=metadata.model_dump(mode="json"),
            status=JOB_PENDING,
            attempts=0,
            max_attempts=self._max_attempts,
            available_at=now,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(job)
            await session.commit()
        logger.info("Enqueued job %s for task %s", job.id, task_id)
        self.notify()
        return [job.id]

    def notify(self) -> None:
        """Non-blocking wake signal; dropped when the signal queue is full."""
        if self._wake is None:
            return
        try:
            self._wake.put_nowait(None)
        except asyncio.QueueFull:
            pass

    # ------------------------------------------------------------------
    # Worker pool lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Spawn the workers and the wake ticker on the running loop."""
        if self._started:
            raise RuntimeError("job queue already started")
        self._started = True
        self._wake = asyncio.Queue(maxsize=self._concurrency)
        for i in range(self._concurrency):
            self._tasks.append(asyncio.create_task(self._worker(f"worker-{i + 1}")))
        self._tasks.append(asyncio.create_task(self._ticker()))
        logger.info(
            "Job queue %s started with %d worker(s)", self._queue_name, self._concurrency
        )

    async def stop(self) -> None:
        """Cancel workers and ticker and wait for them to exit."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Job queue %s stopped", self._queue_name)

    async def _ticker(self) -> None:
        while True:
            await asyncio.sleep(self._wake_interval)
            self.notify()

    async def _worker(self, worker_id: str) -> None:
        while True:
            try:
                processed = await self.process_next(worker_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Queue worker %s error: %s", worker_id, e, exc_info=True)
                await asyncio.sleep(1)
                continue
            if processed:
                continue
            try:
                await asyncio.wait_for(self._wake.get(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Claim and execution
    # ------------------------------------------------------------------

    def _visible(self, now: datetime):
        lease_expired = now - self._release_after
        return or_(
            and_(QueueJob.status == JOB_PENDING, QueueJob.available_at <= now),
            and_(QueueJob.status == JOB_RUNNING, QueueJob.claimed_at < lease_expired),
        )

    async def claim_next(self, worker_id: str) -> Optional[JobEnvelope]:
        """Exclusively claim the oldest visible job, or return None."""
        while True:
            now = self._clock()
            async with self._session_factory() as session:
                result = await session.execute(
                    select(QueueJob.id)
                    .where(QueueJob.queue == self._queue_name, self._visible(now))
                    .order_by(QueueJob.available_at, QueueJob.created_at)
                    .limit(_CLAIM_BATCH)
                )
                candidates = list(result.scalars().all())
                if not candidates:
                    return None

                job = None
                for job_id in candidates:
                    claimed = await session.execute(
                        update(QueueJob)
                        .where(QueueJob.id == job_id, self._visible(now))
                        .values(
                            status=JOB_RUNNING,
                            attempts=QueueJob.attempts + 1,
                            claimed_by=worker_id,
                            claimed_at=now,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    await session.commit()
                    if claimed.rowcount == 1:
                        job = await session.get(QueueJob, job_id, populate_existing=True)
                        break
                if job is None:
                    # 候选任务都被其他 worker 抢先领取，重新查询
                    continue

                envelope = JobEnvelope(
                    id=job.id,
                    task_id=job.task_id,
                    attempt=job.attempts,
                    max_attempts=job.max_attempts,
                    claimed_by=worker_id,
                    payload=dict(job.payload or {}),
                )

            if envelope.attempt > envelope.max_attempts:
                # 租约过期后重新领取，但尝试次数已用完
                await self._abandon(
                    envelope,
                    f"lease expired after {envelope.max_attempts} attempt(s): {job.last_error or 'worker lost'}",
                )
                continue

            logger.info(
                "Worker %s claimed job %s (task %s, attempt %d/%d)",
                worker_id,
                envelope.id,
                envelope.task_id,
                envelope.attempt,
                envelope.max_attempts,
            )
            return envelope

    async def process_next(self, worker_id: str) -> bool:
        """Claim one job and run it. Returns False when nothing was visible."""
        envelope = await self.claim_next(worker_id)
        if envelope is None:
            return False

        try:
            await asyncio.wait_for(self._handler(envelope), timeout=self._timeout)
        except PermanentJobError as e:
            logger.error("Job %s failed permanently: %s", envelope.id, e)
            await self._abandon(envelope, str(e))
        except asyncio.TimeoutError:
            logger.error("Job %s timed out after %ss", envelope.id, self._timeout)
            await self._retry_or_abandon(envelope, f"job timed out after {self._timeout:g}s")
        except Exception as e:
            logger.error("Job %s attempt %d failed: %s", envelope.id, envelope.attempt, e, exc_info=True)
            await self._retry_or_abandon(envelope, str(e) or type(e).__name__)
        else:
            await self._finish(envelope, JOB_COMPLETED, None)
            logger.info("Job %s completed (task %s)", envelope.id, envelope.task_id)
        return True

    async def _owned_update(self, envelope: JobEnvelope, **values) -> bool:
        values["updated_at"] = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                update(QueueJob)
                .where(
                    QueueJob.id == envelope.id,
                    QueueJob.status == JOB_RUNNING,
                    QueueJob.claimed_by == envelope.claimed_by,
                    QueueJob.attempts == envelope.attempt,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def _finish(self, envelope: JobEnvelope, status: str, error: Optional[str]) -> bool:
        return await self._owned_update(
            envelope,
            status=status,
            last_error=error,
            finished_at=self._clock(),
        )

    async def _retry_or_abandon(self, envelope: JobEnvelope, message: str) -> None:
        if envelope.attempt >= envelope.max_attempts:
            await self._abandon(envelope, message)
            return
        delay = self._backoff(envelope.attempt)
        rescheduled = await self._owned_update(
            envelope,
            status=JOB_PENDING,
            available_at=self._clock() + delay,
            claimed_by=None,
            claimed_at=None,
            last_error=message,
        )
        if rescheduled:
            logger.info(
                "Job %s rescheduled in %.1fs (attempt %d/%d)",
                envelope.id,
                delay.total_seconds(),
                envelope.attempt,
                envelope.max_attempts,
            )

    async def _abandon(self, envelope: JobEnvelope, message: str) -> None:
        if not await self._finish(envelope, JOB_FAILED, message):
            return
        logger.error(
            "Job %s abandoned after %d attempt(s): %s", envelope.id, envelope.attempt, message
        )
        try:
            await self._handler.on_abandoned(envelope, message)
        except Exception as e:
            logger.error("on_abandoned hook failed for job %s: %s", envelope.id, e, exc_info=True)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def purge_finished(self, older_than: timedelta) -> int:
        """Delete completed and failed jobs finished before ``now - older_than``."""
        cutoff = self._clock() - older_than
        async with self._session_factory() as session:
            result = await session.execute(
                delete(QueueJob)
                .where(
                    QueueJob.queue == self._queue_name,
                    QueueJob.status.in_((JOB_COMPLETED, JOB_FAILED)),
                    QueueJob.finished_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount or 0

    async def pending_task_ids(self) -> set[str]:
        """Task ids that still have a pending or running job."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(QueueJob.task_id).where(
                    QueueJob.queue == self._queue_name,
                    QueueJob.status.in_((JOB_PENDING, JOB_RUNNING)),
                )
            )
            return set(result.scalars().all())
