"""Evaluation worker: consumes the job queue and runs the job handler."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator

from pydantic import ValidationError

from app.config import get_settings
from app.services.heartbeat import HeartbeatScheduler
from app.services.job_queue import JOB_EVALUATE, JOB_HEARTBEAT, JobEnvelope, JobQueue
from core.models.coach import EvaluationJob
from core.rules.handler import EvaluationJobHandler, JobOutcome, JobResult

logger = logging.getLogger(__name__)

HANDLED_JOBS = frozenset({JOB_EVALUATE, JOB_HEARTBEAT})


class EvaluationWorker:
    """Runs `concurrency` consumer tasks against one JobQueue.

    Jobs for the same session are serialized inside this process; jobs for
    different sessions run concurrently. A session that completes an
    evaluation gets a heartbeat; one that no longer exists loses it.
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: EvaluationJobHandler,
        heartbeat: HeartbeatScheduler | None = None,
        concurrency: int | None = None,
        poll_interval: float | None = None,
    ):
        settings = get_settings()
        self.queue = queue
        self.handler = handler
        self.heartbeat = heartbeat
        self.concurrency = max(1, concurrency or settings.evaluator_concurrency)
        self.poll_interval = poll_interval or settings.queue_poll_interval

        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = defaultdict(int)

        # Stats
        self.processed = 0
        self.failed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._consume(i), name=f"evaluator-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(
            f"Evaluation worker attached to queue {self.queue.queue_name} "
            f"(concurrency={self.concurrency})"
        )

    async def stop(self) -> None:
        """Stop consuming. In-flight jobs are cancelled and recovered on restart."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f"Evaluation worker stopped (processed={self.processed}, failed={self.failed})")

    async def wait(self) -> None:
        """Block until all consumer tasks exit."""
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _consume(self, index: int) -> None:
        while self._running:
            try:
                envelope = await self.queue.reserve(timeout=self.poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Consumer {index} failed to reserve job: {e}")
                await asyncio.sleep(self.poll_interval)
                continue

            if envelope is None:
                continue

            try:
                await self.process(envelope)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # The envelope stays in the processing list until recover_stalled
                logger.error(f"Consumer {index} failed to settle job {envelope.id}: {e}")
                await asyncio.sleep(self.poll_interval)

    async def process(self, envelope: JobEnvelope) -> JobResult | None:
        """Run one reserved job and acknowledge or fail it.

        Returns the handler result, or None if the job failed.
        """
        if envelope.name not in HANDLED_JOBS:
            await self.queue.fail(envelope, f"Unknown job name: {envelope.name}", retry=False)
            self.failed += 1
            return None

        try:
            job = EvaluationJob.model_validate(envelope.data)
        except ValidationError as e:
            await self.queue.fail(envelope, f"Invalid job data: {e}", retry=False)
            self.failed += 1
            return None

        # Redeliveries carry the same envelope ID, which is the dedupe key
        if job.job_id is None:
            job = job.model_copy(update={"job_id": envelope.id})

        try:
            async with self._session_lock(job.session_id):
                result = await self.handler.handle(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"Coach {envelope.name} job {envelope.id} failed for session "
                f"{job.session_id}: {e}",
                exc_info=True,
            )
            self.failed += 1
            if self.heartbeat is not None and envelope.name == JOB_HEARTBEAT:
                await self.heartbeat.stop(job.session_id)
            await self.queue.fail(envelope, repr(e))
            return None

        if self.heartbeat is not None:
            await self._update_heartbeat(envelope, job, result)

        await self.queue.complete(envelope)
        self.processed += 1
        return result

    async def _update_heartbeat(
        self, envelope: JobEnvelope, job: EvaluationJob, result: JobResult
    ) -> None:
        if result.outcome == JobOutcome.SESSION_NOT_FOUND:
            await self.heartbeat.stop(job.session_id)
            return

        if envelope.name == JOB_HEARTBEAT:
            self.heartbeat.heartbeat_finished(job.session_id)
        if result.outcome == JobOutcome.COMPLETED:
            self.heartbeat.start(job.session_id)

    @asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        self._lock_users[session_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if self._lock_users[session_id] == 0:
                del self._lock_users[session_id]
                self._locks.pop(session_id, None)
