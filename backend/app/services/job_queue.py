"""Redis-backed evaluation job queue.

Jobs are JSON envelopes (orjson) moving between four Redis structures:

    enqueue ──> ready (list) ──reserve──> processing (list) ──complete──> (dropped)
                   ^                            │
                   │                          fail
                   │                            │
               promote_due <── delayed (zset) <─┤ attempts left
                                                │
                                 failed (list) <┘ attempts exhausted

Delivery is at-least-once: a reserved job stays in the processing list
until it completes or fails, and recover_stalled() moves anything left
there by a crashed worker back to ready.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import orjson
import redis.asyncio as redis

from app.config import get_settings
from app.storage.cache import (
    KEY_SUFFIX_DELAYED,
    KEY_SUFFIX_FAILED,
    KEY_SUFFIX_READY,
    queue_key,
)
from core.models.coach import EvaluationJob, JobTrigger, generate_id

logger = logging.getLogger(__name__)

JOB_EVALUATE = "evaluate"
JOB_HEARTBEAT = "heartbeat"

KEY_SUFFIX_PROCESSING = "processing"


class JobEnvelopeError(ValueError):
    """Raised when a queued payload cannot be decoded into an envelope."""


@dataclass
class JobEnvelope:
    """A queued job plus its delivery bookkeeping."""

    name: str
    data: dict[str, Any]
    id: str = field(default_factory=generate_id)
    attempts: int = 0
    max_attempts: int = 1
    backoff_ms: int = 0
    enqueued_at: int = 0  # epoch ms
    last_error: str | None = None

    # Exact bytes as stored in Redis, needed to remove it from the processing list
    raw: bytes | None = field(default=None, repr=False, compare=False)

    def to_bytes(self) -> bytes:
        payload = {
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "backoff_ms": self.backoff_ms,
            "enqueued_at": self.enqueued_at,
        }
        if self.last_error is not None:
            payload["last_error"] = self.last_error
        return orjson.dumps(payload)

    @classmethod
    def from_bytes(cls, raw: bytes) -> JobEnvelope:
        """Decode a stored envelope. Raises JobEnvelopeError."""
        try:
            payload = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise JobEnvelopeError(f"Invalid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise JobEnvelopeError(f"Envelope must be an object, got {type(payload).__name__}")

        name = payload.get("name")
        data = payload.get("data")
        if not isinstance(name, str) or not isinstance(data, dict):
            raise JobEnvelopeError("Envelope missing name or data")

        try:
            return cls(
                id=str(payload.get("id") or generate_id()),
                name=name,
                data=data,
                attempts=int(payload.get("attempts", 0)),
                max_attempts=int(payload.get("max_attempts", 1)),
                backoff_ms=int(payload.get("backoff_ms", 0)),
                enqueued_at=int(payload.get("enqueued_at", 0)),
                last_error=payload.get("last_error"),
                raw=raw,
            )
        except (TypeError, ValueError) as e:
            raise JobEnvelopeError(f"Invalid envelope field: {e}") from e

    def retry_delay_ms(self) -> int:
        """Exponential backoff for the retry after `attempts` failures."""
        if self.attempts <= 0:
            return 0
        return self.backoff_ms * 2 ** (self.attempts - 1)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


def _now_ms() -> int:
    return int(time.time() * 1000)


class JobQueue:
    """Durable job queue on one Redis instance."""

    def __init__(
        self,
        client: redis.Redis,
        queue_name: str | None = None,
        prefix: str | None = None,
        evaluate_max_attempts: int | None = None,
        evaluate_backoff_ms: int | None = None,
        clock: Callable[[], int] = _now_ms,
    ):
        settings = get_settings()
        self.client = client
        self.queue_name = queue_name or settings.queue_name
        self.prefix = prefix or settings.queue_prefix
        self.evaluate_max_attempts = evaluate_max_attempts or settings.evaluate_max_attempts
        self.evaluate_backoff_ms = (
            evaluate_backoff_ms
            if evaluate_backoff_ms is not None
            else settings.evaluate_backoff_ms
        )
        self._clock = clock

        self.ready_key = queue_key(self.queue_name, KEY_SUFFIX_READY, self.prefix)
        self.processing_key = queue_key(self.queue_name, KEY_SUFFIX_PROCESSING, self.prefix)
        self.delayed_key = queue_key(self.queue_name, KEY_SUFFIX_DELAYED, self.prefix)
        self.failed_key = queue_key(self.queue_name, KEY_SUFFIX_FAILED, self.prefix)

    # -------------------------------------------------------------------------
    # Producers
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        name: str,
        data: dict[str, Any],
        max_attempts: int = 1,
        backoff_ms: int = 0,
        delay_ms: int = 0,
    ) -> JobEnvelope:
        """Add a job, immediately ready or delayed by `delay_ms`."""
        envelope = JobEnvelope(
            name=name,
            data=data,
            max_attempts=max(1, max_attempts),
            backoff_ms=backoff_ms,
            enqueued_at=self._clock(),
        )
        raw = envelope.to_bytes()

        if delay_ms > 0:
            await self.client.zadd(self.delayed_key, {raw: envelope.enqueued_at + delay_ms})
        else:
            await self.client.rpush(self.ready_key, raw)

        logger.debug(f"Enqueued {name} job {envelope.id} (delay={delay_ms}ms)")
        return envelope

    async def enqueue_evaluation(self, job: EvaluationJob) -> JobEnvelope:
        """Enqueue an `evaluate` job with retry and exponential backoff."""
        try:
            return await self.enqueue(
                JOB_EVALUATE,
                job.to_message(),
                max_attempts=self.evaluate_max_attempts,
                backoff_ms=self.evaluate_backoff_ms,
            )
        except redis.RedisError as e:
            logger.error(f"Failed to enqueue evaluation job for session {job.session_id}: {e}")
            raise

    async def schedule_heartbeat(self, session_id: str, delay_ms: int) -> JobEnvelope | None:
        """Enqueue a single-attempt heartbeat evaluation after `delay_ms`.

        Scheduling failures are logged and swallowed; the next tick retries.
        """
        job = EvaluationJob(session_id=session_id, trigger=JobTrigger.HEARTBEAT)
        try:
            return await self.enqueue(JOB_HEARTBEAT, job.to_message(), delay_ms=delay_ms)
        except redis.RedisError as e:
            logger.error(f"Failed to schedule heartbeat for session {session_id}: {e}")
            return None

    # -------------------------------------------------------------------------
    # Consumers
    # -------------------------------------------------------------------------

    async def promote_due(self) -> int:
        """Move delayed jobs whose due time has passed onto the ready list."""
        due = await self.client.zrangebyscore(self.delayed_key, "-inf", self._clock())
        promoted = 0
        for raw in due:
            # Only the worker that wins the ZREM pushes the job
            if await self.client.zrem(self.delayed_key, raw):
                await self.client.rpush(self.ready_key, raw)
                promoted += 1
        return promoted

    async def reserve(self, timeout: float = 1.0) -> JobEnvelope | None:
        """Wait up to `timeout` seconds for the next job.

        Undecodable payloads are moved to the failed list and skipped.
        """
        await self.promote_due()

        raw = await self.client.blmove(
            self.ready_key, self.processing_key, timeout, src="LEFT", dest="RIGHT"
        )
        if raw is None:
            return None

        try:
            return JobEnvelope.from_bytes(raw)
        except JobEnvelopeError as e:
            logger.error(f"Discarding undecodable job payload: {e}")
            await self.client.lrem(self.processing_key, 1, raw)
            await self.client.rpush(self.failed_key, raw)
            return None

    async def complete(self, envelope: JobEnvelope) -> None:
        """Acknowledge a job; it is removed for good."""
        await self.client.lrem(self.processing_key, 1, envelope.raw or envelope.to_bytes())

    async def fail(self, envelope: JobEnvelope, error: str, retry: bool = True) -> bool:
        """Record a failed attempt. Returns True if the job was rescheduled."""
        original = envelope.raw or envelope.to_bytes()
        envelope.attempts += 1
        envelope.last_error = error
        raw = envelope.to_bytes()

        await self.client.lrem(self.processing_key, 1, original)

        if retry and not envelope.exhausted:
            delay = envelope.retry_delay_ms()
            await self.client.zadd(self.delayed_key, {raw: self._clock() + delay})
            logger.warning(
                f"Job {envelope.id} ({envelope.name}) failed attempt "
                f"{envelope.attempts}/{envelope.max_attempts}, retrying in {delay}ms: {error}"
            )
            envelope.raw = raw
            return True

        await self.client.rpush(self.failed_key, raw)
        logger.error(
            f"Job {envelope.id} ({envelope.name}) failed after "
            f"{envelope.attempts} attempt(s): {error}"
        )
        envelope.raw = raw
        return False

    async def recover_stalled(self) -> int:
        """Move jobs left in the processing list back to the ready list."""
        recovered = 0
        while await self.client.lmove(
            self.processing_key, self.ready_key, src="LEFT", dest="LEFT"
        ) is not None:
            recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} stalled job(s) on {self.queue_name}")
        return recovered

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    async def failed_jobs(self, limit: int = 100) -> list[JobEnvelope]:
        """Jobs in the failed list, oldest first. Undecodable entries are skipped."""
        rows = await self.client.lrange(self.failed_key, 0, limit - 1)
        envelopes = []
        for raw in rows:
            try:
                envelopes.append(JobEnvelope.from_bytes(raw))
            except JobEnvelopeError:
                continue
        return envelopes

    async def counts(self) -> dict[str, int]:
        return {
            "ready": await self.client.llen(self.ready_key),
            "processing": await self.client.llen(self.processing_key),
            "delayed": await self.client.zcard(self.delayed_key),
            "failed": await self.client.llen(self.failed_key),
        }
