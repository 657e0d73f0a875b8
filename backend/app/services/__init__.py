"""Worker services."""

from app.services.job_queue import (
    JOB_EVALUATE,
    JOB_HEARTBEAT,
    JobEnvelope,
    JobEnvelopeError,
    JobQueue,
)
from app.services.heartbeat import HeartbeatScheduler
from app.services.evaluation_worker import EvaluationWorker

__all__ = [
    "JOB_EVALUATE",
    "JOB_HEARTBEAT",
    "JobEnvelope",
    "JobEnvelopeError",
    "JobQueue",
    "HeartbeatScheduler",
    "EvaluationWorker",
]
