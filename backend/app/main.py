"""Coach evaluation worker entry point.

Usage:
    python -m app.main
"""

import asyncio
import logging
import signal

# Configure logging FIRST, before any other imports
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
)

# Reduce noise from third-party libraries (must be set before importing them)
logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine.Engine").setLevel(logging.WARNING)
logging.getLogger("asyncio").setLevel(logging.WARNING)
logging.getLogger("redis").setLevel(logging.WARNING)

from app.config import get_settings
from app.services import EvaluationWorker, HeartbeatScheduler, JobQueue
from app.storage import CoachRepository, cache, get_database, init_database
from core.models.coach import Thresholds
from core.rules import EvaluationJobHandler

# Startup timeout in seconds
STARTUP_TIMEOUT = 30

logger = logging.getLogger(__name__)


def build_default_thresholds() -> Thresholds:
    settings = get_settings()
    return Thresholds(
        green_gte=settings.green_default,
        yellow_range=settings.yellow_default,
    )


async def stop_services(
    worker: EvaluationWorker | None,
    heartbeat: HeartbeatScheduler | None,
) -> None:
    """Stop consuming, then cancel every heartbeat.

    A job finishing before the worker stops may still start a heartbeat.
    """
    if worker is not None:
        await worker.stop()
    if heartbeat is not None:
        await heartbeat.stop_all()


async def run_worker(stop_event: asyncio.Event) -> None:
    """Start the worker, block until `stop_event` is set, then shut down."""
    settings = get_settings()
    logger.info("Starting coach evaluation worker...")

    db_initialized = False
    cache_initialized = False
    worker: EvaluationWorker | None = None
    heartbeat: HeartbeatScheduler | None = None

    try:
        try:
            await asyncio.wait_for(init_database(), timeout=STARTUP_TIMEOUT)
            db_initialized = True
            logger.info("Database initialized")
        except asyncio.TimeoutError:
            raise RuntimeError(f"Database initialization timed out after {STARTUP_TIMEOUT}s")

        try:
            client = await asyncio.wait_for(cache.init_cache(), timeout=10)
            cache_initialized = True
        except asyncio.TimeoutError:
            raise RuntimeError("Redis initialization timed out after 10s")

        info = await cache.get_info()
        logger.info(f"Redis {info.get('redis_version')} ({info.get('status')})")

        queue = JobQueue(client)
        await queue.recover_stalled()
        logger.info(f"Queue {queue.queue_name}: {await queue.counts()}")

        handler = EvaluationJobHandler(
            CoachRepository(),
            default_thresholds=build_default_thresholds(),
        )
        heartbeat = HeartbeatScheduler(queue, delay_ms=settings.heartbeat_delay_ms)
        worker = EvaluationWorker(
            queue,
            handler,
            heartbeat=heartbeat,
            concurrency=settings.evaluator_concurrency,
            poll_interval=settings.queue_poll_interval,
        )
        await worker.start()

        await stop_event.wait()
        logger.info("Coach worker shutting down")

    finally:
        await stop_services(worker, heartbeat)
        if cache_initialized:
            await cache.close_cache()
        if db_initialized:
            await get_database().close()
        logger.info("Shutdown complete")


async def _main() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)
    await run_worker(stop_event)


def main():
    """Run the worker until SIGINT/SIGTERM."""
    asyncio.run(_main())


if __name__ == "__main__":
    main()
