"""Heartbeat scheduler: periodic re-evaluation of live sessions."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from app.config import get_settings

logger = logging.getLogger(__name__)


class HeartbeatQueue(Protocol):
    async def schedule_heartbeat(self, session_id: str, delay_ms: int): ...


class HeartbeatScheduler:
    """Keeps one background task per session that chains heartbeat jobs.

    Each round waits `delay_ms`, enqueues a `heartbeat` job with no snapshot
    ID (so the session is re-evaluated against its latest snapshot), and then
    waits for the worker to call `heartbeat_finished` before the next round.
    A session never has more than one heartbeat outstanding from this process.
    """

    def __init__(self, queue: HeartbeatQueue, delay_ms: int | None = None):
        self.queue = queue
        self.delay_ms = delay_ms if delay_ms is not None else get_settings().heartbeat_delay_ms
        self._tasks: dict[str, asyncio.Task] = {}
        self._finished: dict[str, asyncio.Event] = {}
        self._outstanding: set[str] = set()

    @property
    def active_sessions(self) -> list[str]:
        return [sid for sid, task in self._tasks.items() if not task.done()]

    def is_running(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    def is_outstanding(self, session_id: str) -> bool:
        """True while an enqueued heartbeat has not been reported back."""
        return session_id in self._outstanding

    def start(self, session_id: str) -> bool:
        """Start heartbeats for a session. Returns False if already running."""
        if self.is_running(session_id):
            return False

        self._finished[session_id] = asyncio.Event()
        self._tasks[session_id] = asyncio.create_task(
            self._run(session_id), name=f"heartbeat:{session_id}"
        )
        logger.info(f"Heartbeat started for session {session_id} every {self.delay_ms}ms")
        return True

    def heartbeat_finished(self, session_id: str) -> None:
        """Release the next round once the outstanding heartbeat was handled."""
        event = self._finished.get(session_id)
        if event is not None:
            event.set()

    async def stop(self, session_id: str) -> bool:
        """Cancel a session's heartbeat. Returns False if none was running."""
        task = self._tasks.pop(session_id, None)
        self._finished.pop(session_id, None)
        self._outstanding.discard(session_id)
        if task is None:
            return False

        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info(f"Heartbeat stopped for session {session_id}")
        return True

    async def stop_all(self) -> None:
        """Cancel every heartbeat (shutdown)."""
        for session_id in list(self._tasks):
            await self.stop(session_id)

    async def _run(self, session_id: str) -> None:
        interval = self.delay_ms / 1000
        finished = self._finished[session_id]
        while True:
            await asyncio.sleep(interval)
            finished.clear()
            try:
                envelope = await self.queue.schedule_heartbeat(session_id, delay_ms=0)
            except Exception as e:
                logger.warning(f"Heartbeat tick failed for session {session_id}: {e}")
                continue

            # Nothing was enqueued; try again after the next delay
            if envelope is None:
                continue

            self._outstanding.add(session_id)
            try:
                await finished.wait()
            finally:
                self._outstanding.discard(session_id)
