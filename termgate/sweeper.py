"""Periodic expiry of abandoned sessions."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from termgate.sessions import SessionRegistry, short_id

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Destroys sessions nobody has touched within the session timeout.

    Only sessions already past their deadline are destroyed, so a delayed
    or skipped run never ends a session early. Overlapping runs are safe
    because destroy is idempotent.
    """

    def __init__(self, registry: SessionRegistry, interval_seconds: float = 300):
        self._registry = registry
        self.interval_seconds = interval_seconds
        self.last_run: datetime | None = None
        self._task: asyncio.Task | None = None

    async def run_once(self, now: datetime | None = None) -> list[str]:
        """Run a single sweep and return the ids it destroyed."""
        now = now or self._registry.now()
        expired = await self._registry.sweep_expired(now)
        self.last_run = now
        for session_id in expired:
            logger.info(f"Cleaned up expired session: {short_id(session_id)}")
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired session(s)")
        return expired

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Session sweep error: {e}")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Session cleanup started (every {self.interval_seconds:g}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
