"""Periodic reclamation of idle sessions.

The janitor runs as a background task on the event loop, independent of
request handling.  Each sweep reclaims sessions idle for longer than the
TTL (killing their process, cancelling their watchdog and deleting their
directory) and removes stale directories no live session owns, e.g. ones
left behind by a previous server instance.  On shutdown a final pass
reclaims everything.

There is no lock between the sweep and request handlers.  Killing an
already-dead process and deleting an already-deleted directory are both
no-ops, so overlapping cleanup is harmless.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from .engine import ExecutionEngine
from .sessions import remove_tree

logger = logging.getLogger("coderunner.janitor")


class JanitorScheduler:
    def __init__(self, engine: ExecutionEngine, interval_seconds: float) -> None:
        self.engine = engine
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.ensure_future(self._loop())

    async def _loop(self) -> None:
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Error during expired session cleanup")
            await asyncio.sleep(self.interval_seconds)

    async def sweep(self, now: Optional[float] = None) -> int:
        """Reclaim expired sessions; returns how many were removed."""
        now = now if now is not None else time.time()
        ttl = self.engine.sessions.ttl_seconds
        removed = 0
        for session in self.engine.sessions.expired(now):
            logger.info("Cleaning up expired session directory: %s", session.directory)
            await self.engine.reclaim(session.id)
            removed += 1
        for directory in self.engine.sessions.untracked_directories():
            try:
                age = now - directory.stat().st_mtime
            except FileNotFoundError:
                continue
            if age > ttl and remove_tree(directory):
                logger.info("Removed stale directory: %s", directory)
                removed += 1
        logger.info(
            "Janitor sweep: removed=%d, sessions=%d, active_processes=%d",
            removed,
            len(self.engine.sessions),
            len(self.engine.registry),
        )
        return removed

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def shutdown(self) -> int:
        """Stop sweeping and reclaim every session unconditionally."""
        logger.info("Cleaning up all sessions...")
        await self.stop()
        count = await self.engine.reclaim_all()
        logger.info("Cleaned up %d session(s)", count)
        return count
