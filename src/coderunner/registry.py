"""Registry of the live process owned by each session.

A session slot is either empty or holds exactly one :class:`RunningProcess`.
Registering a process for an occupied slot kills the previous occupant
first, so a session never has two programs running at once.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from .supervisor import reap, signal_process

logger = logging.getLogger("coderunner.registry")


@dataclass(eq=False)
class RunningProcess:
    session_id: str
    process: asyncio.subprocess.Process
    language: str
    started_at: float = field(default_factory=time.time)
    watchdog: Optional[asyncio.TimerHandle] = None
    timed_out: bool = False
    terminated: bool = False
    finished: bool = False
    reaper: Optional["asyncio.Future[Optional[int]]"] = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.returncode is None

    def cancel_watchdog(self) -> None:
        if self.watchdog is not None:
            self.watchdog.cancel()
            self.watchdog = None

    def kill(self, grace_seconds: float) -> Optional["asyncio.Future[Optional[int]]"]:
        """Send SIGTERM now and schedule the SIGKILL escalation.

        Repeated calls return the same reaper task.
        """
        self.cancel_watchdog()
        if self.reaper is None and not self.finished:
            signal_process(self.process, signal.SIGTERM)
            self.reaper = asyncio.ensure_future(reap(self.process, grace_seconds))
        return self.reaper


class ProcessRegistry:
    """Maps session id to its active process."""

    def __init__(self, grace_seconds: float = 2.0) -> None:
        self.grace_seconds = grace_seconds
        self._slots: Dict[str, RunningProcess] = {}
        self._reapers: Set[asyncio.Future] = set()

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._slots

    def active(self, session_id: str) -> Optional[RunningProcess]:
        return self._slots.get(session_id)

    def sessions(self) -> List[str]:
        return list(self._slots)

    def register(self, running: RunningProcess) -> Optional[RunningProcess]:
        """Store ``running`` for its session, killing any prior occupant.

        Returns the process that was displaced, if any.
        """
        prior = self._slots.get(running.session_id)
        if prior is not None and prior is not running:
            logger.info(
                "Session %s: killing process %s before registering %s",
                running.session_id,
                prior.pid,
                running.pid,
            )
            prior.terminated = True
            self.kill(prior)
        self._slots[running.session_id] = running
        logger.info("Session %s: registered %s process %s", running.session_id, running.language, running.pid)
        return prior

    def unregister(self, session_id: str, running: Optional[RunningProcess] = None) -> bool:
        """Empty the slot; a no-op if it is empty or held by another process.

        Passing ``running`` guards against a finished run evicting the
        process that replaced it.
        """
        if running is not None:
            running.cancel_watchdog()
        current = self._slots.get(session_id)
        if current is None or (running is not None and current is not running):
            return False
        del self._slots[session_id]
        current.cancel_watchdog()
        return True

    def terminate(self, session_id: str) -> bool:
        """Kill the session's active process; returns whether one existed."""
        running = self._slots.pop(session_id, None)
        if running is None:
            return False
        running.terminated = True
        logger.info("Session %s: terminating process %s", session_id, running.pid)
        self.kill(running)
        return True

    async def terminate_and_wait(self, session_id: str) -> bool:
        running = self._slots.get(session_id)
        existed = self.terminate(session_id)
        if running is not None and running.reaper is not None:
            await asyncio.shield(running.reaper)
        return existed

    async def terminate_all(self) -> int:
        count = 0
        for session_id in self.sessions():
            if self.terminate(session_id):
                count += 1
        await self.drain()
        return count

    async def drain(self) -> None:
        """Wait for every pending kill to complete."""
        if self._reapers:
            await asyncio.gather(*list(self._reapers), return_exceptions=True)

    def kill(self, running: RunningProcess) -> None:
        """Kill ``running`` without touching the slots."""
        reaper = running.kill(self.grace_seconds)
        if reaper is not None and reaper not in self._reapers and not reaper.done():
            self._reapers.add(reaper)
            reaper.add_done_callback(self._reapers.discard)
