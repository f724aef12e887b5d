"""Timeouts and termination of child processes.

Termination policy: a child is first sent SIGTERM (to its whole process
group on POSIX, so helpers it forked go with it).  If it is still alive
after the grace period it receives SIGKILL.  Both steps tolerate a process
that has already gone away.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .registry import ProcessRegistry, RunningProcess

logger = logging.getLogger("coderunner.supervisor")

_POSIX = os.name == "posix"


def signal_process(process: asyncio.subprocess.Process, sig: int) -> None:
    """Deliver ``sig`` to the process group led by ``process``."""
    try:
        if _POSIX:
            os.killpg(process.pid, sig)
        elif sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
    except (ProcessLookupError, PermissionError):
        pass


async def reap(process: asyncio.subprocess.Process, grace_seconds: float) -> Optional[int]:
    """Wait for a signalled process, escalating to SIGKILL after the grace period."""
    try:
        return await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        logger.warning("Process %s ignored SIGTERM for %.1fs; sending SIGKILL", process.pid, grace_seconds)
        signal_process(process, getattr(signal, "SIGKILL", signal.SIGTERM))
        return await process.wait()


async def terminate_process(process: asyncio.subprocess.Process, grace_seconds: float) -> Optional[int]:
    signal_process(process, signal.SIGTERM)
    return await reap(process, grace_seconds)


@dataclass
class ExecutionResult:
    """Result of running a program to completion.

    Attributes
    ----------
    stdout: str
        Standard output captured from the execution.
    stderr: str
        Standard error captured from the execution.
    exit_code: int
        Exit status of the process.  Zero usually indicates success; a
        negative value is the signal that ended it.
    duration_ms: int
        Wall-clock execution time in milliseconds.
    timed_out: bool
        Whether the watchdog killed the process.
    """

    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int
    timed_out: bool = False


class TimeoutSupervisor:
    """Per-execution watchdog.

    :meth:`arm` attaches a timer to a streamed run; :meth:`with_timeout`
    drives a buffered run to completion.  Either way a process that
    outlives its budget is killed and the outcome reports a timeout rather
    than raising.  Timer kills go through ``registry`` when one is given,
    so that draining the registry also waits for them.
    """

    def __init__(self, grace_seconds: float = 2.0, registry: Optional["ProcessRegistry"] = None) -> None:
        self.grace_seconds = grace_seconds
        self.registry = registry

    def arm(self, running: "RunningProcess", timeout_ms: int) -> None:
        if timeout_ms <= 0:
            return
        loop = asyncio.get_running_loop()
        running.cancel_watchdog()
        running.watchdog = loop.call_later(timeout_ms / 1000, self._fire, running, timeout_ms)

    def _fire(self, running: "RunningProcess", timeout_ms: int) -> None:
        running.watchdog = None
        if running.finished:
            return
        logger.warning(
            "Session %s: process %s exceeded %d ms; killing",
            running.session_id,
            running.pid,
            timeout_ms,
        )
        running.timed_out = True
        if self.registry is not None:
            self.registry.kill(running)
        else:
            running.kill(self.grace_seconds)

    async def with_timeout(
        self,
        process: asyncio.subprocess.Process,
        timeout_ms: int,
        stdin_data: Optional[str] = None,
    ) -> ExecutionResult:
        """Race the process against a timer and collect its output.

        On expiry the process is killed and whatever stdout/stderr it
        produced up to that point is returned with ``timed_out`` set.
        """
        start_time = time.perf_counter()
        payload = (stdin_data or "").encode("utf-8")
        communicate = asyncio.ensure_future(process.communicate(input=payload))
        timed_out = False
        try:
            await asyncio.wait_for(asyncio.shield(communicate), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning("Process %s exceeded %d ms; killing", process.pid, timeout_ms)
            await terminate_process(process, self.grace_seconds)
        except asyncio.CancelledError:
            await terminate_process(process, self.grace_seconds)
            communicate.cancel()
            raise
        stdout, stderr = await communicate
        duration = int((time.perf_counter() - start_time) * 1000)
        stdout_text = (stdout or b"").decode("utf-8", errors="replace")
        stderr_text = (stderr or b"").decode("utf-8", errors="replace")
        exit_code = process.returncode if process.returncode is not None else -1
        if timed_out:
            stderr_text += f"\nExecution timed out after {timeout_ms} ms."
        return ExecutionResult(stdout_text, stderr_text, exit_code, duration, timed_out)
