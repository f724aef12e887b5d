"""Turn a running child process into a sequence of output frames."""

from __future__ import annotations

import asyncio
import codecs
import logging
from typing import AsyncIterator, Optional, Type, Union

from pydantic import BaseModel

from .frames import Done, ErrorChunk, OutputChunk, RunStatus, exit_message
from .registry import ProcessRegistry, RunningProcess

logger = logging.getLogger("coderunner.stream")

CHUNK_SIZE = 4096

_EOF = None


async def _pump(
    reader: Optional[asyncio.StreamReader],
    frame_type: Type[Union[OutputChunk, ErrorChunk]],
    queue: "asyncio.Queue[Optional[BaseModel]]",
) -> None:
    """Copy one pipe into the queue as frames, then post an EOF marker."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        if reader is None:
            return
        while True:
            data = await reader.read(CHUNK_SIZE)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    queue.put_nowait(frame_type(text=tail))
                return
            text = decoder.decode(data)
            if text:
                queue.put_nowait(frame_type(text=text))
    finally:
        queue.put_nowait(_EOF)


class ExecutionStream:
    """Frames produced by one execution.

    stdout chunks become ``output`` frames and stderr chunks become
    ``error`` frames, each pipe in arrival order.  Once both pipes close and
    the process has exited, the exit message and exactly one ``done`` frame
    follow.  The stream can be iterated once; :attr:`finished` and
    :attr:`status` report completion to anyone holding a reference.

    If the consumer stops early (client disconnect, cancellation) the
    process is killed and unregistered.
    """

    def __init__(
        self,
        running: RunningProcess,
        registry: ProcessRegistry,
        timeout_ms: int = 0,
    ) -> None:
        self.running = running
        self.timeout_ms = timeout_ms
        self.status: Optional[RunStatus] = None
        self.exit_code: Optional[int] = None
        self.finished = asyncio.Event()
        self._registry = registry
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[BaseModel]:
        if self._consumed:
            raise RuntimeError("execution stream already consumed")
        self._consumed = True
        return self._frames()

    async def _frames(self) -> AsyncIterator[BaseModel]:
        process = self.running.process
        queue: "asyncio.Queue[Optional[BaseModel]]" = asyncio.Queue()
        pumps = [
            asyncio.ensure_future(_pump(process.stdout, OutputChunk, queue)),
            asyncio.ensure_future(_pump(process.stderr, ErrorChunk, queue)),
        ]
        try:
            open_pipes = len(pumps)
            while open_pipes:
                frame = await queue.get()
                if frame is _EOF:
                    open_pipes -= 1
                    continue
                yield frame
            exit_code = await process.wait()
            self._finish(self._classify(exit_code), exit_code)
            yield exit_message(self.status, exit_code, self.timeout_ms)
            yield Done(status=self.status, exit_code=exit_code)
        finally:
            for pump in pumps:
                pump.cancel()
            if not self.finished.is_set():
                logger.info(
                    "Session %s: stream closed before process %s finished; killing",
                    self.running.session_id,
                    self.running.pid,
                )
                self.running.terminated = True
                if self._registry.active(self.running.session_id) is self.running:
                    self._registry.terminate(self.running.session_id)
                else:
                    self._registry.kill(self.running)
                self._finish(RunStatus.TERMINATED, None)

    def _classify(self, exit_code: Optional[int]) -> RunStatus:
        if self.running.timed_out:
            return RunStatus.TIMEOUT
        if self.running.terminated:
            return RunStatus.TERMINATED
        if exit_code == 0:
            return RunStatus.COMPLETED
        return RunStatus.FAILED

    def _finish(self, status: RunStatus, exit_code: Optional[int]) -> None:
        self._registry.unregister(self.running.session_id, self.running)
        self.running.finished = True
        self.status = status
        self.exit_code = exit_code
        self.finished.set()
        logger.info(
            "Session %s: %s process %s finished with status=%s exit_code=%s",
            self.running.session_id,
            self.running.language,
            self.running.pid,
            status.value,
            exit_code,
        )
