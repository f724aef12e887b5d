"""Session-isolated execution engine.

:class:`ExecutionEngine` owns every piece of per-session state: the session
store, the process registry, the latest execution stream of each session and
the run generation counters.  The HTTP layer holds one engine and passes the
caller's :class:`~coderunner.sessions.Session` into each operation.

A run goes through these steps, and any failure after validation becomes
frames rather than an exception:

1. the target path is confined to the session directory and the source is
   checked against the admission policy (synchronous, before any frame);
2. any process still running for the session is killed and reaped;
3. dependencies are resolved, best effort;
4. compiled languages are compiled; a failure ends the run;
5. the source is checked against the policy again, since the file may have
   been rewritten while the previous steps were waiting;
6. the program is spawned, registered and put under a watchdog;
7. its output is streamed until exactly one ``done`` frame.

Terminal commands skip steps 3 to 5.  Every step that waits re-checks the
session's run generation; a run overtaken by a newer request for the same
session stops without ever occupying the session's process slot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

from pydantic import BaseModel

from .config import Config
from .dependencies import DependencyResolver
from .errors import CompileError, ProcessSpawnError, SecurityViolation, ValidationError
from .frames import Done, ErrorChunk, Message, RunStatus
from .paths import PathGuard
from .policy import DenylistPolicy, SourcePolicy
from .registry import ProcessRegistry, RunningProcess
from .runners import LanguageRunner, ShellRunner, build_runners
from .sessions import Session, SessionStore
from .stream import ExecutionStream
from .supervisor import ExecutionResult, TimeoutSupervisor, terminate_process

logger = logging.getLogger("coderunner.engine")

# Scratch sources used by :meth:`ExecutionEngine.execute_source` live in a
# hidden subdirectory so they never clobber the user's own files.  Java keeps
# its conventional name because the class name must match the file.
SCRATCH_DIR = ".exec"
SCRATCH_FILES = {
    "python": "temp_code.py",
    "java": "Main.java",
    "javascript": "temp_code.js",
    "cpp": "temp_code.cpp",
}

RUN_CANCELLED = "Run cancelled"


@dataclass(frozen=True)
class ExecutionRequest:
    session_id: str
    language: str
    source_path: Path
    timeout_ms: int
    command: Optional[str] = None

    @property
    def is_command(self) -> bool:
        return self.command is not None


class ExecutionEngine:
    """Runs programs on behalf of sessions."""

    def __init__(self, config: Config, policy: Optional[SourcePolicy] = None) -> None:
        self.config = config
        self.sessions = SessionStore(config.storage_path, config.session_ttl_seconds)
        self.paths = PathGuard()
        self.policy = policy if policy is not None else DenylistPolicy()
        self.registry = ProcessRegistry(config.kill_grace_seconds)
        self.supervisor = TimeoutSupervisor(config.kill_grace_seconds, self.registry)
        self.resolver = DependencyResolver(
            config.toolchain,
            timeout_seconds=config.install_timeout_seconds,
            enabled=config.install_dependencies,
            grace_seconds=config.kill_grace_seconds,
        )
        self.runners: Dict[str, LanguageRunner] = build_runners(
            config.allowed_langs, config.toolchain, config.kill_grace_seconds
        )
        self.shell = ShellRunner(config.toolchain)
        self._streams: Dict[str, ExecutionStream] = {}
        self._generations: Dict[str, int] = {}

    # -- validation -------------------------------------------------------

    def runner_for(self, language: Optional[str]) -> LanguageRunner:
        if not language:
            raise ValidationError("language is required")
        runner = self.runners.get(language.lower())
        if runner is None:
            raise ValidationError(f"Unsupported language: {language}")
        return runner

    def timeout_for(self, timeout_ms: Optional[int], default: Optional[int] = None) -> int:
        if timeout_ms is None:
            return default if default is not None else self.config.default_timeout_ms
        if timeout_ms <= 0 or timeout_ms > self.config.max_timeout_ms:
            raise ValidationError(f"timeout_ms must be between 1 and {self.config.max_timeout_ms}")
        return timeout_ms

    def prepare_run(
        self,
        session: Session,
        language: Optional[str],
        path: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> ExecutionRequest:
        """Validate a run request without touching any process.

        Raises :class:`ValidationError`, :class:`PathViolation` or
        :class:`SecurityViolation`.
        """
        runner = self.runner_for(language)
        relative = path if path is not None else runner.default_filename
        source = self.paths.resolve(session, relative)
        if not runner.accepts(source):
            raise ValidationError(f"{source.name} is not a {runner.display_name} source file")
        if not source.is_file():
            raise ValidationError(f"File not found: {relative}")
        self._admit(runner, source)
        return ExecutionRequest(session.id, runner.language, source, self.timeout_for(timeout_ms))

    def prepare_command(
        self,
        session: Session,
        command: Optional[str],
        timeout_ms: Optional[int] = None,
    ) -> ExecutionRequest:
        """Validate a terminal command; raises like :meth:`prepare_run`."""
        if not self.config.terminal_enabled:
            raise ValidationError("Terminal is disabled")
        if not command or not command.strip():
            raise ValidationError("Command is required")
        self.policy.check(command, self.shell.language)
        return ExecutionRequest(
            session.id,
            self.shell.language,
            session.directory,
            self.timeout_for(timeout_ms, self.config.terminal_timeout_ms),
            command=command,
        )

    def _admit(self, runner: LanguageRunner, source: Path) -> None:
        self.policy.check(source.read_text(encoding="utf-8", errors="replace"), runner.language)

    # -- runs -------------------------------------------------------------

    def execution(self, session_id: str) -> Optional[ExecutionStream]:
        """The most recent streamed execution of a session, if any."""
        return self._streams.get(session_id)

    def _begin(self, session_id: str) -> int:
        generation = self._generations.get(session_id, 0) + 1
        self._generations[session_id] = generation
        return generation

    def _superseded(self, session_id: str, generation: int) -> bool:
        return self._generations.get(session_id) != generation

    async def _build(self, runner: LanguageRunner, session: Session, source: Path) -> Path:
        outcome = await runner.compile(session, source)
        if not outcome.ok or outcome.artifact is None:
            logger.info("Session %s: %s compilation failed", session.id, runner.display_name)
            raise CompileError(outcome.message)
        return outcome.artifact

    def _discard(self, running: RunningProcess) -> None:
        """Kill a process that never made it into the session's slot."""
        logger.info("Session %s: discarding superseded process %s", running.session_id, running.pid)
        running.terminated = True
        self.registry.kill(running)

    async def run(self, session: Session, request: ExecutionRequest) -> AsyncIterator[BaseModel]:
        """Execute ``request`` and yield its frames.

        Starting a run cancels whatever the session was running before; a
        run that is itself overtaken before its process is registered ends
        with a ``terminated`` frame and leaves the newer run alone.
        """
        generation = self._begin(session.id)
        if await self.registry.terminate_and_wait(session.id):
            logger.info("Session %s: previous process killed before new run", session.id)

        runner: Optional[LanguageRunner] = None
        artifact: Optional[Path] = None
        if not request.is_command:
            runner = self.runners[request.language]
            source_text = request.source_path.read_text(encoding="utf-8", errors="replace")
            await self.resolver.resolve(source_text, runner.language, session)
            if self._superseded(session.id, generation):
                yield Message(text=RUN_CANCELLED)
                yield Done(status=RunStatus.TERMINATED)
                return

            try:
                artifact = await self._build(runner, session, request.source_path)
            except CompileError as exc:
                yield ErrorChunk(text=exc.detail)
                yield Done(status=RunStatus.COMPILE_ERROR)
                return
            except ProcessSpawnError as exc:
                yield ErrorChunk(text=exc.detail)
                yield Done(status=RunStatus.SPAWN_ERROR)
                return
            if self._superseded(session.id, generation):
                yield Message(text=RUN_CANCELLED)
                yield Done(status=RunStatus.TERMINATED)
                return

            try:
                self._admit(runner, request.source_path)
            except SecurityViolation as exc:
                logger.warning("Session %s: source rejected before spawn: %s", session.id, exc.detail)
                yield ErrorChunk(text=exc.detail)
                yield Done(status=RunStatus.FAILED)
                return

        try:
            if runner is None:
                process = await self.shell.run(session, request.command)
            else:
                process = await runner.run(session, artifact)
        except ProcessSpawnError as exc:
            logger.warning("Session %s: %s", session.id, exc.detail)
            yield ErrorChunk(text=exc.detail)
            yield Done(status=RunStatus.SPAWN_ERROR)
            return

        running = RunningProcess(session.id, process, request.language)
        if self._superseded(session.id, generation):
            # terminate() or a newer run arrived while this one was spawning.
            self._discard(running)
            yield Message(text=RUN_CANCELLED)
            yield Done(status=RunStatus.TERMINATED)
            return
        self.registry.register(running)
        self.supervisor.arm(running, request.timeout_ms)
        stream = ExecutionStream(running, self.registry, request.timeout_ms)
        self._streams[session.id] = stream

        frames = stream.__aiter__()
        try:
            if runner is None:
                yield Message(text="Terminal started")
            else:
                yield Message(text=f"Running {runner.display_name} code...")
            async for frame in frames:
                yield frame
        finally:
            await frames.aclose()
            if not stream.finished.is_set():
                running.terminated = True
                self.registry.unregister(session.id, running)
                self.registry.kill(running)

    async def execute_source(
        self,
        session: Session,
        language: Optional[str],
        code: str,
        stdin: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> ExecutionResult:
        """Run a source text to completion and return its buffered output.

        The source is written to a scratch file that is removed afterwards.
        Compile and spawn failures, and a run overtaken by a newer request,
        are reported through ``stderr`` with a ``-1`` exit code.
        """
        runner = self.runner_for(language)
        if not code:
            raise ValidationError("No code provided")
        self.policy.check(code, runner.language)
        timeout = self.timeout_for(timeout_ms)

        generation = self._begin(session.id)
        await self.registry.terminate_and_wait(session.id)

        source = self.paths.resolve(session, f"{SCRATCH_DIR}/{SCRATCH_FILES[runner.language]}")
        artifact: Optional[Path] = None
        try:
            await self.resolver.resolve(code, runner.language, session)
            if self._superseded(session.id, generation):
                return _cancelled()
            source.parent.mkdir(exist_ok=True)
            source.write_text(code, encoding="utf-8")
            try:
                artifact = await self._build(runner, session, source)
                if self._superseded(session.id, generation):
                    return _cancelled()
                process = await runner.run(session, artifact)
            except (CompileError, ProcessSpawnError) as exc:
                return ExecutionResult(stdout="", stderr=exc.detail, exit_code=-1, duration_ms=0)

            running = RunningProcess(session.id, process, runner.language)
            if self._superseded(session.id, generation):
                running.terminated = True
                await terminate_process(process, self.config.kill_grace_seconds)
                return _cancelled()
            self.registry.register(running)
            try:
                result = await self.supervisor.with_timeout(process, timeout, stdin)
            finally:
                running.finished = True
                self.registry.unregister(session.id, running)
            if running.terminated and not result.timed_out:
                result.stderr += "\nProcess terminated."
            logger.info(
                "Session %s: %s execution finished: exit_code=%s, duration_ms=%s, timed_out=%s",
                session.id,
                runner.language,
                result.exit_code,
                result.duration_ms,
                result.timed_out,
            )
            return result
        finally:
            source.unlink(missing_ok=True)
            if artifact is not None and artifact != source:
                artifact.unlink(missing_ok=True)

    # -- other session operations -------------------------------------------

    def save_code(self, session: Session, language: Optional[str], code: str, path: Optional[str] = None) -> str:
        """Write ``code`` to the language's conventional file (or ``path``)."""
        runner = self.runner_for(language)
        target = self.paths.resolve(session, path if path is not None else runner.default_filename)
        if not runner.accepts(target):
            raise ValidationError(f"{target.name} is not a {runner.display_name} source file")
        scratch = session.directory.resolve() / SCRATCH_DIR
        if target == scratch or target.is_relative_to(scratch):
            raise ValidationError(f"{SCRATCH_DIR}/ is reserved")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(code, encoding="utf-8")
        return self.paths.relative(session, target)

    async def send_input(self, session: Session, text: str) -> bool:
        """Write a line to the stdin of the session's active process."""
        running = self.registry.active(session.id)
        if running is None or running.process.stdin is None:
            return False
        try:
            running.process.stdin.write((text + "\n").encode("utf-8"))
            await running.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.info("Session %s: process %s closed its stdin", session.id, running.pid)
            return False
        return True

    def terminate(self, session: Session) -> bool:
        """Kill the session's active process; idempotent."""
        self._begin(session.id)
        return self.registry.terminate(session.id)

    def session_info(self, session: Session) -> dict:
        running = self.registry.active(session.id)
        stream = self.execution(session.id)
        return {
            "session_id": session.id,
            "created_at": session.created_at,
            "last_active_at": session.last_active_at,
            "active_process": running is not None,
            "last_status": stream.status.value if stream is not None and stream.status else None,
            "files": session.files(),
        }

    # -- reclamation --------------------------------------------------------

    async def reclaim(self, session_id: str) -> None:
        """Kill the session's process, cancel its timers and delete its directory."""
        self._generations.pop(session_id, None)
        running = self.registry.active(session_id)
        if running is not None:
            running.cancel_watchdog()
        await self.registry.terminate_and_wait(session_id)
        self._streams.pop(session_id, None)
        self.sessions.discard(session_id)
        logger.info("Reclaimed session %s", session_id)

    async def reclaim_all(self) -> int:
        session_ids = [session.id for session in self.sessions]
        for session_id in session_ids:
            await self.reclaim(session_id)
        await self.registry.terminate_all()
        for directory in self.sessions.untracked_directories():
            self.sessions.discard(directory.name)
        return len(session_ids)


def _cancelled() -> ExecutionResult:
    return ExecutionResult(stdout="", stderr=RUN_CANCELLED, exit_code=-1, duration_ms=0)
