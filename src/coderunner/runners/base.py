"""
Base interfaces for language runners.

A runner knows how to turn a source file inside a session directory into a
running child process: an optional compile step followed by a run step.
Concrete runners subclass :class:`LanguageRunner` and implement
:meth:`LanguageRunner.run_command`; compiled languages also override
:meth:`LanguageRunner.compile`.

No OS-level isolation is applied to the child.  Processes run with the
privileges of the service, confined only by their working directory, so
deployments are expected to add their own containment around the service.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..config import Toolchain
from ..errors import ProcessSpawnError
from ..sessions import Session
from ..supervisor import terminate_process

logger = logging.getLogger("coderunner.runners")


@dataclass
class CompileOutcome:
    """Result of a compile step.

    Attributes
    ----------
    ok: bool
        Whether a runnable artifact was produced.
    artifact: Path, optional
        What :meth:`LanguageRunner.run` should execute.  For interpreted
        languages this is the source file itself.
    stderr: str
        Compiler diagnostics, verbatim.
    hint: str, optional
        Suggestion appended after the diagnostics.
    """

    ok: bool
    artifact: Optional[Path] = None
    stderr: str = ""
    hint: Optional[str] = None

    @property
    def message(self) -> str:
        if self.hint:
            return f"{self.stderr.rstrip()}\n\n{self.hint}"
        return self.stderr


async def spawn(
    args: Sequence[str],
    cwd: Path,
    env: Optional[Dict[str, str]] = None,
) -> asyncio.subprocess.Process:
    """Start ``args`` with piped stdio in its own process group."""
    try:
        return await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd),
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=os.name == "posix",
        )
    except OSError as exc:
        raise ProcessSpawnError(f"Failed to start process: {exc}") from exc


class LanguageRunner(abc.ABC):
    """
    Abstract base class for language runners.

    Attributes
    ----------
    language: str
        Identifier used in requests (``python``, ``java``...).
    display_name: str
        Human readable name used in lifecycle messages.
    default_filename: str
        Conventional source file name inside a session.
    suffixes: tuple of str
        Accepted source file suffixes.
    """

    language: str = ""
    display_name: str = ""
    default_filename: str = ""
    suffixes: Tuple[str, ...] = ()

    def __init__(self, toolchain: Toolchain, compile_timeout: float = 60.0, grace_seconds: float = 2.0) -> None:
        self.toolchain = toolchain
        self.compile_timeout = compile_timeout
        self.grace_seconds = grace_seconds

    @property
    def compiled(self) -> bool:
        return type(self).compile is not LanguageRunner.compile

    def accepts(self, path: Path) -> bool:
        return path.suffix.lower() in self.suffixes

    async def compile(self, session: Session, source_path: Path) -> CompileOutcome:
        """Produce the artifact to run.  Interpreted languages run the source."""
        return CompileOutcome(ok=True, artifact=source_path)

    @abc.abstractmethod
    def run_command(self, session: Session, artifact: Path) -> List[str]:
        """Return the argv that executes ``artifact``."""
        raise NotImplementedError

    def environment(self, session: Session) -> Dict[str, str]:
        return dict(os.environ)

    async def run(self, session: Session, artifact: Path) -> asyncio.subprocess.Process:
        args = self.run_command(session, artifact)
        logger.info("Session %s: starting %s", session.id, " ".join(args))
        return await spawn(args, session.directory, self.environment(session))

    async def _run_compiler(self, args: Sequence[str], cwd: Path) -> Tuple[int, str]:
        """Run a compiler to completion, returning its exit code and output.

        Raises :class:`ProcessSpawnError` if the compiler is missing.  A
        compiler that overruns ``compile_timeout`` is killed and reported as
        a failure.
        """
        logger.info("Compiling: %s", " ".join(args))
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=os.name == "posix",
            )
        except OSError as exc:
            raise ProcessSpawnError(f"Failed to start compiler: {exc}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.compile_timeout)
        except asyncio.TimeoutError:
            await terminate_process(process, self.grace_seconds)
            return -1, f"Compilation timed out after {self.compile_timeout:g} seconds."
        except asyncio.CancelledError:
            await terminate_process(process, self.grace_seconds)
            raise
        output = stderr.decode("utf-8", errors="replace")
        if not output.strip() and process.returncode != 0:
            output = stdout.decode("utf-8", errors="replace")
        return process.returncode, output
