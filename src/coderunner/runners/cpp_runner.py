"""
Runner for C++ sources.

The source is compiled with the configured native compiler into an
executable next to it (``main.cpp`` becomes ``main``, or ``main.exe`` on
Windows), which is then executed directly.  A stale executable from an
earlier build is removed first so that a failed compile never leaves
something runnable behind.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List

from ..sessions import Session
from .base import CompileOutcome, LanguageRunner


def executable_path(source_path: Path) -> Path:
    return source_path.with_suffix(".exe" if sys.platform == "win32" else "")


class CppRunner(LanguageRunner):
    language = "cpp"
    display_name = "C++"
    default_filename = "main.cpp"
    suffixes = (".cpp", ".cc", ".cxx")

    async def compile(self, session: Session, source_path: Path) -> CompileOutcome:
        output_path = executable_path(source_path)
        output_path.unlink(missing_ok=True)
        args = [self.toolchain.cxx, str(source_path), "-o", str(output_path)]
        returncode, stderr = await self._run_compiler(args, source_path.parent)
        if returncode != 0 or stderr.strip():
            output_path.unlink(missing_ok=True)
            return CompileOutcome(ok=False, stderr=stderr)
        return CompileOutcome(ok=True, artifact=output_path)

    def run_command(self, session: Session, artifact: Path) -> List[str]:
        return [str(artifact)]
