"""
Runner for Java sources.

The source is compiled with ``javac`` next to itself and the resulting
class is started with ``java``.  The class name is the file's base name, so
a public class must live in a file of the same name; ``javac`` rejects the
mismatch and the diagnostic is passed through with a suggested fix.

Jars fetched by the dependency resolver land in ``lib/`` inside the session
and are put on the classpath of both steps.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import List

from ..sessions import Session
from .base import CompileOutcome, LanguageRunner

_MISMATCH_RE = re.compile(r"class (\w+) is public, should be declared in a file named (\w+)\.java")

LIB_DIR = "lib"


def file_name_hint(stderr: str, source_path: Path) -> str | None:
    match = _MISMATCH_RE.search(stderr)
    if not match:
        return None
    class_name = match.group(1)
    return (
        f"Hint: public class {class_name} must be saved in {class_name}.java. "
        f"Rename {source_path.name} to {class_name}.java, or rename the class to {source_path.stem}."
    )


class JavaRunner(LanguageRunner):
    """Compile with ``javac`` and run the class on the JVM."""

    language = "java"
    display_name = "Java"
    default_filename = "Main.java"
    suffixes = (".java",)

    def classpath(self, session: Session, class_dir: Path) -> str:
        entries = [str(class_dir)]
        if class_dir != session.directory:
            entries.append(str(session.directory))
        lib = session.directory / LIB_DIR
        if lib.is_dir():
            entries.append(str(lib / "*"))
        return os.pathsep.join(entries)

    async def compile(self, session: Session, source_path: Path) -> CompileOutcome:
        class_dir = source_path.parent
        args = [self.toolchain.javac, "-cp", self.classpath(session, class_dir), str(source_path)]
        returncode, stderr = await self._run_compiler(args, class_dir)
        if returncode != 0 or stderr.strip():
            hint = file_name_hint(stderr, source_path)
            return CompileOutcome(
                ok=False,
                stderr=stderr,
                hint=hint,
            )
        return CompileOutcome(ok=True, artifact=source_path.with_suffix(".class"))

    def run_command(self, session: Session, artifact: Path) -> List[str]:
        class_dir = artifact.parent
        return [self.toolchain.java, "-cp", self.classpath(session, class_dir), artifact.stem]
