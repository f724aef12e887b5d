"""
Runner for Python scripts.

No compile step: the interpreter is invoked unbuffered on the source file
with the session directory on ``PYTHONPATH``, so that sibling modules the
user saved next to the script can be imported.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List

from ..sessions import Session
from .base import LanguageRunner


class PythonRunner(LanguageRunner):
    """Execute Python code with the configured interpreter."""

    language = "python"
    display_name = "Python"
    default_filename = "code.py"
    suffixes = (".py",)

    def run_command(self, session: Session, artifact: Path) -> List[str]:
        return [self.toolchain.python, "-u", str(artifact)]

    def environment(self, session: Session) -> Dict[str, str]:
        env = super().environment(session)
        env["PYTHONPATH"] = str(session.directory)
        env["PYTHONUNBUFFERED"] = "1"
        env["PYTHONIOENCODING"] = "utf-8"
        return env
