"""Runner for JavaScript, executed with Node.js."""

from __future__ import annotations

from pathlib import Path
from typing import List

from ..sessions import Session
from .base import LanguageRunner


class JavaScriptRunner(LanguageRunner):
    language = "javascript"
    display_name = "JavaScript"
    default_filename = "script.js"
    suffixes = (".js", ".mjs", ".cjs")

    def run_command(self, session: Session, artifact: Path) -> List[str]:
        return [self.toolchain.node, str(artifact)]
