"""
Runner for terminal commands.

A command is handed to the configured shell with ``-c`` and runs in the
session directory.  Its stdin stays open, so a command that reads input can
be fed through ``/send-input`` like any other program.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List

from ..config import Toolchain
from ..sessions import Session
from .base import spawn

logger = logging.getLogger("coderunner.runners")


class ShellRunner:
    """Start one shell command inside a session."""

    language = "shell"
    display_name = "Shell"

    def __init__(self, toolchain: Toolchain) -> None:
        self.toolchain = toolchain

    def command_line(self, command: str) -> List[str]:
        return [self.toolchain.shell, "-c", command]

    async def run(self, session: Session, command: str) -> asyncio.subprocess.Process:
        logger.info("Session %s: starting shell command %r", session.id, command)
        return await spawn(self.command_line(command), session.directory)
