"""
Language runners for the code runner.

This package exposes one runner per supported language.  The engine picks
the runner matching the requested language; each runner knows its compile
step (if any) and how to start the program.  Additional languages can be
added by implementing the ``LanguageRunner`` interface from ``base.py``.
"""

from typing import Dict, Iterable

from ..config import Toolchain
from .base import CompileOutcome, LanguageRunner, spawn
from .cpp_runner import CppRunner
from .java_runner import JavaRunner
from .javascript_runner import JavaScriptRunner
from .python_runner import PythonRunner
from .shell_runner import ShellRunner

RUNNER_TYPES = {
    runner.language: runner for runner in (PythonRunner, JavaRunner, JavaScriptRunner, CppRunner)
}


def build_runners(
    languages: Iterable[str],
    toolchain: Toolchain,
    grace_seconds: float = 2.0,
) -> Dict[str, LanguageRunner]:
    """Instantiate the runners for the enabled languages."""
    return {
        lang: RUNNER_TYPES[lang](toolchain, grace_seconds=grace_seconds)
        for lang in languages
        if lang in RUNNER_TYPES
    }


__all__ = [
    "CompileOutcome",
    "LanguageRunner",
    "PythonRunner",
    "JavaRunner",
    "JavaScriptRunner",
    "CppRunner",
    "ShellRunner",
    "RUNNER_TYPES",
    "build_runners",
    "spawn",
]
