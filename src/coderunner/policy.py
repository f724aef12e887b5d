"""Source admission policy.

The only boundary the code runner enforces on submitted programs is a
denylist of modules matched with regular expressions, plus a list of
dangerous fragments rejected in terminal commands.  This is a weak
heuristic, not isolation: it is trivially bypassed by dynamic imports and
offers no protection comparable to namespaces, seccomp or containers.  It
sits behind :class:`SourcePolicy` so that a real sandbox can replace it
without changes to the engine.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, Optional, Pattern

from .errors import SecurityViolation

DEFAULT_DENYLIST: Dict[str, tuple] = {
    "python": ("subprocess", "shutil"),
    "javascript": ("child_process", "fs", "path", "os"),
    "shell": (
        "rm -rf", "rmdir /s", "del /f", "format", ":(){ :|:& };:", "> /dev/",
        "dd if=", "> /etc/", "mkfs", "chmod -R 777", "chmod 777",
    ),
}


class SourcePolicy:
    """Decides whether a source text may be executed at all."""

    def check(self, source: str, language: str) -> None:
        raise NotImplementedError


class AllowAllPolicy(SourcePolicy):
    def check(self, source: str, language: str) -> None:
        return None


def _python_pattern(modules: Iterable[str]) -> Pattern[str]:
    names = "|".join(re.escape(m) for m in modules)
    return re.compile(
        rf"^\s*(?:import\s+(?:[\w.]+\s*,\s*)*(?:{names})\b|from\s+(?:{names})(?:\.[\w.]+)?\s+import\b)",
        re.MULTILINE,
    )


def _command_pattern(commands: Iterable[str]) -> Pattern[str]:
    return re.compile("|".join(re.escape(c) for c in commands), re.IGNORECASE)


def _javascript_pattern(modules: Iterable[str]) -> Pattern[str]:
    names = "|".join(re.escape(m) for m in modules)
    return re.compile(
        rf"""(?:\brequire\(\s*['"](?:node:)?(?:{names})(?:/[\w/]*)?['"]\s*\)"""
        rf"""|\bimport\b[^'"]*['"](?:node:)?(?:{names})(?:/[\w/]*)?['"])"""
    )


class DenylistPolicy(SourcePolicy):
    """Reject sources that import a denylisted module and commands containing a dangerous fragment."""

    def __init__(self, denylist: Optional[Dict[str, Iterable[str]]] = None) -> None:
        denylist = DEFAULT_DENYLIST if denylist is None else denylist
        self._patterns: Dict[str, Pattern[str]] = {}
        for language, modules in denylist.items():
            modules = tuple(modules)
            if not modules:
                continue
            if language == "python":
                self._patterns[language] = _python_pattern(modules)
            elif language == "javascript":
                self._patterns[language] = _javascript_pattern(modules)
            elif language == "shell":
                self._patterns[language] = _command_pattern(modules)
            else:
                raise ValueError(f"No denylist matcher for language: {language}")

    def check(self, source: str, language: str) -> None:
        pattern = self._patterns.get(language)
        if pattern is None:
            return
        match = pattern.search(source)
        if match is None:
            return
        if language == "shell":
            raise SecurityViolation(f"Dangerous command detected: {match.group(0)}")
        raise SecurityViolation(f"Code contains restricted imports: {match.group(0).strip()}")
