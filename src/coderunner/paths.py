"""Confinement of client-supplied paths to a session directory."""

from __future__ import annotations

from pathlib import Path, PurePosixPath, PureWindowsPath

from .errors import PathViolation
from .sessions import Session


class PathGuard:
    """Resolve relative paths against a session root.

    Every filesystem path the engine derives from client input goes through
    :meth:`resolve`.  The result is fully resolved (symlinks included) and
    guaranteed to be the session directory itself or a descendant of it.
    """

    def resolve(self, session: Session, relative_path: str) -> Path:
        raw = (relative_path or "").strip()
        if not raw:
            raise PathViolation("path must not be empty")
        if "\x00" in raw:
            raise PathViolation("path must not contain NUL")
        if PurePosixPath(raw).is_absolute() or PureWindowsPath(raw).is_absolute() or PureWindowsPath(raw).drive:
            raise PathViolation("Invalid path: absolute paths are not allowed")

        root = session.directory.resolve()
        candidate = (root / raw.replace("\\", "/")).resolve()
        if candidate != root and not candidate.is_relative_to(root):
            raise PathViolation("Invalid path: outside of the session directory")
        return candidate

    def relative(self, session: Session, path: Path) -> str:
        return path.relative_to(session.directory.resolve()).as_posix()
