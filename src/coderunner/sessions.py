"""Per-client session workspaces.

Each session owns one private directory under the configured storage root,
named after the session id.  Sessions are created lazily the first time a
client shows up without a valid token and are refreshed on every validated
request.  Expiry itself is driven by :mod:`coderunner.janitor`.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .errors import SessionUnavailable

logger = logging.getLogger("coderunner.sessions")

# Excludes the workspace from any version-control scan of the storage root.
MARKER_FILE = ".gitignore"

_TOKEN_RE = re.compile(r"^[0-9a-f]{32}$")


@dataclass
class Session:
    id: str
    directory: Path
    created_at: float
    last_active_at: float

    def idle_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.last_active_at

    def files(self) -> List[str]:
        """Relative paths of the user-visible files in the workspace."""
        if not self.directory.exists():
            return []
        names = []
        for path in sorted(self.directory.rglob("*")):
            rel = path.relative_to(self.directory)
            if path.is_file() and not any(part.startswith(".") for part in rel.parts):
                names.append(rel.as_posix())
        return names


class SessionStore:
    """Create, look up, refresh and discard session workspaces."""

    def __init__(self, root: Path | str, ttl_seconds: int = 600) -> None:
        self.root = Path(root)
        self.ttl_seconds = ttl_seconds
        self._sessions: Dict[str, Session] = {}
        self.root.mkdir(parents=True, exist_ok=True, mode=0o700)

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def ensure(self, token: Optional[str]) -> Session:
        """Return the session for ``token``, creating one if needed.

        An unknown or malformed token yields a brand new session with a new
        id; the token itself is never used to name a directory.  Raises
        :class:`SessionUnavailable` if the directory cannot be created.
        """
        session = self._sessions.get(token) if token and _TOKEN_RE.match(token) else None
        if session is None:
            return self._create()
        self._ensure_directory(session)
        self.touch(session)
        return session

    def touch(self, session: Session) -> None:
        session.last_active_at = time.time()
        try:
            os.utime(session.directory)
        except OSError:
            logger.warning("Unable to refresh mtime of %s", session.directory)

    def expired(self, now: Optional[float] = None) -> List[Session]:
        now = now if now is not None else time.time()
        return [s for s in self._sessions.values() if s.idle_seconds(now) > self.ttl_seconds]

    def discard(self, session_id: str) -> None:
        """Forget the session and delete its directory.

        Safe to call repeatedly; a directory that is already gone is not an
        error.
        """
        session = self._sessions.pop(session_id, None)
        directory = session.directory if session else self.root / session_id
        remove_tree(directory)

    def untracked_directories(self) -> List[Path]:
        """Directories under the root that no live session owns."""
        try:
            entries = list(self.root.iterdir())
        except FileNotFoundError:
            return []
        return [p for p in entries if p.is_dir() and p.name not in self._sessions]

    def _create(self) -> Session:
        session_id = uuid.uuid4().hex
        directory = self.root / session_id
        now = time.time()
        session = Session(id=session_id, directory=directory, created_at=now, last_active_at=now)
        self._make_directory(directory)
        self._sessions[session_id] = session
        logger.info("Created new session directory: %s", directory)
        return session

    def _ensure_directory(self, session: Session) -> None:
        if session.directory.is_dir():
            return
        self._make_directory(session.directory)
        logger.info("Recreated missing session directory: %s", session.directory)

    def _make_directory(self, directory: Path) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True, mode=0o700)
            directory.mkdir(mode=0o700, exist_ok=True)
            (directory / MARKER_FILE).write_text("*\n", encoding="utf-8")
        except OSError as exc:
            logger.error("Session directory creation failed for %s: %s", directory, exc)
            raise SessionUnavailable("Failed to initialize session") from exc


def remove_tree(path: Path) -> bool:
    """Recursively delete ``path``; returns False if it did not exist."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.error("Error removing %s: %s", path, exc)
        return False
    return True
