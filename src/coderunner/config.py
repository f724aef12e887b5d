"""Configuration loader.

The code runner reads its configuration from environment variables so the
same image can run behind different front ends.  Reasonable defaults are
provided so that local development works out of the box.

Environment variables:

``CODERUNNER_API_KEY``
    Shared secret used to authenticate incoming requests.  Clients must send
    it in the ``x-api-key`` header.  Empty disables the check.

``CODERUNNER_STORAGE_PATH``
    Root directory holding one subdirectory per session.  Defaults to
    ``/tmp/coderunner``.

``CODERUNNER_ALLOWED_LANGS``
    Comma-separated list of languages permitted for execution.  Defaults to
    ``python,java,javascript,cpp``.

``CODERUNNER_SESSION_TTL_SECONDS``
    Idle time after which a session and its directory are reclaimed.
    Default is 600 (ten minutes).

``CODERUNNER_JANITOR_INTERVAL_SECONDS``
    Period of the background sweep.  Default is 600.

``CODERUNNER_DEFAULT_TIMEOUT_MS`` / ``CODERUNNER_MAX_TIMEOUT_MS``
    Time budget of a run when the request does not carry one, and the
    largest budget a client may ask for.  Defaults are 30000 and 300000.

``CODERUNNER_KILL_GRACE_SECONDS``
    Seconds between SIGTERM and the SIGKILL escalation.  Fractions are
    allowed.  Default is 2.

``CODERUNNER_INSTALL_DEPENDENCIES``
    If ``true``, imports and ``# pip:`` / ``// maven:`` directives are
    resolved before a run.  Defaults to ``true``.

``CODERUNNER_INSTALL_TIMEOUT_SECONDS``
    Upper bound on a single installer invocation.  Default is 120.

``CODERUNNER_TERMINAL_ENABLED`` / ``CODERUNNER_TERMINAL_TIMEOUT_MS``
    Whether shell commands may be run in a session, and their time budget.
    Defaults are ``true`` and 30000.

``CODERUNNER_PYTHON``, ``CODERUNNER_JAVA``, ``CODERUNNER_JAVAC``,
``CODERUNNER_NODE``, ``CODERUNNER_CXX``, ``CODERUNNER_MVN``, ``CODERUNNER_SHELL``
    Executables used for each toolchain.

``CODERUNNER_COOKIE_NAME`` / ``CODERUNNER_COOKIE_SECURE``
    Name of the session cookie and whether it is marked ``Secure``.

``PORT``
    The port on which the API server listens.  Defaults to 8080.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import List

SUPPORTED_LANGS = ("python", "java", "javascript", "cpp")


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y"}


def _int_var(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"Invalid integer for {name}: {val}")


def _float_var(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"Invalid number for {name}: {val}")


@dataclass
class Toolchain:
    """Executables invoked by the language runners."""

    python: str = sys.executable or "python3"
    java: str = "java"
    javac: str = "javac"
    node: str = "node"
    cxx: str = "g++"
    mvn: str = "mvn"
    shell: str = "bash"


@dataclass
class Config:
    """Centralised configuration object."""

    api_key: str = ""
    storage_path: str = "/tmp/coderunner"
    allowed_langs: List[str] = field(default_factory=lambda: list(SUPPORTED_LANGS))
    session_ttl_seconds: int = 600
    janitor_interval_seconds: int = 600
    default_timeout_ms: int = 30000
    max_timeout_ms: int = 300000
    kill_grace_seconds: float = 2.0
    install_dependencies: bool = True
    install_timeout_seconds: int = 120
    terminal_enabled: bool = True
    terminal_timeout_ms: int = 30000
    toolchain: Toolchain = field(default_factory=Toolchain)
    cookie_name: str = "coderunner_session"
    cookie_secure: bool = False
    port: int = 8080

    @classmethod
    def load(cls) -> "Config":
        # API key may be empty in local development but should be set in production.
        api_key = os.getenv("CODERUNNER_API_KEY", "")
        storage_path = os.getenv("CODERUNNER_STORAGE_PATH", "/tmp/coderunner")

        allowed_langs_env = os.getenv("CODERUNNER_ALLOWED_LANGS", ",".join(SUPPORTED_LANGS))
        allowed_langs = [lang.strip().lower() for lang in allowed_langs_env.split(",") if lang.strip()]
        unknown = [lang for lang in allowed_langs if lang not in SUPPORTED_LANGS]
        if unknown:
            raise ValueError(
                f"Invalid CODERUNNER_ALLOWED_LANGS: {', '.join(unknown)}. "
                f"Use any of {', '.join(SUPPORTED_LANGS)}."
            )

        session_ttl_seconds = _int_var("CODERUNNER_SESSION_TTL_SECONDS", 600)
        janitor_interval_seconds = _int_var("CODERUNNER_JANITOR_INTERVAL_SECONDS", 600)
        default_timeout_ms = _int_var("CODERUNNER_DEFAULT_TIMEOUT_MS", 30000)
        max_timeout_ms = _int_var("CODERUNNER_MAX_TIMEOUT_MS", 300000)
        if default_timeout_ms > max_timeout_ms:
            raise ValueError("CODERUNNER_DEFAULT_TIMEOUT_MS must not exceed CODERUNNER_MAX_TIMEOUT_MS")
        kill_grace_seconds = _float_var("CODERUNNER_KILL_GRACE_SECONDS", 2.0)
        install_dependencies = _parse_bool(os.getenv("CODERUNNER_INSTALL_DEPENDENCIES"), True)
        install_timeout_seconds = _int_var("CODERUNNER_INSTALL_TIMEOUT_SECONDS", 120)
        terminal_enabled = _parse_bool(os.getenv("CODERUNNER_TERMINAL_ENABLED"), True)
        terminal_timeout_ms = _int_var("CODERUNNER_TERMINAL_TIMEOUT_MS", 30000)

        toolchain = Toolchain(
            python=os.getenv("CODERUNNER_PYTHON", Toolchain.python),
            java=os.getenv("CODERUNNER_JAVA", "java"),
            javac=os.getenv("CODERUNNER_JAVAC", "javac"),
            node=os.getenv("CODERUNNER_NODE", "node"),
            cxx=os.getenv("CODERUNNER_CXX", "g++"),
            mvn=os.getenv("CODERUNNER_MVN", "mvn"),
            shell=os.getenv("CODERUNNER_SHELL", "bash"),
        )

        cookie_name = os.getenv("CODERUNNER_COOKIE_NAME", "coderunner_session")
        cookie_secure = _parse_bool(os.getenv("CODERUNNER_COOKIE_SECURE"), False)
        port = _int_var("PORT", 8080)

        return cls(
            api_key=api_key,
            storage_path=storage_path,
            allowed_langs=allowed_langs,
            session_ttl_seconds=session_ttl_seconds,
            janitor_interval_seconds=janitor_interval_seconds,
            default_timeout_ms=default_timeout_ms,
            max_timeout_ms=max_timeout_ms,
            kill_grace_seconds=kill_grace_seconds,
            install_dependencies=install_dependencies,
            install_timeout_seconds=install_timeout_seconds,
            terminal_enabled=terminal_enabled,
            terminal_timeout_ms=terminal_timeout_ms,
            toolchain=toolchain,
            cookie_name=cookie_name,
            cookie_secure=cookie_secure,
            port=port,
        )

    @classmethod
    def from_env(cls) -> "Config":
        """
        Alternate constructor used by the API to load configuration.

        This wrapper calls :meth:`load` to construct the configuration.
        It exists to provide a more intuitive name when consumed in
        application code.
        """
        return cls.load()
