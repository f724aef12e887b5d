"""Exception hierarchy for the code runner.

Only the request-level errors (``ValidationError``, ``SecurityViolation``,
``PathViolation`` and ``SessionUnavailable``) ever reach an HTTP client as a
status code.  The remaining classes describe subprocess-level failures; the
engine converts those into output frames or log lines.
"""

from __future__ import annotations


class CodeRunnerError(Exception):
    """Base class for all errors raised by the code runner."""

    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ValidationError(CodeRunnerError):
    """Bad or missing request parameters, or an unsupported language."""

    status_code = 400


class SecurityViolation(CodeRunnerError):
    """Source text matched the denylist policy."""

    status_code = 403


class PathViolation(SecurityViolation):
    """A client-supplied path resolved outside its session directory."""

    status_code = 400


class SessionUnavailable(CodeRunnerError):
    """The session directory could not be created or recreated."""

    status_code = 500


class CompileError(CodeRunnerError):
    pass


class ProcessSpawnError(CodeRunnerError):
    """The executable is missing or could not be started."""


class DependencyInstallError(CodeRunnerError):
    pass
