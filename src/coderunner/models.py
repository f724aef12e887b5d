"""Pydantic models for request and response bodies.

The streamed frames of a run are defined in :mod:`coderunner.frames`; the
models here cover the plain JSON endpoints.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class RunRequest(BaseModel):
    """Request body for running a file in the session."""

    language: str = Field(..., description="One of 'python', 'java', 'javascript', 'cpp'.")
    path: Optional[str] = Field(
        default=None,
        description="Path relative to the session directory. Defaults to the language's conventional file.",
    )
    timeout_ms: Optional[int] = Field(default=None, description="Time budget for the run in milliseconds.")


class TerminalRequest(BaseModel):
    """Request body for running a shell command in the session directory."""

    command: str = Field(..., description="Command line passed to the shell.")
    timeout_ms: Optional[int] = Field(default=None, description="Time budget; defaults to the terminal timeout.")


class ExecuteRequest(BaseModel):
    """Request body for executing a source text and waiting for the result."""

    language: str = Field(default="python")
    code: str = Field(..., description="Source code to execute.")
    stdin: Optional[str] = Field(default=None, description="Standard input to pass to the program.")
    timeout_ms: Optional[int] = None


class ExecuteResponse(BaseModel):
    """Response body for buffered execution."""

    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int
    timed_out: bool = False


class SaveCodeRequest(BaseModel):
    language: str
    code: str
    path: Optional[str] = None


class SaveCodeResponse(BaseModel):
    message: str = "Code saved"
    path: str


class SendInputRequest(BaseModel):
    input: str


class SendInputResponse(BaseModel):
    success: bool
    message: str


class TerminateResponse(BaseModel):
    success: bool
    message: str


class SessionInfo(BaseModel):
    """Metadata about the caller's session."""

    session_id: str
    created_at: float
    last_active_at: float
    active_process: bool = False
    last_status: Optional[str] = None
    files: List[str] = Field(default_factory=list)
