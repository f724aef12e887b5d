"""Typed output frames streamed back to the client during a run.

A run produces an ordered sequence of frames.  ``output`` and ``error``
carry chunks of the child's stdout and stderr, ``message`` carries
lifecycle notices, and ``done`` is the terminal frame.  Each frame is
serialised as one JSON object per line.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class RunStatus(str, Enum):
    """How an execution ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    TERMINATED = "terminated"
    COMPILE_ERROR = "compile_error"
    SPAWN_ERROR = "spawn_error"


class OutputChunk(BaseModel):
    type: Literal["output"] = "output"
    text: str


class ErrorChunk(BaseModel):
    type: Literal["error"] = "error"
    text: str


class Message(BaseModel):
    type: Literal["message"] = "message"
    text: str


class Done(BaseModel):
    type: Literal["done"] = "done"
    status: RunStatus
    exit_code: Optional[int] = None


OutputFrame = Annotated[
    Union[OutputChunk, ErrorChunk, Message, Done],
    Field(discriminator="type"),
]

_frame_adapter: TypeAdapter = TypeAdapter(OutputFrame)


def encode_frame(frame: BaseModel) -> str:
    """Serialise a frame as a single NDJSON line."""
    return frame.model_dump_json() + "\n"


def decode_frame(line: str | bytes):
    return _frame_adapter.validate_json(line)


def is_terminal(frame: BaseModel) -> bool:
    return isinstance(frame, Done)


def exit_message(status: RunStatus, exit_code: Optional[int], timeout_ms: int = 0) -> Message:
    """Build the lifecycle message that precedes the terminal frame."""
    if status is RunStatus.TIMEOUT:
        return Message(text=f"Execution timed out after {timeout_ms} ms")
    if status is RunStatus.TERMINATED:
        return Message(text="Process terminated")
    if exit_code == 0:
        return Message(text="Process completed successfully")
    return Message(text=f"Process exited with code {exit_code}")
