"""Shared fixtures for the code runner tests."""

from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path
from typing import List

import pytest

from coderunner.config import Config, Toolchain
from coderunner.engine import ExecutionEngine
from coderunner.frames import Done, OutputChunk


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Configuration rooted in a temporary directory, without installs."""
    return Config(
        storage_path=str(tmp_path / "sessions"),
        install_dependencies=False,
        kill_grace_seconds=1.0,
        default_timeout_ms=10000,
        toolchain=Toolchain(python=sys.executable),
    )


@pytest.fixture
def engine(config: Config) -> ExecutionEngine:
    return ExecutionEngine(config)


async def collect(frames) -> List:
    """Drain an async frame iterator into a list."""
    return [frame async for frame in frames]


def assert_single_terminal(frames: List) -> Done:
    """The last frame is the one and only ``done`` frame."""
    done = [frame for frame in frames if isinstance(frame, Done)]
    assert len(done) == 1
    assert frames[-1] is done[0]
    return done[0]


requires_javac = pytest.mark.skipif(shutil.which("javac") is None, reason="javac not installed")
requires_gxx = pytest.mark.skipif(shutil.which("g++") is None, reason="g++ not installed")
requires_node = pytest.mark.skipif(shutil.which("node") is None, reason="node not installed")


def output_of(frames: List) -> str:
    """Concatenated stdout text of a frame list."""
    return "".join(frame.text for frame in frames if isinstance(frame, OutputChunk))


requires_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")
requires_posix = pytest.mark.skipif(os.name != "posix", reason="POSIX signals required")
