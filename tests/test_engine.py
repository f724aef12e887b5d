"""Engine level tests: streaming, timeouts, supersession and termination."""

from __future__ import annotations

import asyncio
import time

import pytest

from coderunner.config import Toolchain
from coderunner.engine import ExecutionEngine
from coderunner.errors import SecurityViolation, ValidationError
from coderunner.frames import Done, ErrorChunk, Message, OutputChunk, RunStatus

from .conftest import assert_single_terminal, collect, output_of, requires_bash, requires_posix

SLEEPER = "import time\nprint('{tag}')\ntime.sleep(60)\n"


def start(engine: ExecutionEngine, session, code: str, path: str = "code.py", timeout_ms=None):
    engine.save_code(session, "python", code, path)
    request = engine.prepare_run(session, "python", path, timeout_ms)
    return engine.run(session, request)


async def next_output(frames) -> OutputChunk:
    async for frame in frames:
        if isinstance(frame, OutputChunk):
            return frame
    raise AssertionError("stream ended without output")


@pytest.mark.asyncio
async def test_run_to_completion(engine):
    session = engine.sessions.ensure(None)
    frames = await collect(start(engine, session, "print('hi')\n"))
    assert frames[0] == Message(text="Running Python code...")
    assert output_of(frames) == "hi\n"
    done = assert_single_terminal(frames)
    assert done == Done(status=RunStatus.COMPLETED, exit_code=0)
    assert session.id not in engine.registry
    assert engine.execution(session.id).status is RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_timeout_kills_process(engine):
    session = engine.sessions.ensure(None)
    code = "import time\nprint('A')\ntime.sleep(100)\n"
    started = time.monotonic()
    frames = await collect(start(engine, session, code, timeout_ms=1000))
    elapsed = time.monotonic() - started

    assert output_of(frames) == "A\n"
    assert frames[-2] == Message(text="Execution timed out after 1000 ms")
    assert assert_single_terminal(frames).status is RunStatus.TIMEOUT
    assert elapsed < 1 + engine.config.kill_grace_seconds + 3
    assert len(engine.registry) == 0


@pytest.mark.asyncio
async def test_new_run_supersedes_previous(engine):
    session = engine.sessions.ensure(None)
    first = start(engine, session, SLEEPER.format(tag="one"), "one.py")
    assert (await next_output(first)).text.startswith("one")
    first_process = engine.registry.active(session.id).process

    second = start(engine, session, "print('two')\n", "two.py")
    seen_first_exit = None
    second_frames = []
    async for frame in second:
        if seen_first_exit is None:
            seen_first_exit = first_process.returncode is not None
        second_frames.append(frame)

    assert seen_first_exit is True
    assert output_of(second_frames) == "two\n"
    assert assert_single_terminal(second_frames).status is RunStatus.COMPLETED

    rest = await collect(first)
    assert rest[-2] == Message(text="Process terminated")
    assert assert_single_terminal(rest).status is RunStatus.TERMINATED
    assert len(engine.registry) == 0


@pytest.mark.asyncio
async def test_terminate_is_scoped_and_idempotent(engine):
    alice = engine.sessions.ensure(None)
    bob = engine.sessions.ensure(None)
    alice_frames = start(engine, alice, SLEEPER.format(tag="alice"))
    bob_frames = start(engine, bob, SLEEPER.format(tag="bob"))
    await next_output(alice_frames)
    await next_output(bob_frames)
    bob_process = engine.registry.active(bob.id).process

    assert engine.terminate(alice) is True
    assert engine.terminate(alice) is False
    rest = await collect(alice_frames)
    assert assert_single_terminal(rest).status is RunStatus.TERMINATED

    assert bob.id in engine.registry
    assert bob_process.returncode is None

    await bob_frames.aclose()
    await engine.registry.drain()
    assert bob_process.returncode is not None
    assert len(engine.registry) == 0


@pytest.mark.asyncio
async def test_closing_stream_early_kills_process(engine):
    session = engine.sessions.ensure(None)
    frames = start(engine, session, SLEEPER.format(tag="x"))
    await next_output(frames)
    process = engine.registry.active(session.id).process
    await frames.aclose()
    await engine.registry.drain()
    assert process.returncode is not None
    assert session.id not in engine.registry
    assert engine.execution(session.id).status is RunStatus.TERMINATED


@pytest.mark.asyncio
async def test_send_input_reaches_process(engine):
    session = engine.sessions.ensure(None)
    frames = start(engine, session, "print('ready')\nprint(input().upper())\n")
    await next_output(frames)
    assert await engine.send_input(session, "shout") is True
    rest = await collect(frames)
    assert "SHOUT" in output_of(rest)
    assert assert_single_terminal(rest).status is RunStatus.COMPLETED
    assert await engine.send_input(session, "again") is False


@pytest.mark.asyncio
async def test_spawn_error_becomes_frames(config, tmp_path):
    config.toolchain = Toolchain(python=str(tmp_path / "missing-python"))
    engine = ExecutionEngine(config)
    session = engine.sessions.ensure(None)
    frames = await collect(start(engine, session, "print(1)\n"))
    assert isinstance(frames[0], ErrorChunk)
    assert frames[0].text.startswith("Failed to start process")
    assert assert_single_terminal(frames).status is RunStatus.SPAWN_ERROR
    assert len(engine.registry) == 0


def test_prepare_run_validation(engine):
    session = engine.sessions.ensure(None)
    with pytest.raises(ValidationError):
        engine.prepare_run(session, None)
    with pytest.raises(ValidationError):
        engine.prepare_run(session, "python", "code.py")
    engine.save_code(session, "python", "print(1)")
    with pytest.raises(ValidationError):
        engine.prepare_run(session, "python", "code.py", timeout_ms=0)
    with pytest.raises(ValidationError):
        engine.prepare_run(session, "javascript", "code.py")
    engine.save_code(session, "python", "from shutil import rmtree")
    with pytest.raises(SecurityViolation):
        engine.prepare_run(session, "python")


@pytest.mark.asyncio
async def test_execute_source(engine):
    session = engine.sessions.ensure(None)
    result = await engine.execute_source(session, "python", "import sys\nprint('out')\nsys.exit(4)")
    assert result.stdout == "out\n"
    assert result.exit_code == 4
    assert result.timed_out is False
    assert not (session.directory / ".exec" / "temp_code.py").exists()


@pytest.mark.asyncio
async def test_execute_source_timeout(engine):
    session = engine.sessions.ensure(None)
    result = await engine.execute_source(
        session, "python", "import time\nprint('A', flush=True)\ntime.sleep(60)", timeout_ms=500
    )
    assert result.timed_out is True
    assert result.stdout == "A\n"
    assert result.stderr.endswith("Execution timed out after 500 ms.")
    assert len(engine.registry) == 0


@pytest.mark.asyncio
async def test_execute_source_is_terminable(engine):
    session = engine.sessions.ensure(None)
    task = asyncio.ensure_future(engine.execute_source(session, "python", "import time\ntime.sleep(60)"))
    for _ in range(100):
        if session.id in engine.registry:
            break
        await asyncio.sleep(0.05)
    assert engine.terminate(session) is True
    result = await asyncio.wait_for(task, timeout=10)
    assert result.stderr.endswith("Process terminated.")
    assert result.exit_code != 0


@pytest.mark.asyncio
async def test_session_info(engine):
    session = engine.sessions.ensure(None)
    frames = start(engine, session, SLEEPER.format(tag="x"))
    await next_output(frames)
    info = engine.session_info(session)
    assert info["session_id"] == session.id
    assert info["active_process"] is True
    assert info["files"] == ["code.py"]
    await frames.aclose()
    info = engine.session_info(session)
    assert info["active_process"] is False
    assert info["last_status"] == "terminated"


@pytest.mark.asyncio
async def test_reclaim_all(engine):
    session = engine.sessions.ensure(None)
    frames = start(engine, session, SLEEPER.format(tag="x"))
    await next_output(frames)
    process = engine.registry.active(session.id).process
    stray = engine.sessions.root / "stray"
    stray.mkdir()

    assert await engine.reclaim_all() == 1
    assert process.returncode is not None
    assert not session.directory.exists()
    assert not stray.exists()
    assert len(engine.sessions) == 0
    await frames.aclose()


IGNORES_SIGTERM = (
    "import signal, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ready', flush=True)\n"
    "time.sleep(60)\n"
)


def slow_resolver(engine, monkeypatch, delay=0.5):
    """Delay dependency resolution for sources carrying a ``# slow`` marker."""
    original = engine.resolver.resolve

    async def resolve(source, language, session):
        if "# slow" in source:
            await asyncio.sleep(delay)
        return await original(source, language, session)

    monkeypatch.setattr(engine.resolver, "resolve", resolve)


@requires_posix
@pytest.mark.asyncio
async def test_timeout_escalates_to_sigkill(engine):
    session = engine.sessions.ensure(None)
    started = time.monotonic()
    frames = await collect(start(engine, session, IGNORES_SIGTERM, timeout_ms=800))
    elapsed = time.monotonic() - started

    done = assert_single_terminal(frames)
    assert done.status is RunStatus.TIMEOUT
    assert done.exit_code == -9
    assert elapsed >= 0.8 + engine.config.kill_grace_seconds
    assert elapsed < 0.8 + engine.config.kill_grace_seconds + 2.5


@requires_posix
@pytest.mark.asyncio
async def test_drain_waits_for_watchdog_kills(engine):
    session = engine.sessions.ensure(None)
    frames = start(engine, session, IGNORES_SIGTERM, timeout_ms=800)
    await next_output(frames)
    process = engine.registry.active(session.id).process

    await asyncio.sleep(1.0)
    assert process.returncode is None
    await engine.registry.drain()
    assert process.returncode == -9

    rest = await collect(frames)
    assert assert_single_terminal(rest).status is RunStatus.TIMEOUT


@pytest.mark.asyncio
async def test_stale_execute_leaves_newer_run_alone(engine, monkeypatch):
    slow_resolver(engine, monkeypatch)
    session = engine.sessions.ensure(None)
    older = asyncio.ensure_future(engine.execute_source(session, "python", "# slow\nimport time\ntime.sleep(5)"))
    await asyncio.sleep(0.1)

    newer = await collect(start(engine, session, "print('r2')\nimport time\ntime.sleep(1.5)\n"))
    assert output_of(newer) == "r2\n"
    assert assert_single_terminal(newer) == Done(status=RunStatus.COMPLETED, exit_code=0)

    result = await asyncio.wait_for(older, timeout=10)
    assert result.exit_code == -1
    assert result.stderr == "Run cancelled"
    assert len(engine.registry) == 0


@pytest.mark.asyncio
async def test_stale_spawn_never_takes_the_slot(engine, monkeypatch):
    runner = engine.runners["python"]
    original = runner.run

    async def slow_run(session, artifact):
        if artifact.name == "one.py":
            await asyncio.sleep(0.5)
        return await original(session, artifact)

    monkeypatch.setattr(runner, "run", slow_run)
    session = engine.sessions.ensure(None)
    older = asyncio.ensure_future(collect(start(engine, session, SLEEPER.format(tag="one"), "one.py")))
    await asyncio.sleep(0.05)

    newer = await collect(start(engine, session, "print('two')\nimport time\ntime.sleep(1.0)\n", "two.py"))
    assert output_of(newer) == "two\n"
    assert assert_single_terminal(newer).status is RunStatus.COMPLETED

    assert await older == [Message(text="Run cancelled"), Done(status=RunStatus.TERMINATED)]
    await engine.registry.drain()
    assert len(engine.registry) == 0


@pytest.mark.asyncio
async def test_source_rewritten_during_run_is_checked_again(engine, monkeypatch):
    slow_resolver(engine, monkeypatch)
    session = engine.sessions.ensure(None)
    task = asyncio.ensure_future(collect(start(engine, session, "# slow\nprint('clean')\n")))
    await asyncio.sleep(0.1)
    engine.save_code(session, "python", "import subprocess\nprint('bypassed')\n")

    frames = await task
    assert output_of(frames) == ""
    assert isinstance(frames[0], ErrorChunk)
    assert frames[0].text.startswith("Code contains restricted imports")
    assert assert_single_terminal(frames).status is RunStatus.FAILED
    assert len(engine.registry) == 0


def test_scratch_directory_is_reserved(engine):
    session = engine.sessions.ensure(None)
    with pytest.raises(ValidationError):
        engine.save_code(session, "python", "import subprocess", ".exec/temp_code.py")


@requires_bash
@pytest.mark.asyncio
async def test_terminal_command(engine):
    session = engine.sessions.ensure(None)
    request = engine.prepare_command(session, "echo hi && pwd")
    assert request.timeout_ms == engine.config.terminal_timeout_ms
    frames = await collect(engine.run(session, request))
    assert frames[0] == Message(text="Terminal started")
    assert output_of(frames) == f"hi\n{session.directory.resolve()}\n"
    assert assert_single_terminal(frames) == Done(status=RunStatus.COMPLETED, exit_code=0)


@requires_bash
@pytest.mark.asyncio
async def test_terminal_reads_input(engine):
    session = engine.sessions.ensure(None)
    task = asyncio.ensure_future(collect(engine.run(session, engine.prepare_command(session, "read name; echo hello $name"))))
    for _ in range(100):
        if session.id in engine.registry:
            break
        await asyncio.sleep(0.05)
    assert await engine.send_input(session, "bob") is True
    frames = await asyncio.wait_for(task, timeout=10)
    assert output_of(frames) == "hello bob\n"


@requires_bash
@pytest.mark.asyncio
async def test_terminal_timeout_and_replacement(engine):
    session = engine.sessions.ensure(None)
    frames = await collect(engine.run(session, engine.prepare_command(session, "sleep 30", timeout_ms=500)))
    assert assert_single_terminal(frames).status is RunStatus.TIMEOUT

    program = start(engine, session, SLEEPER.format(tag="x"))
    await next_output(program)
    frames = await collect(engine.run(session, engine.prepare_command(session, "echo after")))
    assert output_of(frames) == "after\n"
    rest = await collect(program)
    assert assert_single_terminal(rest).status is RunStatus.TERMINATED


def test_terminal_validation(engine):
    session = engine.sessions.ensure(None)
    with pytest.raises(ValidationError):
        engine.prepare_command(session, "  ")
    with pytest.raises(SecurityViolation):
        engine.prepare_command(session, "RM -RF /")
    engine.config.terminal_enabled = False
    with pytest.raises(ValidationError):
        engine.prepare_command(session, "ls")
