"""
Basic API tests for the code runner.

These tests exercise the HTTP endpoints using FastAPI's TestClient.  They
verify that a session cookie is issued, code can be saved, run with
streamed frames and executed with buffered output, that invalid requests
are rejected before any frame is sent, and that the health check is
operational.
"""

from __future__ import annotations

from typing import List

import pytest
from fastapi.testclient import TestClient

from coderunner.api.main import create_app
from coderunner.frames import Done, ErrorChunk, Message, OutputChunk, RunStatus, decode_frame

from .conftest import requires_bash


@pytest.fixture
def client(config):
    with TestClient(create_app(config)) as client:
        yield client


def frames_of(response) -> List:
    return [decode_frame(line) for line in response.text.splitlines() if line.strip()]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_session_cookie_is_issued_once(client, config):
    res = client.get("/session")
    assert res.status_code == 200
    session_id = res.json()["session_id"]
    assert res.cookies.get(config.cookie_name) == session_id

    res = client.get("/session")
    assert res.json()["session_id"] == session_id
    assert config.cookie_name not in res.cookies


def test_unknown_cookie_gets_new_session(client, config):
    client.cookies.set(config.cookie_name, "../../etc")
    res = client.get("/session")
    assert res.status_code == 200
    assert res.json()["session_id"] != "../../etc"
    assert len(res.json()["session_id"]) == 32


def test_save_and_run_python(client):
    res = client.post("/code", json={"language": "python", "code": "print('hello')\n"})
    assert res.status_code == 200
    assert res.json() == {"message": "Code saved", "path": "code.py"}

    res = client.post("/run", json={"language": "python"})
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("application/x-ndjson")
    frames = frames_of(res)
    assert frames[0] == Message(text="Running Python code...")
    assert "".join(f.text for f in frames if isinstance(f, OutputChunk)) == "hello\n"
    assert frames[-2] == Message(text="Process completed successfully")
    assert frames[-1] == Done(status=RunStatus.COMPLETED, exit_code=0)

    info = client.get("/session").json()
    assert info["files"] == ["code.py"]
    assert info["active_process"] is False
    assert info["last_status"] == "completed"


def test_run_file_alias_with_nonzero_exit(client):
    client.post("/code", json={"language": "python", "code": "import sys\nsys.exit(3)\n", "path": "app/fail.py"})
    res = client.post("/run-file", json={"language": "python", "path": "app/fail.py"})
    frames = frames_of(res)
    assert frames[-2] == Message(text="Process exited with code 3")
    assert frames[-1] == Done(status=RunStatus.FAILED, exit_code=3)


def test_run_streams_stderr_as_error_frames(client):
    client.post("/code", json={"language": "python", "code": "import sys\nsys.stderr.write('oops')\n"})
    frames = frames_of(client.post("/run", json={"language": "python"}))
    assert "".join(f.text for f in frames if isinstance(f, ErrorChunk)) == "oops"
    assert frames[-1].status == RunStatus.COMPLETED


def test_run_rejects_unsupported_language(client):
    res = client.post("/run", json={"language": "cobol"})
    assert res.status_code == 400
    assert res.json() == {"detail": "Unsupported language: cobol"}


@pytest.mark.parametrize("path", ["../escape.py", "/etc/passwd.py", "a/../../x.py"])
def test_run_rejects_escaping_paths(client, path):
    res = client.post("/run", json={"language": "python", "path": path})
    assert res.status_code == 400
    assert "Invalid path" in res.json()["detail"]


def test_run_rejects_missing_file(client):
    res = client.post("/run", json={"language": "python", "path": "nothing.py"})
    assert res.status_code == 400
    assert res.json()["detail"] == "File not found: nothing.py"


def test_run_rejects_restricted_imports(client):
    client.post("/code", json={"language": "python", "code": "import subprocess\n"})
    res = client.post("/run", json={"language": "python"})
    assert res.status_code == 403
    assert "restricted imports" in res.json()["detail"]


def test_save_rejects_wrong_suffix(client):
    res = client.post("/code", json={"language": "python", "code": "x = 1", "path": "notes.txt"})
    assert res.status_code == 400


def test_execute_python_simple(client):
    res = client.post("/execute", json={"code": "print(1 + 1)"})
    assert res.status_code == 200
    data = res.json()
    assert data["stdout"].strip() == "2"
    assert data["exit_code"] == 0
    assert data["timed_out"] is False


def test_execute_python_with_stdin(client):
    res = client.post("/execute", json={"code": "print(input()[::-1])", "stdin": "abc\n"})
    assert res.json()["stdout"].strip() == "cba"


def test_execute_python_timeout(client):
    res = client.post("/execute", json={"code": "import time\ntime.sleep(30)", "timeout_ms": 500})
    data = res.json()
    assert data["timed_out"] is True
    assert "Execution timed out after 500 ms." in data["stderr"]


def test_execute_leaves_no_scratch_files(client):
    client.post("/execute", json={"code": "print('x')"})
    assert client.get("/session").json()["files"] == []


def test_execute_requires_code(client):
    res = client.post("/execute", json={"language": "python", "code": ""})
    assert res.status_code == 400
    assert res.json()["detail"] == "No code provided"


def test_execute_rejects_out_of_range_timeout(client, config):
    res = client.post("/execute", json={"code": "print(1)", "timeout_ms": config.max_timeout_ms + 1})
    assert res.status_code == 400


def test_terminate_without_process(client):
    for _ in range(2):
        res = client.post("/terminate")
        assert res.status_code == 200
        assert res.json() == {"success": False, "message": "No active process found"}
    res = client.post("/terminate-process")
    assert res.json()["success"] is False


def test_send_input_without_process(client):
    res = client.post("/send-input", json={"input": "hi"})
    assert res.status_code == 404
    assert res.json() == {"detail": "No active process found"}


def test_api_key_is_enforced(config):
    config.api_key = "secret"
    with TestClient(create_app(config)) as client:
        assert client.get("/session").status_code == 401
        assert client.get("/session", headers={"x-api-key": "wrong"}).status_code == 401
        assert client.get("/session", headers={"x-api-key": "secret"}).status_code == 200


def test_shutdown_removes_session_directories(config, tmp_path):
    with TestClient(create_app(config)) as client:
        session_id = client.get("/session").json()["session_id"]
        assert (tmp_path / "sessions" / session_id).is_dir()
    assert not (tmp_path / "sessions" / session_id).exists()


@requires_bash
def test_terminal_streams_command_output(client):
    res = client.post("/terminal", json={"command": "echo from shell"})
    assert res.status_code == 200
    frames = frames_of(res)
    assert frames[0] == Message(text="Terminal started")
    assert "".join(f.text for f in frames if isinstance(f, OutputChunk)) == "from shell\n"
    assert frames[-1] == Done(status=RunStatus.COMPLETED, exit_code=0)


def test_terminal_rejects_dangerous_commands(client):
    res = client.post("/terminal", json={"command": "rm -rf ~"})
    assert res.status_code == 403
    assert res.json()["detail"].startswith("Dangerous command detected")


def test_terminal_requires_command(client):
    res = client.post("/terminal", json={"command": ""})
    assert res.status_code == 400
    assert res.json() == {"detail": "Command is required"}
