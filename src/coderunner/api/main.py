"""
FastAPI application for the code runner.

This module configures the FastAPI application, resolves the caller's
session from a cookie, enforces API key authentication and registers the
routes for saving, running and terminating code and for terminal
commands.  Runs are streamed back as newline-delimited JSON frames;
validation failures are rejected with a 4xx before the first frame.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from ..config import Config
from ..engine import ExecutionEngine, ExecutionRequest
from ..errors import CodeRunnerError, SessionUnavailable
from ..frames import Done, ErrorChunk, RunStatus, encode_frame, is_terminal
from ..janitor import JanitorScheduler
from ..models import (
    ExecuteRequest,
    ExecuteResponse,
    RunRequest,
    SaveCodeRequest,
    SaveCodeResponse,
    SendInputRequest,
    SendInputResponse,
    SessionInfo,
    TerminalRequest,
    TerminateResponse,
)
from ..sessions import Session


logger = logging.getLogger("coderunner")

if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter("[coderunner] %(levelname)s - %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)

logger.setLevel(logging.INFO)

NDJSON = "application/x-ndjson"

SESSIONLESS_PATHS = {"/health", "/docs", "/openapi.json"}


def create_app(config: Optional[Config] = None) -> FastAPI:
    """Build the application around a fresh :class:`ExecutionEngine`."""
    config = config or Config.from_env()

    logger.info(
        "Loaded config: storage_path=%s, allowed_langs=%s, session_ttl=%ss, default_timeout=%sms",
        config.storage_path,
        config.allowed_langs,
        config.session_ttl_seconds,
        config.default_timeout_ms,
    )

    engine = ExecutionEngine(config)
    janitor = JanitorScheduler(engine, config.janitor_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        janitor.start()
        try:
            yield
        finally:
            await janitor.shutdown()

    app = FastAPI(title="Code Runner", version="0.1.0", lifespan=lifespan)
    app.state.config = config
    app.state.engine = engine
    app.state.janitor = janitor

    @app.exception_handler(CodeRunnerError)
    async def handle_code_runner_error(request: Request, exc: CodeRunnerError) -> JSONResponse:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.middleware("http")
    async def attach_session(request: Request, call_next):
        """Resolve the session cookie, creating a session when it is missing."""
        if request.url.path in SESSIONLESS_PATHS:
            return await call_next(request)
        token = request.cookies.get(config.cookie_name)
        try:
            session = engine.sessions.ensure(token)
        except SessionUnavailable as exc:
            return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
        request.state.session = session

        response = await call_next(request)
        if token != session.id:
            response.set_cookie(
                config.cookie_name,
                session.id,
                max_age=config.session_ttl_seconds,
                httponly=True,
                secure=config.cookie_secure,
                samesite="strict",
            )
        return response

    @app.middleware("http")
    async def authenticate(request: Request, call_next):
        """Middleware to enforce API key authentication on all requests."""
        path = request.url.path
        method = request.method
        client = getattr(request.client, "host", "unknown")

        logger.info("Incoming request: %s %s from %s", method, path, client)

        if config.api_key:
            provided_key = request.headers.get("x-api-key")
            if provided_key != config.api_key:
                logger.warning("Invalid API key for %s %s from %s", method, path, client)
                return JSONResponse(status_code=401, content={"detail": "Invalid API key"})

        response = await call_next(request)
        logger.info("Response: %s %s -> %s", method, path, response.status_code)
        return response

    @app.get("/health")
    async def health() -> Dict[str, str]:
        """Return a simple health check response."""
        return {"status": "ok"}

    @app.get("/session", response_model=SessionInfo)
    async def get_session(request: Request) -> SessionInfo:
        return SessionInfo(**engine.session_info(request.state.session))

    @app.post("/code", response_model=SaveCodeResponse)
    async def save_code(req: SaveCodeRequest, request: Request) -> SaveCodeResponse:
        """Save source code to the language's conventional file."""
        path = engine.save_code(request.state.session, req.language, req.code, req.path)
        return SaveCodeResponse(path=path)

    def stream_frames(session: Session, execution: ExecutionRequest) -> StreamingResponse:
        """Stream the frames of ``execution`` as NDJSON."""

        async def frames():
            terminal_sent = False
            try:
                async for frame in engine.run(session, execution):
                    terminal_sent = is_terminal(frame)
                    yield encode_frame(frame)
            except Exception as exc:
                logger.exception("Unhandled error during execution: %s", exc)
                if not terminal_sent:
                    yield encode_frame(ErrorChunk(text="Execution error"))
                    yield encode_frame(Done(status=RunStatus.FAILED))

        return StreamingResponse(frames(), media_type=NDJSON)

    @app.post("/run")
    @app.post("/run-file")
    async def run_file(req: RunRequest, request: Request) -> StreamingResponse:
        """Run a file from the session and stream its output frames."""
        session = request.state.session
        execution = engine.prepare_run(session, req.language, req.path, req.timeout_ms)
        logger.info("[/run] Session %s: running %s (%s)", session.id, execution.source_path.name, execution.language)
        return stream_frames(session, execution)

    @app.post("/terminal")
    async def terminal(req: TerminalRequest, request: Request) -> StreamingResponse:
        """Run a shell command in the session directory and stream its output."""
        session = request.state.session
        execution = engine.prepare_command(session, req.command, req.timeout_ms)
        logger.info("[/terminal] Session %s: %r", session.id, req.command)
        return stream_frames(session, execution)

    @app.post("/execute", response_model=ExecuteResponse)
    async def execute(req: ExecuteRequest, request: Request) -> ExecuteResponse:
        """Execute a source text in the session and return its buffered output."""
        session = request.state.session
        result = await engine.execute_source(session, req.language, req.code, req.stdin, req.timeout_ms)
        return ExecuteResponse(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            timed_out=result.timed_out,
        )

    @app.post("/send-input", response_model=SendInputResponse)
    async def send_input(req: SendInputRequest, request: Request) -> SendInputResponse:
        if not await engine.send_input(request.state.session, req.input):
            raise HTTPException(status_code=404, detail="No active process found")
        return SendInputResponse(success=True, message="Input sent to process")

    @app.post("/terminate", response_model=TerminateResponse)
    @app.post("/terminate-process", response_model=TerminateResponse)
    async def terminate(request: Request) -> TerminateResponse:
        """Kill the session's running process, if there is one."""
        if engine.terminate(request.state.session):
            return TerminateResponse(success=True, message="Process terminated successfully")
        return TerminateResponse(success=False, message="No active process found")

    return app


app = create_app()
