"""FastAPI application for the queue dashboard.

Provides:
    GET  /api/health                 liveness probe
    GET  /api/state                  current dashboard state (polled clients)
    GET  /api/stream                 SSE: ``state`` events + keep-alive comments
    GET  /api/stats                  run statistics (recomputed per request)
    POST /api/chains                 submit a manual run or start an autonomous chain
    POST /api/repl                   submit REPL input as a manual run
    POST /api/stop-current           stop the chain currently running
    POST /api/stop-all               stop every chain
    POST /api/chains/{chain_id}/stop stop one chain

The state broadcaster runs as background tasks inside the app lifespan.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel

from agentboard.broadcaster import CLOSED, KEEPALIVE, Event, StateBroadcaster
from agentboard.errors import CommandValidationError, ExternalToolError
from agentboard.gateway import CommandGateway, normalize_mode
from agentboard.paths import DEFAULT_SESSION, QueuePaths
from agentboard.snapshot import build_state
from agentboard.stats import collect_stats, filter_active_chains

log = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse(event: Event) -> str:
    """Render one event as an SSE frame; keep-alives are comments, not events."""
    if event == KEEPALIVE:
        return ": keepalive\n\n"
    data = "".join(f"data: {line}\n" for line in event.data.split("\n"))
    return f"event: {event.name}\n{data}\n"


async def stream_events(
    broadcaster: StateBroadcaster,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
    """Yield SSE frames for one subscriber until it goes away."""
    sub = await broadcaster.subscribe()
    try:
        while True:
            event = await sub.get()
            if event == CLOSED:
                break
            yield format_sse(event)
            if is_disconnected is not None and await is_disconnected():
                break
    finally:
        broadcaster.unsubscribe(sub)


class ChainRequest(BaseModel):
    prompt: str | None = None
    mode: str | None = "manual"


class ReplRequest(BaseModel):
    input: str | None = None


def create_app(
    paths: QueuePaths | None = None,
    session: str | None = None,
    *,
    broadcaster: StateBroadcaster | None = None,
    gateway: CommandGateway | None = None,
) -> FastAPI:
    """Create and configure the FastAPI app.

    With no arguments (e.g. when uvicorn calls this as a factory), paths and
    session come from the environment.
    """
    queue_paths = paths or QueuePaths.from_env()
    ui_session = session or DEFAULT_SESSION
    state_broadcaster = broadcaster or StateBroadcaster(
        functools.partial(build_state, queue_paths, ui_session)
    )
    commands = gateway or CommandGateway(ui_session, on_success=state_broadcaster.refresh)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("Watching queue %s (session %s)", queue_paths.queue_dir, ui_session)
        await state_broadcaster.start()
        try:
            yield
        finally:
            await state_broadcaster.stop()

    app = FastAPI(title="agentboard", lifespan=lifespan)
    app.state.paths = queue_paths
    app.state.session = ui_session
    app.state.broadcaster = state_broadcaster
    app.state.gateway = commands

    # --- Error mapping ---

    @app.exception_handler(CommandValidationError)
    async def _validation_error(request: Request, exc: CommandValidationError):
        return JSONResponse({"error": str(exc)}, status_code=400)

    @app.exception_handler(RequestValidationError)
    async def _invalid_payload(request: Request, exc: RequestValidationError):
        return JSONResponse({"error": "invalid JSON payload"}, status_code=400)

    @app.exception_handler(ExternalToolError)
    async def _tool_error(request: Request, exc: ExternalToolError):
        return JSONResponse({"error": str(exc)}, status_code=500)

    # --- Reads ---

    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    @app.get("/api/state")
    async def get_state():
        serialized = await state_broadcaster.refresh()
        return Response(serialized, media_type="application/json")

    @app.get("/api/stream")
    async def state_stream(request: Request):
        """SSE endpoint pushing the full state whenever it changes.

        The first frame is always the current state, so a new client never
        waits for the next change to render.
        """
        return StreamingResponse(
            stream_events(state_broadcaster, request.is_disconnected),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get("/api/stats")
    async def get_stats(active_only: bool = False):
        stats = await asyncio.to_thread(collect_stats, queue_paths, ui_session)
        if active_only:
            stats["chains"] = filter_active_chains(stats["chains"])
        return stats

    # --- Mutations ---

    @app.post("/api/chains")
    async def create_chain(body: ChainRequest | None = None):
        body = body or ChainRequest()
        chain_id = await commands.create_chain(body.prompt, body.mode)
        return {"id": chain_id, "mode": normalize_mode(body.mode)}

    @app.post("/api/repl")
    async def repl_input(body: ReplRequest | None = None):
        body = body or ReplRequest()
        if not body.input or not body.input.strip():
            raise CommandValidationError("input required")
        return {"id": await commands.submit(body.input)}

    @app.post("/api/stop-current")
    async def stop_current():
        await commands.stop_current()
        return {"status": "ok"}

    @app.post("/api/stop-all")
    async def stop_all():
        await commands.stop_all()
        return {"status": "ok"}

    @app.post("/api/chains/{chain_id}/stop")
    async def stop_chain(chain_id: str):
        await commands.stop_chain(chain_id)
        return {"status": "ok"}

    return app
