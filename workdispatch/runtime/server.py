"""FastAPI server: exposes store event logs and the agent dispatcher over HTTP."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from .agent.tool_defs import build_store_tools
from .config import Config, get_config
from .dispatcher import EventDispatcher
from .event_log import EventLogRegistry, chat_message_sent
from .ollama import OllamaClient
from .stub import StubProvider

logger = logging.getLogger("workdispatch.server")

# Global instances
provider: OllamaClient | StubProvider | None = None
registry: EventLogRegistry | None = None
dispatcher: EventDispatcher | None = None


async def create_provider(cfg: Config) -> OllamaClient | StubProvider | None:
    """Build the configured model provider; None selects echo mode."""
    if cfg.llm_provider == "stub":
        logger.info("  Provider: stub")
        return StubProvider.from_env()
    if cfg.llm_provider == "ollama":
        client = OllamaClient(cfg)
        ollama_ok = await client.health_check()
        logger.info(f"  Ollama status: {'✓ connected' if ollama_ok else '✗ unavailable'}")
        if ollama_ok:
            return client
        logger.warning("Ollama is unreachable, falling back to echo responses")
        return None
    logger.info("  Provider: none (echo mode)")
    return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    global provider, registry, dispatcher

    cfg = get_config()
    logger.info(f"Starting workdispatch server on {cfg.server_host}:{cfg.server_port}")
    logger.info(f"  Ollama: {cfg.ollama_url} (model: {cfg.ollama_model})")

    provider = await create_provider(cfg)
    registry = EventLogRegistry()
    dispatcher = EventDispatcher(
        provider=provider,
        config=cfg,
        tool_executor_factory=lambda log: build_store_tools(log, cfg.tool_result_max_chars),
    )
    for store_key in cfg.stores:
        dispatcher.start_monitoring(store_key, registry.get_or_create(store_key))

    yield

    # Shutdown
    await dispatcher.shutdown()
    if provider:
        await provider.close()
    logger.info("workdispatch server shutdown complete")


app = FastAPI(
    title="workdispatch",
    version="0.1.0",
    description="Agentic dispatch runtime over per-store event logs",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Request/Response Models ─────────────────────────────────────────

class MessageRequest(BaseModel):
    conversation_id: str = Field(..., min_length=1, max_length=100)
    message: str = Field(..., min_length=1)


def _require_dispatcher() -> tuple[EventDispatcher, EventLogRegistry]:
    if dispatcher is None or registry is None:
        raise HTTPException(status_code=503, detail="Dispatcher not initialized")
    return dispatcher, registry


# ─── Routes ──────────────────────────────────────────────────────────

@app.get("/api/status")
async def get_status() -> JSONResponse:
    """Health check and provider status."""
    cfg = get_config()
    provider_ok = await provider.health_check() if provider else False
    mode = cfg.llm_provider if provider else "echo"

    return JSONResponse({
        "status": "ok" if (provider_ok or provider is None) else "degraded",
        "provider": {
            "mode": mode,
            "connected": provider_ok,
            "url": cfg.ollama_url,
            "model": cfg.ollama_model,
        },
        "stores": dispatcher.monitored_stores() if dispatcher else [],
    })


@app.get("/api/stats")
async def get_stats() -> JSONResponse:
    disp, _ = _require_dispatcher()
    return JSONResponse(disp.get_processing_stats())


@app.get("/api/stores")
async def list_stores() -> JSONResponse:
    disp, _ = _require_dispatcher()
    return JSONResponse({"stores": disp.monitored_stores()})


@app.post("/api/stores/{store_key}")
async def start_store(store_key: str) -> JSONResponse:
    disp, logs = _require_dispatcher()
    started = disp.start_monitoring(store_key, logs.get_or_create(store_key))
    if not started:
        return JSONResponse(
            {"status": "error", "message": f"Store {store_key} is already monitored or stopping"},
            status_code=409,
        )
    return JSONResponse({"status": "ok", "store": store_key})


@app.delete("/api/stores/{store_key}")
async def stop_store(store_key: str) -> JSONResponse:
    disp, _ = _require_dispatcher()
    if not disp.is_monitoring(store_key):
        return JSONResponse(
            {"status": "error", "message": f"Store {store_key} is not being monitored"},
            status_code=404,
        )
    disp.stop_monitoring(store_key)
    return JSONResponse({"status": "ok", "store": store_key, "stopping": True})


@app.post("/api/stores/{store_key}/messages")
async def post_message(store_key: str, request: MessageRequest) -> JSONResponse:
    """Append a user chat message to the store's event log."""
    _, logs = _require_dispatcher()
    log = logs.get(store_key)
    if log is None:
        raise HTTPException(status_code=404, detail=f"Unknown store {store_key}")
    event = chat_message_sent(request.conversation_id, request.message)
    log.commit(event)
    return JSONResponse({"status": "ok", "id": event.args["id"]})


@app.get("/api/stores/{store_key}/messages")
async def get_messages(store_key: str, conversation_id: str | None = None) -> JSONResponse:
    _, logs = _require_dispatcher()
    log = logs.get(store_key)
    if log is None:
        raise HTTPException(status_code=404, detail=f"Unknown store {store_key}")
    rows = log.query("chat_messages")
    if conversation_id is not None:
        rows = [r for r in rows if r.get("conversation_id") == conversation_id]
    return JSONResponse({"messages": rows})


@app.get("/api/stores/{store_key}/events", response_model=None)
async def stream_events(store_key: str, request: Request) -> EventSourceResponse | JSONResponse:
    """Stream committed domain events as SSE."""
    _, logs = _require_dispatcher()
    log = logs.get(store_key)
    if log is None:
        return JSONResponse({"error": f"Unknown store {store_key}"}, status_code=404)
    return EventSourceResponse(_stream_store_events(log, request), media_type="text/event-stream")


async def _stream_store_events(log: Any, request: Request) -> AsyncIterator[dict]:
    async for event in log.listen():
        if await request.is_disconnected():
            break
        yield {
            "event": event.name,
            "data": json.dumps(event.to_dict(), default=str),
        }


def create_app() -> FastAPI:
    """Factory function for creating the app."""
    return app


def run_server(host: str | None = None, port: int | None = None) -> None:
    """Run the HTTP server."""
    import uvicorn

    cfg = get_config()
    uvicorn.run(
        "workdispatch.runtime.server:app",
        host=host or cfg.server_host,
        port=port or cfg.server_port,
        log_level="warning",
        log_config=None,
        reload=False,
    )
