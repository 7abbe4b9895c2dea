"""Stream relay: FastAPI app bridging browser clients to an LLM stream.

Two-phase protocol on /api/stream:
  POST   stores the system prompt for the next stream
  GET    streams the completion for the client's history as SSE
Plus operational endpoints for health and config hot-reload.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from streamrelay.config import RelayConfig, get_config, load_config, reload_config
from streamrelay.prompt_cache import PromptCache, get_prompt_cache
from streamrelay.relay import StreamRelay
from streamrelay.scheduler import setup_scheduler
from streamrelay.schemas import PromptAccepted, PromptRequest
from streamrelay.upstream import ChatUpstream, get_upstream, reset_upstream

logger = logging.getLogger(__name__)

CORS_ALLOW_METHODS = ["GET", "POST", "OPTIONS"]
CORS_ALLOW_HEADERS = ["Content-Type", "Authorization", "Message", "Session-Id"]

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": ", ".join(CORS_ALLOW_METHODS),
    "Access-Control-Allow-Headers": ", ".join(CORS_ALLOW_HEADERS),
}

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    **CORS_HEADERS,
}


def _apply_config(config: RelayConfig, cache: PromptCache) -> None:
    logging.getLogger().setLevel(config.log_level.upper())
    cache.ttl_seconds = config.prompt_cache.ttl_seconds


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load config and start the prompt sweep on startup."""
    config = load_config()
    cache = get_prompt_cache()
    _apply_config(config, cache)

    scheduler = setup_scheduler(config.prompt_cache, cache)
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info(
        f"Stream relay started (origins={config.allowed_origins}, "
        f"model={config.upstream.model}, queue_size={config.stream.queue_size})"
    )
    yield
    app.state.scheduler.shutdown()
    await reset_upstream()
    logger.info("Stream relay shutting down")


# Load config early so we can read allowed_origins for CORS middleware.
_boot_config = load_config()

logging.basicConfig(level=_boot_config.log_level.upper())

app = FastAPI(title="Stream Relay", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_boot_config.allowed_origins,
    allow_credentials=True,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


# ---------------------------------------------------------------------------
# Relay endpoints
# ---------------------------------------------------------------------------


@app.get("/api/stream")
async def open_stream(
    message: str = Header("[]"),
    session_id: str | None = Header(None),
    upstream: ChatUpstream = Depends(get_upstream),
    cache: PromptCache = Depends(get_prompt_cache),
):
    """Stream a completion for the client's history as Server-Sent Events.

    ``Message`` header: percent-encoded JSON array of ``{role, content}``.
    The response always opens; failures end it without a data frame.
    """
    config = get_config()
    relay = StreamRelay(
        upstream,
        cache,
        session_id=session_id,
        queue_size=config.stream.queue_size,
        diagnostic_errors=config.stream.diagnostic_errors,
        announce_connection=config.stream.announce_connection,
    )
    return StreamingResponse(
        relay.frames(message),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.post("/api/stream", response_model=PromptAccepted)
async def set_prompt(
    body: PromptRequest,
    response: Response,
    cache: PromptCache = Depends(get_prompt_cache),
):
    """Store the system prompt for the next stream (or the next stream
    carrying the same session id)."""
    cache.set(body.message, key=body.session_id)
    response.headers["Access-Control-Allow-Origin"] = "*"
    return PromptAccepted(received=body.message)


@app.options("/api/stream")
async def stream_preflight():
    """CORS preflight for clients that send it without an Origin header."""
    return Response(status_code=204, headers=CORS_HEADERS)


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------


@app.get("/health")
async def health(cache: PromptCache = Depends(get_prompt_cache)):
    """Liveness check."""
    config = get_config()
    return {
        "status": "healthy",
        "model": config.upstream.model,
        "pending_prompts": cache.pending(),
    }


@app.post("/reload")
async def reload(request: Request):
    """Hot-reload config without a restart.

    Rebuilds the upstream client and restarts the prompt sweep. CORS
    origins stay as they were at boot.
    """
    try:
        new_config = reload_config()
        cache = get_prompt_cache()
        _apply_config(new_config, cache)
        await reset_upstream()

        scheduler = getattr(request.app.state, "scheduler", None)
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        new_scheduler = setup_scheduler(new_config.prompt_cache, cache)
        new_scheduler.start()
        request.app.state.scheduler = new_scheduler

        return {"status": "reloaded", "model": new_config.upstream.model}
    except Exception as e:
        logger.error(f"Reload failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Reload failed: {e}")
