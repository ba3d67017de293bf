"""FastAPI application exposing race and failover chat streams."""

import json
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from starlette.responses import Response, StreamingResponse

from hydra.adapters import build_adapters
from hydra.admin import admin_router
from hydra.catalog import MODEL_CATALOG
from hydra.config import Config, load_config
from hydra.gateway import StreamGateway
from hydra.history import SessionHistory
from hydra.models import StreamChunk
from hydra.race import OmniRace
from hydra.sequencer import FailoverSequencer
from hydra.vault import CredentialVault, PenaltyPolicy

logger = logging.getLogger(__name__)


def configure_app(
    app: FastAPI,
    config: Config,
    http_client: httpx.AsyncClient,
    vault: Optional[CredentialVault] = None,
) -> None:
    """Wire vault, gateway, race and the session registry onto ``app.state``."""
    if vault is None:
        vault = CredentialVault(
            penalties=PenaltyPolicy(
                rate_limit_seconds=config.rate_limit_cooldown_seconds,
                overload_seconds=config.overload_cooldown_seconds,
                generic_seconds=config.generic_cooldown_seconds,
            )
        )
    gateway = StreamGateway(vault, build_adapters(http_client, config))

    app.state.config = config
    app.state.http_client = http_client
    app.state.vault = vault
    app.state.gateway = gateway
    app.state.race = OmniRace(gateway, timeout_seconds=config.race_timeout_seconds)
    app.state.sessions = OrderedDict()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle: startup and shutdown."""
    config = load_config()

    logging.basicConfig(level=getattr(logging, config.log_level))

    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            config.http_connect_timeout, read=config.http_read_timeout, write=30.0
        ),
        limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
    )
    configure_app(app, config, http_client)

    counts = _pool_counts(app.state.vault)
    logger.info(
        "Hydra relay started with %d/%d healthy providers",
        counts["providers_available"],
        counts["total_providers"],
    )

    yield

    await http_client.aclose()
    logger.info("Hydra relay stopped")


app = FastAPI(title="Hydra Relay", lifespan=lifespan)

app.include_router(admin_router)


async def sse_frames(chunks: AsyncIterator[StreamChunk]) -> AsyncIterator[str]:
    async for chunk in chunks:
        yield f"data: {json.dumps(chunk.to_dict(), ensure_ascii=False)}\n\n"
    yield "data: [DONE]\n\n"


def _pool_counts(vault: CredentialVault) -> Dict[str, int]:
    healthy = sum(1 for provider in vault.providers if vault.is_healthy(provider))
    return {"providers_available": healthy, "total_providers": len(vault.providers)}


def _provider_counts(request: Request) -> Dict[str, int]:
    return _pool_counts(request.app.state.vault)


def _get_session(request: Request, session_id: str) -> FailoverSequencer:
    """Return the session's sequencer, evicting the least recently used past the cap."""
    sessions: "OrderedDict[str, FailoverSequencer]" = request.app.state.sessions
    sequencer = sessions.get(session_id)
    if sequencer is not None:
        sessions.move_to_end(session_id)
        return sequencer

    config: Config = request.app.state.config
    sequencer = FailoverSequencer(
        request.app.state.gateway,
        history=SessionHistory(max_turns=config.history_max_turns),
        reroute_delay_seconds=config.reroute_delay_seconds,
        candidate_timeout_seconds=config.candidate_timeout_seconds,
        history_token_limit=config.history_token_limit,
    )
    sessions[session_id] = sequencer
    while len(sessions) > config.max_sessions:
        evicted, _ = sessions.popitem(last=False)
        logger.info("Evicted idle session %s", evicted)
    return sequencer


async def _json_object(request: Request) -> Dict[str, object]:
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="request body must be a JSON object")
    return body


@app.get("/")
async def root(request: Request) -> Dict[str, object]:
    return {
        "service": "Hydra Relay",
        "status": "running",
        **_provider_counts(request),
    }


@app.get("/health")
async def health_check(request: Request) -> Dict[str, object]:
    """Health check endpoint with provider pool summary."""
    return {"status": "healthy", **_provider_counts(request)}


@app.get("/v1/models")
async def list_models() -> Dict[str, object]:
    """List the model catalog accepted as ``model_id``."""
    return {
        "models": [
            {
                "id": spec.id,
                "provider": spec.provider,
                "name": spec.name,
                "contextLimit": spec.context_limit,
            }
            for spec in MODEL_CATALOG
        ]
    }


@app.post("/v1/race")
async def race_endpoint(request: Request) -> StreamingResponse:
    """Race the configured candidates and stream the winner as SSE."""
    body = await _json_object(request)
    prompt = body.get("prompt")
    if not prompt:
        raise HTTPException(status_code=400, detail="prompt is required")

    race: OmniRace = request.app.state.race
    chunks = race.race_stream(
        prompt,
        system_instruction=body.get("system_instruction"),
        context=body.get("context"),
    )
    return StreamingResponse(sse_frames(chunks), media_type="text/event-stream")


@app.post("/v1/sessions/{session_id}/chat")
async def chat_endpoint(request: Request, session_id: str) -> StreamingResponse:
    """Run one failover turn for a session and stream it as SSE."""
    body = await _json_object(request)
    message = body.get("message")
    if not message:
        raise HTTPException(status_code=400, detail="message is required")

    sequencer = _get_session(request, session_id)
    chunks = sequencer.stream_execute(
        message,
        body.get("model_id") or "auto-best",
        context=body.get("context"),
    )
    return StreamingResponse(sse_frames(chunks), media_type="text/event-stream")


@app.delete("/v1/sessions/{session_id}")
async def reset_session(request: Request, session_id: str) -> Response:
    """Forget a session and its history."""
    sequencer = request.app.state.sessions.pop(session_id, None)
    if sequencer is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    sequencer.reset()
    return Response(status_code=204)


def run() -> None:
    config = load_config()
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())
