"""
HTTP API
========

FastAPI surface over GatewayOrchestrator.

Run with: ai-gateway --serve  (or uvicorn "ai_gateway.server:create_app" --factory)
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .config import GatewayConfig, load_config
from .models import TaskType
from .orchestrator import GatewayOrchestrator

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

router = APIRouter()


class ChatRequest(BaseModel):
    """Chat request body."""

    message: str = Field(..., min_length=1, description="User message")
    user_id: str = Field(default="anonymous", min_length=1, max_length=256)
    options: dict[str, Any] = Field(default_factory=dict)


class MultiChatRequest(ChatRequest):
    """Multi-platform chat request body."""

    platforms: list[str] = Field(default_factory=list)


def get_orchestrator(request: Request) -> GatewayOrchestrator:
    return request.app.state.orchestrator


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": "ai-gateway", "version": API_VERSION}


@router.post("/api/chat")
async def chat(
    body: ChatRequest, orchestrator: GatewayOrchestrator = Depends(get_orchestrator)
) -> dict[str, Any]:
    response = await orchestrator.process_request(body.message, body.user_id, body.options)
    return response.to_dict()


@router.post("/api/chat/multi")
async def chat_multi(
    body: MultiChatRequest, orchestrator: GatewayOrchestrator = Depends(get_orchestrator)
) -> dict[str, Any]:
    response = await orchestrator.process_multi_platform_request(
        body.message, body.user_id, body.platforms or None, body.options
    )
    return response.to_dict()


def _sse(data: dict[str, Any], event: str | None = None) -> str:
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data, ensure_ascii=False)}\n\n"


@router.post("/api/chat/stream")
async def chat_stream(
    body: ChatRequest, orchestrator: GatewayOrchestrator = Depends(get_orchestrator)
) -> StreamingResponse:
    """
    Server-sent events: one `data:` event per chunk, then a `done` event
    carrying the final ProcessedResponse.
    """
    queue: asyncio.Queue[str | None] = asyncio.Queue()

    async def on_chunk(text: str, frame: Any) -> None:
        await queue.put(_sse({"content": text}))

    async def produce() -> None:
        try:
            response = await orchestrator.stream_request(
                body.message, body.user_id, on_chunk, body.options
            )
            await queue.put(_sse(response.to_dict(), event="done"))
        finally:
            await queue.put(None)

    async def events() -> AsyncIterator[str]:
        task = asyncio.create_task(produce())
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield item
            await task
        finally:
            # Client went away: stop the provider call, nothing gets saved
            if not task.done():
                task.cancel()

    return StreamingResponse(events(), media_type="text/event-stream")


@router.get("/api/platforms")
async def list_platforms(
    orchestrator: GatewayOrchestrator = Depends(get_orchestrator),
) -> list[dict[str, Any]]:
    return orchestrator.list_platforms()


@router.get("/api/task-types")
async def list_task_types(
    orchestrator: GatewayOrchestrator = Depends(get_orchestrator),
) -> list[dict[str, Any]]:
    return [
        {
            "id": task_type.value,
            "name": task_type.value.replace("_", " ").title(),
            "default_platform": orchestrator.selector.triple(task_type)["primary"],
        }
        for task_type in TaskType
    ]


@router.get("/api/context/{user_id}")
async def get_context(
    user_id: str, orchestrator: GatewayOrchestrator = Depends(get_orchestrator)
) -> dict[str, Any]:
    return {"user_id": user_id, "turns": await orchestrator.get_history(user_id)}


@router.delete("/api/context/{user_id}")
async def clear_context(
    user_id: str, orchestrator: GatewayOrchestrator = Depends(get_orchestrator)
) -> dict[str, Any]:
    cleared = await orchestrator.clear_history(user_id)
    return {"user_id": user_id, "cleared": cleared}


def create_app(
    config: GatewayConfig | None = None,
    orchestrator: GatewayOrchestrator | None = None,
) -> FastAPI:
    """Create FastAPI application."""
    gateway = orchestrator or GatewayOrchestrator(config or load_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting AI Gateway API...")
        await gateway.initialize()
        yield
        logger.info("Shutting down AI Gateway API...")
        await gateway.aclose()

    app = FastAPI(
        title="AI Gateway API",
        description="Multi-provider AI gateway with task routing and fallback",
        version=API_VERSION,
        lifespan=lifespan,
    )
    app.state.orchestrator = gateway
    app.include_router(router)
    return app
