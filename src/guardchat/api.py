"""HTTP surface: FastAPI routes over a ChatService."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from typing import Any, Optional

import yaml
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from guardchat import __version__
from guardchat.errors import AccessDenied, UpstreamError, ValidationError
from guardchat.models import ChatReply, ChatRequest, RequestMeta
from guardchat.service import ChatService
from guardchat.stream import StreamFrame

router = APIRouter()
logger = logging.getLogger(__name__)

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ModelSelection(BaseModel):
    model: str = ""


def _service(request: Request) -> ChatService:
    return request.app.state.service


def _meta(request: Request, user_id: Optional[int]) -> RequestMeta:
    if user_id is None:
        raise HTTPException(status_code=401, detail={"code": "unauthorized", "message": "missing user id"})
    return RequestMeta(
        user_id=user_id,
        client_ip=request.client.host if request.client else "",
        user_agent=request.headers.get("user-agent", ""),
    )


def _request_error(exc: Exception) -> HTTPException:
    if isinstance(exc, AccessDenied):
        return HTTPException(status_code=403, detail={"code": "forbidden", "message": str(exc)})
    return HTTPException(status_code=400, detail={"code": "invalid_request", "message": str(exc)})


async def _encode(frames: AsyncGenerator[StreamFrame, None]) -> AsyncIterator[str]:
    # Closing the frame generator cancels the producer when the client goes away.
    async with contextlib.aclosing(frames):
        async for frame in frames:
            yield frame.encode()


@router.post("/api/ai/chat", response_model=ChatReply)
async def chat(
    payload: ChatRequest,
    request: Request,
    user_id: Optional[int] = Header(default=None, alias="x-user-id"),
    service: ChatService = Depends(_service),
):
    meta = _meta(request, user_id)
    try:
        return await service.send(
            meta.user_id,
            payload.content,
            conversation_id=payload.conversation_id,
            model=payload.model,
            meta=meta,
        )
    except (ValidationError, AccessDenied) as exc:
        raise _request_error(exc) from exc


@router.post("/api/ai/stream")
async def stream(
    payload: ChatRequest,
    request: Request,
    user_id: Optional[int] = Header(default=None, alias="x-user-id"),
    service: ChatService = Depends(_service),
):
    meta = _meta(request, user_id)
    try:
        frames = await service.stream(
            meta.user_id,
            payload.content,
            conversation_id=payload.conversation_id,
            model=payload.model,
            meta=meta,
        )
    except (ValidationError, AccessDenied) as exc:
        raise _request_error(exc) from exc
    return StreamingResponse(_encode(frames), media_type="text/event-stream", headers=_SSE_HEADERS)


@router.get("/api/ai/health")
async def health(service: ChatService = Depends(_service)):
    return await service.health()


@router.get("/api/ai/models")
async def models(service: ChatService = Depends(_service)):
    try:
        available = await service.client.list_models()
    except UpstreamError as exc:
        logger.error("Listing models failed: %s", exc)
        raise HTTPException(
            status_code=502, detail={"code": "upstream_error", "message": "Error obteniendo modelos"}
        ) from exc
    return {
        "models": [model.model_dump() for model in available],
        "current_model": service.client.get_model(),
    }


@router.post("/api/ai/model")
async def select_model(payload: ModelSelection, service: ChatService = Depends(_service)):
    try:
        name = service.set_model(payload.model)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail={"code": "invalid_request", "message": str(exc)}) from exc
    return {"model": name}


@router.post("/api/admin/rules/reload")
async def reload_rules(service: ChatService = Depends(_service)) -> dict[str, Any]:
    try:
        ruleset = service.reload_rules()
    except (OSError, yaml.YAMLError, ValueError) as exc:
        logger.exception("Rule reload failed")
        raise HTTPException(status_code=500, detail={"code": "reload_failed", "message": str(exc)}) from exc
    return {"loaded": len(ruleset), "skipped": list(ruleset.skipped)}


def create_app(service: ChatService) -> FastAPI:
    app = FastAPI(title="guardchat", version=__version__)
    app.state.service = service
    app.include_router(router)
    return app
