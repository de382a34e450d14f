"""Expert chat endpoints: streaming and non-streaming turns, topics, cache."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from fastapi import APIRouter, HTTPException, Response, status
from fastapi.responses import StreamingResponse

from expert_chat.core.events import ChatEvent
from expert_chat.core.logging import get_logger
from expert_chat.core.orchestrator import ChatTurnError
from expert_chat.deps import AppCtx
from expert_chat.schemas.chat import ChatRequest, ChatResponse, TokenUsageRead, TopicEndRequest
from expert_chat.services.config_loader import PersonaConfigError, PersonaNotFoundError

logger = get_logger(__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _config_http_error(exc: PersonaConfigError) -> HTTPException:
    if isinstance(exc, PersonaNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=422, detail=str(exc))


@router.post("/{persona_id}/stream")
async def stream_chat(persona_id: str, body: ChatRequest, ctx: AppCtx) -> StreamingResponse:
    """Chat with a persona over SSE.

    Events: start, delta, tool_call, tool_results, then complete or error.
    Closing the connection cancels the turn; nothing is stored for it.
    """
    cancel = asyncio.Event()
    events = ctx.orchestrator.stream_turn(
        persona_id,
        body.user_id,
        body.content,
        model_override=body.model_id,
        cancel_event=cancel,
    )

    # Pull the first event here so configuration errors map to HTTP statuses
    try:
        first: ChatEvent | None = await anext(events)
    except StopAsyncIteration:
        first = None
    except PersonaConfigError as e:
        raise _config_http_error(e) from e

    async def event_generator() -> AsyncIterator[str]:
        finished = False
        try:
            if first is not None:
                yield first.to_sse()
            async for event in events:
                yield event.to_sse()
            finished = True
        finally:
            if not finished:
                cancel.set()
                logger.info("client_disconnected", persona_id=persona_id, user_id=body.user_id)
            await events.aclose()

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/{persona_id}/messages", response_model=ChatResponse)
async def send_message(persona_id: str, body: ChatRequest, ctx: AppCtx) -> ChatResponse:
    try:
        result = await ctx.orchestrator.chat(persona_id, body.user_id, body.content, model_override=body.model_id)
    except PersonaConfigError as e:
        raise _config_http_error(e) from e
    except ChatTurnError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message) from e

    return ChatResponse(
        message_id=result.message_id,
        topic_id=result.topic_id,
        is_new_topic=result.is_new_topic,
        content=result.content,
        usage=TokenUsageRead(**result.usage),
        latency_ms=result.latency_ms,
        model=result.model,
    )


@router.post("/{persona_id}/topics/end", status_code=status.HTTP_204_NO_CONTENT)
async def end_topic(persona_id: str, body: TopicEndRequest, ctx: AppCtx) -> Response:
    await ctx.orchestrator.end_topic(persona_id, body.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/{persona_id}/cache", status_code=status.HTTP_204_NO_CONTENT)
async def clear_cache(persona_id: str, ctx: AppCtx) -> Response:
    ctx.orchestrator.clear_persona_cache(persona_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
