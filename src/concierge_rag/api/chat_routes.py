"""
Chat Routes

Grounded chat over the knowledge base, streamed as server-sent events:

    data: {"delta": "Hel"}
    data: {"delta": "lo"}
    data: [DONE]

Request Flow
------------
1. Validate the turn and count it against the caller's chat rate limit.
2. Prepare the turn: history, user message, retrieval, model config and key.
3. Pull the first delta before responding, so provider failures on stream
   open (bad key, unknown model, rate limit) become a proper JSON error
   response instead of a broken stream.
4. Stream the remaining deltas. A failure after the first byte is reported
   as a final `data: {"error": ...}` event.

If the client disconnects, the stream generator is closed and the partial
answer is discarded.
"""

import json
import logging
from typing import Annotated, AsyncIterator, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from .dependencies import get_chat_service, rate_limited
from .models import ChatRequest
from ..chat.service import ChatService
from ..core.errors import ConciergeError, GenerationProviderError

logger = logging.getLogger("concierge.api.chat")

router = APIRouter(prefix="/chat", tags=["chat"])


def _sse(payload: object) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _error_event(exc: ConciergeError) -> str:
    payload = {"error": exc.error_code, "detail": str(exc)}
    if isinstance(exc, GenerationProviderError):
        payload["kind"] = exc.kind
    return _sse(payload)


@router.post(
    "",
    summary="Send a chat turn and stream the grounded answer",
    response_class=StreamingResponse,
    dependencies=[Depends(rate_limited("chat"))],
)
async def chat(
    req: ChatRequest,
    service: Annotated[ChatService, Depends(get_chat_service)],
) -> StreamingResponse:
    turn = await service.prepare(req.conversation_id, req.message.strip())
    stream = service.stream(turn)

    # Errors raised here propagate to the exception handlers
    first: Optional[str]
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        first = None

    async def event_stream() -> AsyncIterator[str]:
        try:
            if first is not None:
                yield _sse({"delta": first})
                async for delta in stream:
                    yield _sse({"delta": delta})
        except ConciergeError as exc:
            logger.error(
                "Chat stream for conversation %s failed mid-answer: %s",
                req.conversation_id,
                exc,
            )
            yield _error_event(exc)
            return
        finally:
            await stream.aclose()

        yield "data: [DONE]\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
