"""Re-frame completion stream events as server-sent events."""

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from fastapi.responses import StreamingResponse

from app.core.errors import AIError
from app.schemas.ai import StreamChunk, StreamError, StreamEvent

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

PREMATURE_END_MESSAGE = "Stream ended unexpectedly"


def format_sse(payload: dict) -> str:
    """Format one ``data:`` frame. JSON never contains raw newlines."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def relay_events(
    events: AsyncIterator[StreamEvent],
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
    """Yield SSE frames for ``events``, ending with exactly one terminal frame.

    Chunks are forwarded one frame each as they arrive. The first ``done`` or
    ``error`` event ends the relay. If the source raises or runs dry without a
    terminal event, an error frame is emitted in its place. When the caller
    has gone away nothing more is written. The source is always closed.
    """
    terminal_sent = False
    try:
        try:
            async for event in events:
                if is_disconnected is not None and await is_disconnected():
                    logger.info("Client disconnected, stopping stream relay")
                    return

                yield format_sse(event.to_frame())
                if not isinstance(event, StreamChunk):
                    terminal_sent = True
                    return
        except AIError as e:
            logger.warning("Stream source failed: %s", e.message)
            message = e.message
        except Exception as e:
            logger.exception("Stream source crashed: %s", e)
            message = "AI service error"
        else:
            logger.warning("Stream source ended without a terminal event")
            message = PREMATURE_END_MESSAGE

        if not terminal_sent:
            terminal_sent = True
            yield format_sse(StreamError(message=message).to_frame())
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()


def sse_response(
    events: AsyncIterator[StreamEvent],
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> StreamingResponse:
    """Wrap ``events`` in a ``text/event-stream`` response with buffering disabled."""
    return StreamingResponse(
        relay_events(events, is_disconnected),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
