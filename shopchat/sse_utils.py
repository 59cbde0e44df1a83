"""SSE helpers for live conversation updates.

Event format produced:
- "event: ready" once the subscription is registered
- "event: message" with the JSON-encoded message for each new message
- ": keep-alive" comments while the conversation is quiet
"""

import asyncio
import json
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from .chat.realtime import Subscription

HEARTBEAT_SECONDS = 15.0


def format_sse(event: str, data: Any) -> str:
    """Render one SSE frame; multi-line payloads become several data lines."""
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False, default=str)
    lines = payload.splitlines() or [""]
    return f"event: {event}\n" + "".join(f"data: {line}\n" for line in lines) + "\n"


async def message_events(
    subscription: Subscription,
    *,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    heartbeat_seconds: float = HEARTBEAT_SECONDS,
) -> AsyncIterator[str]:
    """Stream messages delivered to ``subscription`` until it closes.

    The subscription is always closed when the generator finishes, including
    when the client goes away mid-stream.
    """
    try:
        yield format_sse("ready", {"conversation_id": subscription.conversation_id})
        while True:
            if is_disconnected is not None and await is_disconnected():
                break
            try:
                message = await asyncio.wait_for(subscription.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            if message is None:
                break
            yield format_sse("message", message.model_dump(mode="json"))
    finally:
        subscription.close()
