"""Shared slowapi limiter keyed by client address."""

from __future__ import annotations

from fastapi import Request
from slowapi import Limiter

from .chat.settings import get_chat_settings


def get_client_ip(request: Request) -> str:
    """Best-effort client IP, preferring the first ``X-Forwarded-For`` hop."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client is None:
        return "unknown"
    return request.client.host


def send_message_limit() -> str:
    """Limit string for message sends, read at request time."""
    return get_chat_settings().send_rate_limit


limiter = Limiter(key_func=get_client_ip)
