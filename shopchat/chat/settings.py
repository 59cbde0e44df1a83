"""Runtime configuration for auto-responses and escalation."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_FALLBACK_TEXT = (
    "The shopkeeper will get back to you soon — check our inventory list "
    "for updates in the meantime!"
)


@dataclasses.dataclass(frozen=True)
class ChatSettings:
    """Tunables for the chat core, loaded from the environment."""

    escalation_delay_seconds: float = 120.0  # two minutes
    fallback_text: str = DEFAULT_FALLBACK_TEXT
    currency_symbol: str = ""
    max_message_length: int = 2000
    send_rate_limit: str = "30/minute"
    shop_timezone: str = "UTC"


@lru_cache(maxsize=1)
def get_chat_settings() -> ChatSettings:
    """Load settings from the environment with defaults suitable for development."""

    delay = float(os.getenv("ESCALATION_DELAY_SECONDS", "120"))
    if delay < 0:
        raise RuntimeError("ESCALATION_DELAY_SECONDS must not be negative.")
    shop_timezone = os.getenv("SHOP_TIMEZONE", "UTC")
    try:
        ZoneInfo(shop_timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise RuntimeError(f"Unknown SHOP_TIMEZONE '{shop_timezone}'.") from exc
    return ChatSettings(
        escalation_delay_seconds=delay,
        fallback_text=os.getenv("ESCALATION_FALLBACK_TEXT") or DEFAULT_FALLBACK_TEXT,
        currency_symbol=os.getenv("CURRENCY_SYMBOL", ""),
        max_message_length=int(os.getenv("CHAT_MAX_MESSAGE_LENGTH", "2000")),
        send_rate_limit=os.getenv("CHAT_SEND_RATE_LIMIT", "30/minute"),
        shop_timezone=shop_timezone,
    )


def reset_chat_settings_cache() -> None:
    """Clear cached chat settings; useful in tests when env vars change."""

    get_chat_settings.cache_clear()


__all__ = [
    "ChatSettings",
    "DEFAULT_FALLBACK_TEXT",
    "get_chat_settings",
    "reset_chat_settings_cache",
]
