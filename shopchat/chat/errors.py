"""Exception taxonomy shared by the chat subsystem."""

from __future__ import annotations


class ChatError(RuntimeError):
    """Base class for chat subsystem failures."""


class LookupFailure(ChatError):
    """Raised when shop or product facts cannot be read."""


class ShopFactsUnavailable(LookupFailure):
    """Raised when the shop fact store is unreachable."""


class PersistenceFailure(ChatError):
    """Raised when the message store rejects a read or write."""


class InvalidMessage(ChatError, ValueError):
    """Raised for empty, whitespace-only or over-long message content."""


class ConversationNotFound(ChatError):
    """Raised when a conversation could not be located."""


class ShopNotFound(ChatError):
    """Raised when a shop id is unknown to the shop fact store."""


__all__ = [
    "ChatError",
    "ConversationNotFound",
    "InvalidMessage",
    "LookupFailure",
    "PersistenceFailure",
    "ShopFactsUnavailable",
    "ShopNotFound",
]
