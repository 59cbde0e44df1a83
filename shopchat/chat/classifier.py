"""Keyword based intent classification for customer chat messages."""
from __future__ import annotations

from typing import Optional, Sequence

from .models import Intent

# Checked in order; the first category with any match wins.
INTENT_KEYWORDS: tuple[tuple[Intent, tuple[str, ...]], ...] = (
    (Intent.HOURS, ("open", "closed", "hours", "timing", "time")),
    (Intent.AVAILABILITY, ("available", "stock", "have", "in stock", "inventory")),
    (Intent.PRICING, ("price", "cost", "how much", "rate", "charges", "expensive")),
)


def normalize(text: str) -> str:
    return (text or "").lower().strip()


def contains_keyword(text: str, keywords: Sequence[str]) -> bool:
    """Return ``True`` if any keyword occurs as a plain substring of ``text``."""
    return any(keyword in text for keyword in keywords)


class KeywordClassifier:
    """Map a message to at most one :class:`Intent` by substring containment.

    Matching is deliberately naive: ``"priceless"`` is a pricing question and
    ``"sometimes"`` asks about hours. Word boundaries are not applied.
    """

    def __init__(
        self, keywords: Sequence[tuple[Intent, Sequence[str]]] = INTENT_KEYWORDS
    ) -> None:
        self._keywords = keywords

    def classify(self, message: str) -> Optional[Intent]:
        text = normalize(message)
        if not text:
            return None
        for intent, keywords in self._keywords:
            if contains_keyword(text, keywords):
                return intent
        return None
