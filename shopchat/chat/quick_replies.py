"""One-tap questions for customers and one-tap answers for shopkeepers."""
from __future__ import annotations

from typing import Any, Dict, List

from . import schemas
from .shops import ShopFactStore

CUSTOMER_QUICK_QUESTIONS: tuple[schemas.QuickReplyOption, ...] = (
    schemas.QuickReplyOption(text="Are you open?", category="hours"),
    schemas.QuickReplyOption(text="Is this item available?", category="availability"),
    schemas.QuickReplyOption(text="What is the price?", category="pricing"),
)

SHOPKEEPER_QUICK_ACTIONS: Dict[str, schemas.QuickReplyOption] = {
    "in_stock": schemas.QuickReplyOption(
        key="in_stock",
        text="In stock",
        category="availability",
        response="Yes, this item is currently in stock!",
    ),
    "out_of_stock": schemas.QuickReplyOption(
        key="out_of_stock",
        text="Out of stock",
        category="availability",
        response="Sorry, this item is currently out of stock.",
    ),
    "open": schemas.QuickReplyOption(
        key="open",
        text="We're open",
        category="hours",
        response="Yes, we are currently open! Feel free to visit us.",
    ),
    "closed": schemas.QuickReplyOption(
        key="closed",
        text="We're closed",
        category="hours",
        response="We are currently closed. Please check our opening hours.",
    ),
}

MAX_CUSTOMER_OPTIONS = 3
MAX_TEMPLATES = 6


def customer_quick_replies(shops: ShopFactStore, shop_id: str) -> List[schemas.QuickReplyOption]:
    """Shop-defined templates when the shop has any, otherwise the defaults."""
    templates: List[Dict[str, Any]] = shops.list_quick_reply_templates(shop_id, limit=MAX_TEMPLATES)
    if templates:
        options = [
            schemas.QuickReplyOption(
                key=str(t.get("id")) if t.get("id") is not None else None,
                text=t["reply_text"],
                category=t.get("category") or "general",
            )
            for t in templates
        ]
    else:
        options = list(CUSTOMER_QUICK_QUESTIONS)
    return options[:MAX_CUSTOMER_OPTIONS]


def shopkeeper_quick_actions() -> List[schemas.QuickReplyOption]:
    return list(SHOPKEEPER_QUICK_ACTIONS.values())


def resolve_quick_action(key: str) -> schemas.QuickReplyOption:
    """Return the action registered under ``key`` or raise ``KeyError``."""
    try:
        return SHOPKEEPER_QUICK_ACTIONS[key]
    except KeyError:
        raise KeyError(f"Unknown quick action '{key}'") from None
