"""Templated automatic replies built from shop facts."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from .classifier import KeywordClassifier
from .errors import LookupFailure
from .matcher import ProductMatcher
from .models import AutoResponse, Intent, OpeningHours, Product
from .settings import ChatSettings, get_chat_settings
from .shops import ShopFactStore

logger = logging.getLogger(__name__)

AVAILABILITY_CLARIFICATION = (
    "Please specify which item you are looking for, and I can check our current inventory."
)
PRICING_CLARIFICATION = (
    "Please specify which item you want to know the price for, and I can help you."
)
HOURS_UNKNOWN = "Check our shop details for opening hours."
DAY_UNKNOWN = "Check shop details for hours"

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def format_opening_hours(hours: OpeningHours, today: datetime) -> str:
    """Render free-text hours verbatim or pick today's entry from a day map.

    ``today`` must already be in the shop's local time; the weekday is taken
    from it as is.
    """
    if isinstance(hours, str):
        return hours
    if isinstance(hours, dict):
        day = _WEEKDAYS[today.weekday()]
        lowered = {str(k).lower(): v for k, v in hours.items()}
        value = lowered.get(day) or lowered.get(day[:3])
        if value:
            return str(value)
    return DAY_UNKNOWN


def format_price(price: Decimal, currency_symbol: str = "") -> str:
    amount = Decimal(str(price)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{currency_symbol}{amount}"


class AutoResponder:
    """Decide whether a customer message can be answered without a human.

    The responder never writes; persisting the reply is the caller's job.
    Store failures are swallowed into a declined response so the message
    follows the escalation path instead of surfacing an error.
    """

    def __init__(
        self,
        shops: ShopFactStore,
        *,
        classifier: Optional[KeywordClassifier] = None,
        matcher: Optional[ProductMatcher] = None,
        settings: Optional[ChatSettings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._shops = shops
        self._classifier = classifier or KeywordClassifier()
        self._matcher = matcher or ProductMatcher(shops)
        self._settings = settings or get_chat_settings()
        self._clock = clock

    def respond(self, message: str, shop_id: str) -> AutoResponse:
        intent = self._classifier.classify(message)
        if intent is None:
            return AutoResponse.decline()
        try:
            if intent is Intent.HOURS:
                return self._hours(shop_id)
            if intent is Intent.AVAILABILITY:
                return self._availability(message, shop_id)
            return self._pricing(message, shop_id)
        except LookupFailure as exc:
            logger.warning(
                "Auto-response lookup failed for shop %s (intent=%s): %s",
                shop_id,
                intent.value,
                exc,
            )
            return AutoResponse.decline()

    # ------------------------------------------------------------------
    # Intent handlers

    def _hours(self, shop_id: str) -> AutoResponse:
        shop = self._shops.get_shop_status(shop_id)
        if shop is None:
            return AutoResponse.decline()
        status = "OPEN" if shop.is_open else "CLOSED"
        if shop.opening_hours:
            hours = f"Our hours: {format_opening_hours(shop.opening_hours, self._shop_now())}"
        else:
            hours = HOURS_UNKNOWN
        return AutoResponse(
            True, f"{shop.name} is currently {status}. {hours}", Intent.HOURS
        )

    def _shop_now(self) -> datetime:
        return self._clock().astimezone(ZoneInfo(self._settings.shop_timezone))

    def _availability(self, message: str, shop_id: str) -> AutoResponse:
        product = self._matcher.find_product(message, shop_id)
        if product is None:
            return AutoResponse(True, AVAILABILITY_CLARIFICATION, Intent.AVAILABILITY)
        if product.in_stock:
            text = (
                f"Yes, {product.name} is available! "
                f"We have {product.stock_quantity} in stock."
            )
        else:
            text = f"Sorry, {product.name} is currently out of stock."
        return AutoResponse(True, text, Intent.AVAILABILITY)

    def _pricing(self, message: str, shop_id: str) -> AutoResponse:
        product = self._matcher.find_product(message, shop_id)
        if product is None:
            return AutoResponse(True, PRICING_CLARIFICATION, Intent.PRICING)
        return AutoResponse(True, self._price_text(product), Intent.PRICING)

    def _price_text(self, product: Product) -> str:
        price = format_price(product.price, self._settings.currency_symbol)
        suffix = "" if product.is_available else " (currently out of stock)"
        return f"{product.name} costs {price}{suffix}"
