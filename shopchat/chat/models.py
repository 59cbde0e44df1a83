"""Domain models used by the chat auto-response and escalation core."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Union


class Intent(str, Enum):
    """Classified purpose of a customer message."""

    HOURS = "hours"
    AVAILABILITY = "availability"
    PRICING = "pricing"


OpeningHours = Union[str, dict[str, str], None]


@dataclass(frozen=True)
class ShopStatus:
    """Read-only snapshot of a shop's open state and hours."""

    id: str
    name: str
    is_open: bool
    opening_hours: OpeningHours = None
    owner_id: str | None = None


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    price: Decimal
    is_available: bool
    stock_quantity: int

    @property
    def in_stock(self) -> bool:
        return self.is_available and self.stock_quantity > 0


@dataclass(frozen=True)
class AutoResponse:
    """Outcome of :meth:`AutoResponder.respond`."""

    should_respond: bool
    response_text: str | None = None
    intent: Intent | None = None

    @classmethod
    def decline(cls) -> "AutoResponse":
        return cls(False)


class EscalationState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    CANCELLED = "cancelled"
    FIRED = "fired"


@dataclass
class PendingEscalation:
    """In-memory scheduling state for one armed fallback timer."""

    conversation_id: int
    armed_at: datetime
    fire_at: datetime
    token: str
    state: EscalationState = EscalationState.ARMED
    task: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)
