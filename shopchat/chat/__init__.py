"""Chat auto-response and escalation core."""

from . import schemas
from .classifier import KeywordClassifier
from .escalation import EscalationScheduler
from .matcher import ProductMatcher
from .models import AutoResponse, EscalationState, Intent, PendingEscalation, Product, ShopStatus
from .responder import AutoResponder
from .service import ChatService

__all__ = [
    "AutoResponder",
    "AutoResponse",
    "ChatService",
    "EscalationScheduler",
    "EscalationState",
    "Intent",
    "KeywordClassifier",
    "PendingEscalation",
    "Product",
    "ProductMatcher",
    "ShopStatus",
    "schemas",
]
