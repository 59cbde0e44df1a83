import pathlib
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import jwt
import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from shopchat.app_logging import init_logging
from shopchat.chat.models import Product, ShopStatus
from shopchat.chat.realtime import PublishingMessageStore, message_bus
from shopchat.chat.repository import InMemoryConversationRepository, InMemoryMessageStore
from shopchat.chat.settings import reset_chat_settings_cache
from shopchat.chat.shops import InMemoryShopFactStore

AUTH_SECRET = "test-secret-key"
AUTH_AUDIENCE = "shopchat"
AUTH_ISSUER = "auth.shopchat"

CUSTOMER_ID = "cust-1"
OWNER_ID = "owner-1"
STRANGER_ID = "stranger-1"
SHOP_ID = "shop-1"


def issue_token(
    user_id: str | None = CUSTOMER_ID,
    *,
    secret: str = AUTH_SECRET,
    audience: str = AUTH_AUDIENCE,
    issuer: str = AUTH_ISSUER,
    expires_in: timedelta = timedelta(minutes=5),
    **extra_claims: object,
) -> str:
    """Generate a signed access token for tests."""

    payload: dict[str, object] = {
        "aud": audience,
        "iss": issuer,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    if user_id is not None:
        payload["sub"] = user_id
    payload.update(extra_claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_header(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(user_id)}"}


@dataclass
class MemoryStores:
    conversations: InMemoryConversationRepository
    messages: InMemoryMessageStore
    shops: InMemoryShopFactStore


@pytest.fixture
def auth_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set required environment variables for access token decoding."""

    monkeypatch.setenv("AUTH_TOKEN_SECRET", AUTH_SECRET)
    monkeypatch.setenv("AUTH_TOKEN_AUDIENCE", AUTH_AUDIENCE)
    monkeypatch.setenv("AUTH_TOKEN_ISSUER", AUTH_ISSUER)
    monkeypatch.setenv("AUTH_TOKEN_ALGORITHM", "HS256")


@pytest.fixture
def shop_facts() -> InMemoryShopFactStore:
    shops = InMemoryShopFactStore()
    shops.add_shop(
        ShopStatus(
            id=SHOP_ID,
            name="Joe's",
            is_open=True,
            opening_hours="9am - 9pm",
            owner_id=OWNER_ID,
        ),
        [
            Product("p-milk", "Milk (1L)", Decimal("1.49"), True, 12),
            Product("p-rice", "Rice (1kg)", Decimal("2.10"), False, 0),
        ],
    )
    return shops


@pytest.fixture
def memory_stores(shop_facts: InMemoryShopFactStore) -> MemoryStores:
    conversations = InMemoryConversationRepository()
    return MemoryStores(
        conversations=conversations,
        messages=InMemoryMessageStore(conversations),
        shops=shop_facts,
    )


@pytest.fixture
def chat_client(monkeypatch, auth_env, memory_stores):
    """TestClient for the full app backed by in-memory stores.

    Escalations fire after 0.3 seconds.
    """

    from shopchat.main import app
    from shopchat.rate_limit import limiter
    from shopchat.routers import chat

    monkeypatch.setenv("ESCALATION_DELAY_SECONDS", "0.3")
    reset_chat_settings_cache()
    limiter.reset()

    @contextmanager
    def fake_store_context():
        messages = PublishingMessageStore(memory_stores.messages, message_bus, defer=True)
        stores = chat.ChatStores(
            conversations=memory_stores.conversations,
            messages=messages,
            shops=memory_stores.shops,
        )
        try:
            yield stores
        except BaseException:
            messages.discard()
            raise
        else:
            messages.flush()

    monkeypatch.setattr(chat, "_store_context", fake_store_context)
    with TestClient(app) as client:
        yield client
    reset_chat_settings_cache()
    limiter.reset()


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app
