"""Chat API routes: conversations, messages, quick replies and live events."""

import asyncio
import logging
import os
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass

import psycopg
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from ..chat import schemas
from ..chat.errors import (
    ConversationNotFound,
    InvalidMessage,
    LookupFailure,
    PersistenceFailure,
    ShopNotFound,
)
from ..chat.escalation import EscalationScheduler
from ..chat.quick_replies import customer_quick_replies, shopkeeper_quick_actions
from ..chat.realtime import PublishingMessageStore, message_bus
from ..chat.repository import (
    ConversationRepository,
    PostgresConversationRepository,
    PostgresMessageStore,
)
from ..chat.service import ChatService
from ..chat.settings import get_chat_settings
from ..chat.shops import PostgresShopFactStore, ShopFactStore
from ..core.auth import CurrentUser, get_current_user
from ..rate_limit import limiter, send_message_limit
from ..sse_utils import message_events

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

_DATABASE_URL = os.getenv("DATABASE_URL")


@dataclass
class ChatStores:
    conversations: ConversationRepository
    messages: PublishingMessageStore
    shops: ShopFactStore


def _get_conn() -> psycopg.Connection:
    if not _DATABASE_URL:
        raise HTTPException(status_code=500, detail="DATABASE_URL not configured")
    try:
        return psycopg.connect(_DATABASE_URL)
    except psycopg.Error as exc:
        raise HTTPException(status_code=503, detail="Database unavailable") from exc


@contextmanager
def _store_context() -> Iterator[ChatStores]:
    """Open one connection, commit on success and publish what was written."""
    conn = _get_conn()
    stores = ChatStores(
        conversations=PostgresConversationRepository(conn),
        messages=PublishingMessageStore(PostgresMessageStore(conn), message_bus, defer=True),
        shops=PostgresShopFactStore(conn),
    )
    try:
        yield stores
        conn.commit()
        stores.messages.flush()
    except BaseException:
        stores.messages.discard()
        conn.rollback()
        raise
    finally:
        conn.close()


@asynccontextmanager
async def _threaded_store_context() -> AsyncIterator[ChatStores]:
    """:func:`_store_context` with its blocking connect and commit in a worker thread."""
    manager = _store_context()
    stores = await asyncio.to_thread(manager.__enter__)
    try:
        yield stores
    except BaseException as exc:
        if not await asyncio.to_thread(manager.__exit__, type(exc), exc, exc.__traceback__):
            raise
    else:
        await asyncio.to_thread(manager.__exit__, None, None, None)


@contextmanager
def _http_errors() -> Iterator[None]:
    """Translate chat failures into HTTP responses."""
    try:
        yield
    except HTTPException:
        raise
    except (ConversationNotFound, ShopNotFound) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidMessage as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except (PersistenceFailure, LookupFailure) as exc:
        logger.warning("Chat storage unavailable: %s", exc)
        raise HTTPException(status_code=503, detail="Chat storage unavailable") from exc
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc.args[0]) if exc.args else "Not found") from exc


def _service(stores: ChatStores, scheduler: EscalationScheduler) -> ChatService:
    return ChatService(
        stores.conversations,
        stores.messages,
        stores.shops,
        scheduler,
        settings=get_chat_settings(),
    )


def _scheduler(request: Request) -> EscalationScheduler:
    scheduler = getattr(request.app.state, "escalations", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Escalation scheduler not running")
    return scheduler


def _require_participant(
    service: ChatService, conversation_id: int, user: CurrentUser
) -> tuple[schemas.Conversation, str]:
    conversation = service.get_conversation(conversation_id)
    role = service.participant_role(conversation, user.user_id)
    if role is None:
        raise HTTPException(status_code=403, detail="Not a participant of this conversation")
    return conversation, role


def send_fallback(scheduler: EscalationScheduler, conversation_id: int) -> schemas.Message:
    """Escalation callback: persist and publish the fallback system message."""
    with _store_context() as stores:
        return _service(stores, scheduler).send_fallback(conversation_id)


@router.get("/conversations", response_model=schemas.ConversationList)
def list_conversations(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> schemas.ConversationList:
    with _http_errors(), _store_context() as stores:
        return _service(stores, _scheduler(request)).list_conversations(user.user_id)


@router.post("/conversations", response_model=schemas.Conversation, status_code=201)
def create_conversation(
    payload: schemas.ConversationCreateRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> schemas.Conversation:
    with _http_errors(), _store_context() as stores:
        service = _service(stores, _scheduler(request))
        return service.get_or_create_conversation(user.user_id, payload.shop_id)


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=schemas.MessageList,
)
def list_messages(
    conversation_id: int,
    request: Request,
    since: int | None = None,
    user: CurrentUser = Depends(get_current_user),
) -> schemas.MessageList:
    with _http_errors(), _store_context() as stores:
        service = _service(stores, _scheduler(request))
        _require_participant(service, conversation_id, user)
        return service.list_messages(conversation_id, since)


@router.post("/send-message", status_code=201, response_model=None)
@limiter.limit(send_message_limit)
async def send_message(
    payload: schemas.SendMessageRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> schemas.CustomerMessageResult | schemas.ReplyResult:
    """Customers trigger auto-response or escalation; shop owners reply."""
    with _http_errors():
        async with _threaded_store_context() as stores:
            service = _service(stores, _scheduler(request))
            conversation, role = await asyncio.to_thread(
                _require_participant, service, payload.conversation_id, user
            )
            if role == "customer":
                return await service.on_customer_message(
                    conversation.id,
                    conversation.shop_id,
                    payload.content,
                    sender_id=user.user_id,
                    message_type=payload.message_type,
                )
            return await service.send_reply(
                conversation.id,
                sender_id=user.user_id,
                content=payload.content,
                message_type=payload.message_type,
            )


@router.post(
    "/conversations/{conversation_id}/reply-sent",
    response_model=schemas.ReplySentResponse,
)
async def reply_sent(
    conversation_id: int,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> schemas.ReplySentResponse:
    """Cancel the pending escalation for a reply delivered elsewhere."""
    with _http_errors():
        async with _threaded_store_context() as stores:
            service = _service(stores, _scheduler(request))
            _, role = await asyncio.to_thread(_require_participant, service, conversation_id, user)
            if role != "shopkeeper":
                raise HTTPException(status_code=403, detail="Only the shop owner can reply")
            cancelled = await service.on_reply(conversation_id)
    return schemas.ReplySentResponse(
        conversation_id=conversation_id, escalation_cancelled=cancelled
    )


@router.post(
    "/conversations/{conversation_id}/read",
    response_model=schemas.MarkReadResponse,
)
def mark_read(
    conversation_id: int,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> schemas.MarkReadResponse:
    with _http_errors(), _store_context() as stores:
        service = _service(stores, _scheduler(request))
        _require_participant(service, conversation_id, user)
        updated = service.mark_read(conversation_id, user.user_id)
    return schemas.MarkReadResponse(conversation_id=conversation_id, updated=updated)


@router.post("/messages/{message_id}/answered", response_model=schemas.Message)
def mark_answered(
    message_id: int,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> schemas.Message:
    with _http_errors(), _store_context() as stores:
        service = _service(stores, _scheduler(request))
        message = service.get_message(message_id)
        _, role = _require_participant(service, message.conversation_id, user)
        if role != "shopkeeper":
            raise HTTPException(status_code=403, detail="Only the shop owner can answer")
        return service.mark_answered(message_id)


@router.get("/shops/{shop_id}/quick-replies", response_model=schemas.QuickReplyList)
def quick_replies(
    shop_id: str,
    user: CurrentUser = Depends(get_current_user),
) -> schemas.QuickReplyList:
    with _http_errors(), _store_context() as stores:
        shop = stores.shops.get_shop_status(shop_id)
        if shop is None:
            raise ShopNotFound(f"Shop {shop_id} not found")
        if shop.owner_id == user.user_id:
            return schemas.QuickReplyList(audience="shopkeeper", items=shopkeeper_quick_actions())
        return schemas.QuickReplyList(
            audience="customer", items=customer_quick_replies(stores.shops, shop_id)
        )


@router.post(
    "/conversations/{conversation_id}/quick-actions/{key}",
    response_model=schemas.ReplyResult,
    status_code=201,
)
async def send_quick_action(
    conversation_id: int,
    key: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> schemas.ReplyResult:
    with _http_errors():
        async with _threaded_store_context() as stores:
            service = _service(stores, _scheduler(request))
            _, role = await asyncio.to_thread(_require_participant, service, conversation_id, user)
            if role != "shopkeeper":
                raise HTTPException(
                    status_code=403, detail="Quick actions are for the shop owner"
                )
            return await service.send_quick_action(
                conversation_id, sender_id=user.user_id, key=key
            )


@router.get("/conversations/{conversation_id}/events")
async def conversation_events(
    conversation_id: int,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> StreamingResponse:
    """Server-sent events carrying every new message of the conversation."""
    with _http_errors():
        async with _threaded_store_context() as stores:
            service = _service(stores, _scheduler(request))
            await asyncio.to_thread(_require_participant, service, conversation_id, user)
    subscription = message_bus.subscribe(conversation_id)
    return StreamingResponse(
        message_events(subscription, is_disconnected=request.is_disconnected),
        media_type="text/event-stream; charset=utf-8",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
