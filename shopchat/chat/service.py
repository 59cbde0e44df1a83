"""High-level chat flow orchestration."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from . import schemas
from .errors import ConversationNotFound, InvalidMessage, ShopNotFound
from .escalation import EscalationScheduler
from .models import AutoResponse
from .quick_replies import resolve_quick_action
from .repository import ConversationRepository, MessageStore
from .responder import AutoResponder
from .settings import ChatSettings, get_chat_settings
from .shops import ShopFactStore

logger = logging.getLogger(__name__)

HUMAN_MESSAGE_TYPES = {schemas.MessageType.TEXT, schemas.MessageType.QUICK_REPLY}


class ChatService:
    """Coordinates persistence, auto-responses and escalation timers.

    Timer decisions for one conversation are taken under that conversation's
    lock, in the order messages were accepted, so a reply always cancels the
    escalation armed by the message it answers. The async entry points keep
    the lock and the timer on the event loop and run store calls in a worker
    thread; the plain methods block and belong in threadpool routes.
    """

    def __init__(
        self,
        conversations: ConversationRepository,
        messages: MessageStore,
        shops: ShopFactStore,
        scheduler: EscalationScheduler,
        *,
        responder: Optional[AutoResponder] = None,
        settings: Optional[ChatSettings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._conversations = conversations
        self._messages = messages
        self._shops = shops
        self._scheduler = scheduler
        self._settings = settings or get_chat_settings()
        self._responder = responder or AutoResponder(shops, settings=self._settings)
        self._clock = clock

    # ------------------------------------------------------------------
    # Inbound customer messages

    async def on_customer_message(
        self,
        conversation_id: int,
        shop_id: str,
        text: str,
        *,
        sender_id: Optional[str],
        message_type: schemas.MessageType = schemas.MessageType.TEXT,
    ) -> schemas.CustomerMessageResult:
        """Persist a customer message, then auto-reply or arm the escalation."""

        content = self.validate_content(text)
        if message_type not in HUMAN_MESSAGE_TYPES:
            raise InvalidMessage(f"Customers cannot send '{message_type.value}' messages")
        async with self._scheduler.lock_for(conversation_id):
            message, decision, reply = await asyncio.to_thread(
                self._store_and_answer, conversation_id, shop_id, sender_id, content, message_type
            )
            if reply is not None:
                self._scheduler.cancel(conversation_id)
                logger.info(
                    "Auto-response sent in conversation %s (intent=%s)",
                    conversation_id,
                    decision.intent.value if decision.intent else None,
                )
                return schemas.CustomerMessageResult(
                    message=message, auto_response=reply, intent=decision.intent
                )
            self._scheduler.arm(conversation_id)
        return schemas.CustomerMessageResult(message=message, escalation_armed=True)

    # ------------------------------------------------------------------
    # Replies

    async def on_reply(self, conversation_id: int) -> bool:
        """Cancel a pending escalation because a reply was sent."""

        async with self._scheduler.lock_for(conversation_id):
            return self._scheduler.cancel(conversation_id)

    async def send_reply(
        self,
        conversation_id: int,
        *,
        sender_id: Optional[str],
        content: str,
        message_type: schemas.MessageType = schemas.MessageType.TEXT,
    ) -> schemas.ReplyResult:
        """Persist a shopkeeper reply and settle the unanswered window."""

        content = self.validate_content(content)
        if message_type not in HUMAN_MESSAGE_TYPES:
            raise InvalidMessage(f"Replies cannot be '{message_type.value}' messages")
        async with self._scheduler.lock_for(conversation_id):
            message = await asyncio.to_thread(
                self._store_reply, conversation_id, sender_id, content, message_type
            )
            cancelled = self._scheduler.cancel(conversation_id)
        return schemas.ReplyResult(message=message, escalation_cancelled=cancelled)

    async def send_quick_action(
        self, conversation_id: int, *, sender_id: Optional[str], key: str
    ) -> schemas.ReplyResult:
        action = resolve_quick_action(key)
        return await self.send_reply(
            conversation_id,
            sender_id=sender_id,
            content=action.response or action.text,
            message_type=schemas.MessageType.QUICK_REPLY,
        )

    def send_fallback(self, conversation_id: int) -> schemas.Message:
        """Persist the fixed system message for an unanswered window."""

        message = self._messages.insert(
            conversation_id,
            None,
            self._settings.fallback_text,
            schemas.MessageType.SYSTEM,
        )
        logger.info("Fallback message %s sent in conversation %s", message.id, conversation_id)
        return message

    # ------------------------------------------------------------------
    # Conversations

    def get_or_create_conversation(self, customer_id: str, shop_id: str) -> schemas.Conversation:
        if self._shops.get_shop_status(shop_id) is None:
            raise ShopNotFound(f"Shop {shop_id} not found")
        return self._conversations.get_or_create(customer_id, shop_id)

    def get_conversation(self, conversation_id: int) -> schemas.Conversation:
        conversation = self._conversations.get(conversation_id)
        if not conversation:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        return conversation

    def participant_role(self, conversation: schemas.Conversation, user_id: str) -> Optional[str]:
        """``"customer"``, ``"shopkeeper"`` or ``None`` for ``user_id``."""

        if conversation.customer_id == user_id:
            return "customer"
        shop = self._shops.get_shop_status(conversation.shop_id)
        if shop is not None and shop.owner_id == user_id:
            return "shopkeeper"
        return None

    def list_messages(
        self, conversation_id: int, since: Optional[int] = None
    ) -> schemas.MessageList:
        items = self._messages.list_since(conversation_id, since)
        cursor = items[-1].id if items else since
        return schemas.MessageList(items=items, cursor=cursor)

    def list_conversations(self, viewer_id: str) -> schemas.ConversationList:
        """Conversations the viewer takes part in, as customer or shop owner."""

        owned = self._shops.list_owned_shop_ids(viewer_id)
        seen: dict[int, schemas.Conversation] = {}
        for convo in self._conversations.list_for_customer(viewer_id):
            seen[convo.id] = convo
        for convo in self._conversations.list_for_shops(owned):
            seen.setdefault(convo.id, convo)
        items = [self._summarise(convo, viewer_id) for convo in seen.values()]
        items.sort(
            key=lambda c: c.last_message_at or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )
        return schemas.ConversationList(items=items, total=len(items))

    def mark_read(self, conversation_id: int, reader_id: str) -> int:
        updated = 0
        for message in self._messages.list_since(conversation_id):
            if message.is_read or message.sender_id == reader_id:
                continue
            self._messages.update_flags(message.id, is_read=True)
            updated += 1
        return updated

    def get_message(self, message_id: int) -> schemas.Message:
        message = self._messages.get(message_id)
        if message is None:
            raise LookupError(f"Message {message_id} not found")
        return message

    def mark_answered(self, message_id: int) -> schemas.Message:
        message = self._messages.update_flags(message_id, is_answered=True)
        if message is None:
            raise LookupError(f"Message {message_id} not found")
        return message

    # ------------------------------------------------------------------
    # Helpers

    @property
    def scheduler(self) -> EscalationScheduler:
        return self._scheduler

    def validate_content(self, text: Optional[str]) -> str:
        content = (text or "").strip()
        if not content:
            raise InvalidMessage("Message content must not be empty")
        if len(content) > self._settings.max_message_length:
            raise InvalidMessage("Message too long")
        return content

    def _store_and_answer(
        self,
        conversation_id: int,
        shop_id: str,
        sender_id: Optional[str],
        content: str,
        message_type: schemas.MessageType,
    ) -> tuple[schemas.Message, AutoResponse, Optional[schemas.Message]]:
        message = self._messages.insert(conversation_id, sender_id, content, message_type)
        decision = self._responder.respond(content, shop_id)
        reply = None
        if decision.should_respond and decision.response_text:
            reply = self._messages.insert(
                conversation_id,
                None,
                decision.response_text,
                schemas.MessageType.AUTO_RESPONSE,
            )
        return message, decision, reply

    def _store_reply(
        self,
        conversation_id: int,
        sender_id: Optional[str],
        content: str,
        message_type: schemas.MessageType,
    ) -> schemas.Message:
        self._mark_latest_answered(conversation_id, sender_id)
        return self._messages.insert(conversation_id, sender_id, content, message_type)

    def _mark_latest_answered(self, conversation_id: int, replier_id: Optional[str]) -> None:
        for message in reversed(self._messages.list_since(conversation_id)):
            if message.sender_id is None or message.sender_id == replier_id:
                continue
            if not message.is_answered:
                self._messages.update_flags(message.id, is_answered=True)
            return

    def _summarise(
        self, conversation: schemas.Conversation, viewer_id: str
    ) -> schemas.ConversationSummary:
        messages = self._messages.list_since(conversation.id)
        unread = sum(1 for m in messages if not m.is_read and m.sender_id != viewer_id)
        return schemas.ConversationSummary(
            **conversation.model_dump(),
            unread_count=unread,
            priority=conversation_priority(unread, conversation.last_message_at, self._clock()),
            last_message=messages[-1] if messages else None,
        )


def conversation_priority(
    unread_count: int, last_message_at: Optional[datetime], now: datetime
) -> str:
    if last_message_at is None:
        return "normal" if unread_count else "low"
    age = now - last_message_at
    if unread_count > 3 or age < timedelta(hours=1):
        return "high"
    if unread_count > 0 or age < timedelta(hours=24):
        return "normal"
    return "low"
