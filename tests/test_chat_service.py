import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from shopchat.chat import schemas
from shopchat.chat.errors import (
    ConversationNotFound,
    InvalidMessage,
    PersistenceFailure,
    ShopNotFound,
)
from shopchat.chat.escalation import EscalationScheduler
from shopchat.chat.models import EscalationState, Intent
from shopchat.chat.service import ChatService, conversation_priority
from shopchat.chat.settings import DEFAULT_FALLBACK_TEXT, ChatSettings

DELAY = 0.05


def _build(stores, *, delay=DELAY, **settings):
    service = None

    def on_fire(conversation_id):
        service.send_fallback(conversation_id)

    scheduler = EscalationScheduler(on_fire, delay_seconds=delay)
    service = ChatService(
        stores.conversations,
        stores.messages,
        stores.shops,
        scheduler,
        settings=ChatSettings(escalation_delay_seconds=delay, **settings),
    )
    return service


def _system_messages(stores, conversation_id):
    return [
        m
        for m in stores.messages.list_since(conversation_id)
        if m.message_type is schemas.MessageType.SYSTEM
    ]


def test_auto_answered_message_is_persisted_after_customer_message(memory_stores):
    async def scenario():
        service = _build(memory_stores)
        convo = service.get_or_create_conversation("cust-1", "shop-1")
        result = await service.on_customer_message(
            convo.id, "shop-1", "what's the price of milk", sender_id="cust-1"
        )
        return service, convo, result

    service, convo, result = asyncio.run(scenario())

    assert result.intent is Intent.PRICING
    assert result.escalation_armed is False
    assert result.auto_response.content == "Milk (1L) costs 1.49"
    assert result.auto_response.sender_id is None
    items = memory_stores.messages.list_since(convo.id)
    assert [m.message_type for m in items] == [
        schemas.MessageType.TEXT,
        schemas.MessageType.AUTO_RESPONSE,
    ]
    assert service.scheduler.state(convo.id) is EscalationState.IDLE


def test_unmatched_message_arms_escalation(memory_stores):
    async def scenario():
        service = _build(memory_stores, delay=60)
        convo = service.get_or_create_conversation("cust-1", "shop-1")
        result = await service.on_customer_message(
            convo.id, "shop-1", "xyz123 random text", sender_id="cust-1"
        )
        state = service.scheduler.state(convo.id)
        service.scheduler.shutdown()
        return convo, result, state

    convo, result, state = asyncio.run(scenario())

    assert result.escalation_armed is True
    assert result.auto_response is None
    assert state is EscalationState.ARMED
    assert len(memory_stores.messages.list_since(convo.id)) == 1


def test_unanswered_window_sends_exactly_one_fallback(memory_stores):
    async def scenario():
        service = _build(memory_stores)
        convo = service.get_or_create_conversation("cust-1", "shop-1")
        await service.on_customer_message(convo.id, "shop-1", "hello there", sender_id="cust-1")
        await asyncio.sleep(DELAY * 6)
        return convo

    convo = asyncio.run(scenario())

    fallbacks = _system_messages(memory_stores, convo.id)
    assert len(fallbacks) == 1
    assert fallbacks[0].content == DEFAULT_FALLBACK_TEXT
    assert fallbacks[0].sender_id is None


def test_auto_answer_during_window_suppresses_fallback(memory_stores):
    async def scenario():
        service = _build(memory_stores)
        convo = service.get_or_create_conversation("cust-1", "shop-1")
        await service.on_customer_message(convo.id, "shop-1", "hello there", sender_id="cust-1")
        await asyncio.sleep(DELAY / 2)
        second = await service.on_customer_message(
            convo.id, "shop-1", "Are you open?", sender_id="cust-1"
        )
        await asyncio.sleep(DELAY * 6)
        return convo, second

    convo, second = asyncio.run(scenario())

    assert second.intent is Intent.HOURS
    assert _system_messages(memory_stores, convo.id) == []


def test_new_unmatched_message_restarts_window(memory_stores):
    async def scenario():
        service = _build(memory_stores)
        convo = service.get_or_create_conversation("cust-1", "shop-1")
        await service.on_customer_message(convo.id, "shop-1", "hello there", sender_id="cust-1")
        await asyncio.sleep(DELAY / 2)
        await service.on_customer_message(convo.id, "shop-1", "anyone?", sender_id="cust-1")
        await asyncio.sleep(DELAY * 6)
        return convo

    convo = asyncio.run(scenario())

    assert len(_system_messages(memory_stores, convo.id)) == 1


def test_shopkeeper_reply_cancels_escalation_and_marks_answered(memory_stores):
    async def scenario():
        service = _build(memory_stores)
        convo = service.get_or_create_conversation("cust-1", "shop-1")
        sent = await service.on_customer_message(
            convo.id, "shop-1", "hello there", sender_id="cust-1"
        )
        reply = await service.send_reply(convo.id, sender_id="owner-1", content="Hi! How can I help?")
        await asyncio.sleep(DELAY * 6)
        return convo, sent, reply

    convo, sent, reply = asyncio.run(scenario())

    assert reply.escalation_cancelled is True
    assert _system_messages(memory_stores, convo.id) == []
    assert memory_stores.messages.get(sent.message.id).is_answered is True


def test_on_reply_is_idempotent(memory_stores):
    async def scenario():
        service = _build(memory_stores, delay=60)
        convo = service.get_or_create_conversation("cust-1", "shop-1")
        await service.on_customer_message(convo.id, "shop-1", "hello there", sender_id="cust-1")
        return await service.on_reply(convo.id), await service.on_reply(convo.id)

    assert asyncio.run(scenario()) == (True, False)


def test_quick_action_reply(memory_stores):
    async def scenario():
        service = _build(memory_stores)
        convo = service.get_or_create_conversation("cust-1", "shop-1")
        return await service.send_quick_action(convo.id, sender_id="owner-1", key="in_stock")

    result = asyncio.run(scenario())

    assert result.message.content == "Yes, this item is currently in stock!"
    assert result.message.message_type is schemas.MessageType.QUICK_REPLY


def test_unknown_quick_action(memory_stores):
    async def scenario():
        service = _build(memory_stores)
        convo = service.get_or_create_conversation("cust-1", "shop-1")
        await service.send_quick_action(convo.id, sender_id="owner-1", key="nope")

    with pytest.raises(KeyError):
        asyncio.run(scenario())


@pytest.mark.parametrize("content", ["", "   ", "x" * 11])
def test_invalid_content_is_rejected_before_persisting(memory_stores, content):
    async def scenario():
        service = _build(memory_stores, max_message_length=10)
        convo = service.get_or_create_conversation("cust-1", "shop-1")
        try:
            await service.on_customer_message(convo.id, "shop-1", content, sender_id="cust-1")
        finally:
            assert service.scheduler.pending_count() == 0
        return convo

    with pytest.raises(InvalidMessage):
        asyncio.run(scenario())
    assert memory_stores.messages.list_since(1) == []


def test_customers_cannot_send_system_messages(memory_stores):
    async def scenario():
        service = _build(memory_stores)
        convo = service.get_or_create_conversation("cust-1", "shop-1")
        await service.on_customer_message(
            convo.id,
            "shop-1",
            "hello",
            sender_id="cust-1",
            message_type=schemas.MessageType.SYSTEM,
        )

    with pytest.raises(InvalidMessage):
        asyncio.run(scenario())


def test_persistence_failure_surfaces_and_does_not_arm(memory_stores):
    async def scenario():
        service = _build(memory_stores)
        convo = service.get_or_create_conversation("cust-1", "shop-1")
        memory_stores.messages.fail_writes = True
        try:
            await service.on_customer_message(convo.id, "shop-1", "hello there", sender_id="cust-1")
        finally:
            assert service.scheduler.pending_count() == 0

    with pytest.raises(PersistenceFailure):
        asyncio.run(scenario())


def test_shop_lookup_failure_falls_back_to_escalation(memory_stores):
    async def scenario():
        service = _build(memory_stores, delay=60)
        convo = service.get_or_create_conversation("cust-1", "shop-1")
        memory_stores.shops.available = False
        result = await service.on_customer_message(
            convo.id, "shop-1", "Are you open?", sender_id="cust-1"
        )
        service.scheduler.shutdown()
        return result

    result = asyncio.run(scenario())

    assert result.escalation_armed is True
    assert result.auto_response is None


def test_message_to_missing_conversation(memory_stores):
    async def scenario():
        service = _build(memory_stores)
        await service.on_customer_message(999, "shop-1", "hello", sender_id="cust-1")

    with pytest.raises(ConversationNotFound):
        asyncio.run(scenario())


def test_get_or_create_conversation(memory_stores):
    service = _build(memory_stores)

    first = service.get_or_create_conversation("cust-1", "shop-1")
    second = service.get_or_create_conversation("cust-1", "shop-1")

    assert first.id == second.id
    with pytest.raises(ShopNotFound):
        service.get_or_create_conversation("cust-1", "missing")


def test_participant_role(memory_stores):
    service = _build(memory_stores)
    convo = service.get_or_create_conversation("cust-1", "shop-1")

    assert service.participant_role(convo, "cust-1") == "customer"
    assert service.participant_role(convo, "owner-1") == "shopkeeper"
    assert service.participant_role(convo, "someone") is None


def test_list_messages_cursor(memory_stores):
    async def scenario():
        service = _build(memory_stores)
        convo = service.get_or_create_conversation("cust-1", "shop-1")
        await service.on_customer_message(convo.id, "shop-1", "Are you open?", sender_id="cust-1")
        return service, convo

    service, convo = asyncio.run(scenario())

    page = service.list_messages(convo.id)
    assert len(page.items) == 2
    assert page.cursor == page.items[-1].id
    empty = service.list_messages(convo.id, since=page.cursor)
    assert empty.items == []
    assert empty.cursor == page.cursor


def test_mark_read_and_conversation_summaries(memory_stores):
    async def scenario():
        service = _build(memory_stores)
        convo = service.get_or_create_conversation("cust-1", "shop-1")
        await service.on_customer_message(convo.id, "shop-1", "Are you open?", sender_id="cust-1")
        return service, convo

    service, convo = asyncio.run(scenario())

    owner_view = service.list_conversations("owner-1")
    assert owner_view.total == 1
    summary = owner_view.items[0]
    assert summary.unread_count == 2
    assert summary.priority == "high"
    assert summary.last_message.message_type is schemas.MessageType.AUTO_RESPONSE

    customer_view = service.list_conversations("cust-1")
    assert customer_view.items[0].unread_count == 1

    assert service.mark_read(convo.id, "owner-1") == 2
    assert service.mark_read(convo.id, "owner-1") == 0
    assert service.list_conversations("owner-1").items[0].unread_count == 0
    assert service.list_conversations("stranger").total == 0


def test_mark_answered(memory_stores):
    async def scenario():
        service = _build(memory_stores, delay=60)
        convo = service.get_or_create_conversation("cust-1", "shop-1")
        sent = await service.on_customer_message(
            convo.id, "shop-1", "hello there", sender_id="cust-1"
        )
        service.scheduler.shutdown()
        return service, sent

    service, sent = asyncio.run(scenario())

    assert service.mark_answered(sent.message.id).is_answered is True
    with pytest.raises(LookupError):
        service.mark_answered(12345)


def test_conversation_priority():
    now = datetime(2024, 1, 1, 12, tzinfo=timezone.utc)

    assert conversation_priority(4, now - timedelta(days=3), now) == "high"
    assert conversation_priority(0, now - timedelta(minutes=5), now) == "high"
    assert conversation_priority(1, now - timedelta(days=3), now) == "normal"
    assert conversation_priority(0, now - timedelta(hours=5), now) == "normal"
    assert conversation_priority(0, now - timedelta(days=3), now) == "low"
    assert conversation_priority(0, None, now) == "low"
