"""Pydantic schemas for chat APIs and persisted records."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from .models import Intent


class MessageType(str, Enum):
    TEXT = "text"
    QUICK_REPLY = "quick_reply"
    AUTO_RESPONSE = "auto_response"
    SYSTEM = "system"


class Message(BaseModel):
    id: int
    conversation_id: int
    sender_id: str | None = None
    content: str
    message_type: MessageType = MessageType.TEXT
    created_at: datetime
    is_read: bool = False
    is_answered: bool = False


class Conversation(BaseModel):
    id: int
    customer_id: str
    shop_id: str
    last_message_at: datetime | None = None
    created_at: datetime


class ConversationSummary(Conversation):
    unread_count: int = 0
    priority: str = "low"
    last_message: Message | None = None


class ConversationList(BaseModel):
    items: list[ConversationSummary]
    total: int


class MessageList(BaseModel):
    items: list[Message]
    cursor: int | None = None


class ConversationCreateRequest(BaseModel):
    shop_id: str = Field(..., min_length=1)


class SendMessageRequest(BaseModel):
    conversation_id: int
    content: str
    message_type: MessageType = MessageType.TEXT


class CustomerMessageResult(BaseModel):
    """Result of processing one inbound customer message."""

    message: Message
    auto_response: Message | None = None
    intent: Intent | None = None
    escalation_armed: bool = False


class ReplyResult(BaseModel):
    message: Message
    escalation_cancelled: bool = False


class ReplySentResponse(BaseModel):
    conversation_id: int
    escalation_cancelled: bool


class MarkReadResponse(BaseModel):
    conversation_id: int
    updated: int


class QuickReplyOption(BaseModel):
    key: str | None = None
    text: str
    category: str
    response: str | None = None


class QuickReplyList(BaseModel):
    audience: str
    items: list[QuickReplyOption]
