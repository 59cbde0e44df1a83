"""Database repositories for conversations and messages."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

import psycopg
from psycopg import errors as pg_errors
from psycopg.rows import dict_row

from . import schemas
from .errors import ConversationNotFound, PersistenceFailure


class MessageStore(Protocol):
    """Durable, time-ordered record of messages per conversation."""

    def insert(
        self,
        conversation_id: int,
        sender_id: Optional[str],
        content: str,
        message_type: schemas.MessageType,
    ) -> schemas.Message: ...

    def get(self, message_id: int) -> Optional[schemas.Message]: ...

    def list_since(
        self, conversation_id: int, cursor: Optional[int] = None
    ) -> List[schemas.Message]: ...

    def update_flags(
        self,
        message_id: int,
        *,
        is_read: Optional[bool] = None,
        is_answered: Optional[bool] = None,
    ) -> Optional[schemas.Message]: ...


class ConversationRepository(Protocol):
    """Abstraction for persisting (customer, shop) conversation threads."""

    def get_or_create(self, customer_id: str, shop_id: str) -> schemas.Conversation: ...

    def get(self, conversation_id: int) -> Optional[schemas.Conversation]: ...

    def list_for_customer(self, customer_id: str) -> List[schemas.Conversation]: ...

    def list_for_shops(self, shop_ids: Sequence[str]) -> List[schemas.Conversation]: ...


class PostgresConversationRepository:
    """PostgreSQL implementation of :class:`ConversationRepository`."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def _cursor(self):
        return self._conn.cursor(row_factory=dict_row)

    def _fetch(self, query: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
        try:
            with self._cursor() as cur:
                cur.execute(query, params)
                return cur.fetchall()
        except psycopg.Error as exc:
            raise PersistenceFailure(str(exc)) from exc

    def get_or_create(self, customer_id: str, shop_id: str) -> schemas.Conversation:
        rows = self._fetch(
            """
            INSERT INTO conversations (customer_id, shop_id)
            VALUES (%s, %s)
            ON CONFLICT (customer_id, shop_id) DO NOTHING
            RETURNING *
            """,
            (customer_id, shop_id),
        )
        if not rows:
            rows = self._fetch(
                "SELECT * FROM conversations WHERE customer_id = %s AND shop_id = %s",
                (customer_id, shop_id),
            )
        return _row_to_conversation(rows[0])

    def get(self, conversation_id: int) -> Optional[schemas.Conversation]:
        rows = self._fetch("SELECT * FROM conversations WHERE id = %s", (conversation_id,))
        return _row_to_conversation(rows[0]) if rows else None

    def list_for_customer(self, customer_id: str) -> List[schemas.Conversation]:
        rows = self._fetch(
            """
            SELECT * FROM conversations
            WHERE customer_id = %s
            ORDER BY last_message_at DESC NULLS LAST, created_at DESC
            """,
            (customer_id,),
        )
        return [_row_to_conversation(row) for row in rows]

    def list_for_shops(self, shop_ids: Sequence[str]) -> List[schemas.Conversation]:
        if not shop_ids:
            return []
        rows = self._fetch(
            """
            SELECT * FROM conversations
            WHERE shop_id = ANY(%s)
            ORDER BY last_message_at DESC NULLS LAST, created_at DESC
            """,
            (list(shop_ids),),
        )
        return [_row_to_conversation(row) for row in rows]


class PostgresMessageStore:
    """PostgreSQL implementation of :class:`MessageStore`.

    ``created_at`` never goes backwards inside a conversation, so ordering by
    ``(created_at, id)`` is the insertion order.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def _cursor(self):
        return self._conn.cursor(row_factory=dict_row)

    def insert(
        self,
        conversation_id: int,
        sender_id: Optional[str],
        content: str,
        message_type: schemas.MessageType,
    ) -> schemas.Message:
        try:
            with self._cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO messages (conversation_id, sender_id, content, message_type, created_at)
                    SELECT %s, %s, %s, %s, GREATEST(clock_timestamp(), max(created_at))
                    FROM messages WHERE conversation_id = %s
                    RETURNING *
                    """,
                    (
                        conversation_id,
                        sender_id,
                        content,
                        schemas.MessageType(message_type).value,
                        conversation_id,
                    ),
                )
                row = cur.fetchone()
                cur.execute(
                    "UPDATE conversations SET last_message_at = %s WHERE id = %s",
                    (row["created_at"], conversation_id),
                )
        except pg_errors.ForeignKeyViolation as exc:
            raise ConversationNotFound(f"Conversation {conversation_id} not found") from exc
        except psycopg.Error as exc:
            raise PersistenceFailure(str(exc)) from exc
        return schemas.Message(**row)

    def get(self, message_id: int) -> Optional[schemas.Message]:
        return self.update_flags(message_id)

    def list_since(
        self, conversation_id: int, cursor: Optional[int] = None
    ) -> List[schemas.Message]:
        try:
            with self._cursor() as cur:
                cur.execute(
                    """
                    SELECT * FROM messages
                    WHERE conversation_id = %s AND id > %s
                    ORDER BY created_at ASC, id ASC
                    """,
                    (conversation_id, cursor or 0),
                )
                rows = cur.fetchall()
        except psycopg.Error as exc:
            raise PersistenceFailure(str(exc)) from exc
        return [schemas.Message(**row) for row in rows]

    def update_flags(
        self,
        message_id: int,
        *,
        is_read: Optional[bool] = None,
        is_answered: Optional[bool] = None,
    ) -> Optional[schemas.Message]:
        fields: List[str] = []
        values: List[Any] = []
        if is_read is not None:
            fields.append("is_read = %s")
            values.append(is_read)
        if is_answered is not None:
            fields.append("is_answered = %s")
            values.append(is_answered)
        if not fields:
            query, values = "SELECT * FROM messages WHERE id = %s", [message_id]
        else:
            values.append(message_id)
            query = f"UPDATE messages SET {', '.join(fields)} WHERE id = %s RETURNING *"
        try:
            with self._cursor() as cur:
                cur.execute(query, values)
                row = cur.fetchone()
        except psycopg.Error as exc:
            raise PersistenceFailure(str(exc)) from exc
        return schemas.Message(**row) if row else None


def _row_to_conversation(row: Dict[str, Any]) -> schemas.Conversation:
    data = dict(row)
    data["customer_id"] = str(data["customer_id"])
    data["shop_id"] = str(data["shop_id"])
    return schemas.Conversation(**data)


# ---------------------------------------------------------------------------
# In-memory repositories (useful for testing and sandbox environments)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class InMemoryConversationRepository(ConversationRepository):
    def __init__(self) -> None:
        self._conversations: Dict[int, schemas.Conversation] = {}
        self._id_seq = 1

    def get_or_create(self, customer_id: str, shop_id: str) -> schemas.Conversation:
        for convo in self._conversations.values():
            if convo.customer_id == customer_id and convo.shop_id == shop_id:
                return convo.model_copy()
        convo = schemas.Conversation(
            id=self._id_seq,
            customer_id=customer_id,
            shop_id=shop_id,
            created_at=_utcnow(),
        )
        self._id_seq += 1
        self._conversations[convo.id] = convo
        return convo.model_copy()

    def get(self, conversation_id: int) -> Optional[schemas.Conversation]:
        convo = self._conversations.get(conversation_id)
        return convo.model_copy() if convo else None

    def touch(self, conversation_id: int, when: datetime) -> None:
        convo = self._conversations.get(conversation_id)
        if convo is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        convo.last_message_at = when

    def list_for_customer(self, customer_id: str) -> List[schemas.Conversation]:
        return self._sorted(c for c in self._conversations.values() if c.customer_id == customer_id)

    def list_for_shops(self, shop_ids: Sequence[str]) -> List[schemas.Conversation]:
        wanted = set(shop_ids)
        return self._sorted(c for c in self._conversations.values() if c.shop_id in wanted)

    @staticmethod
    def _sorted(items) -> List[schemas.Conversation]:
        return sorted(
            (c.model_copy() for c in items),
            key=lambda c: (c.last_message_at or _EPOCH, c.created_at),
            reverse=True,
        )


class InMemoryMessageStore(MessageStore):
    def __init__(self, conversations: InMemoryConversationRepository) -> None:
        self._conversations = conversations
        self._messages: Dict[int, schemas.Message] = {}
        self._id_seq = 1
        self.fail_writes = False

    def insert(
        self,
        conversation_id: int,
        sender_id: Optional[str],
        content: str,
        message_type: schemas.MessageType,
    ) -> schemas.Message:
        if self.fail_writes:
            raise PersistenceFailure("message store rejected the write")
        if self._conversations.get(conversation_id) is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        created_at = _utcnow()
        previous = [m.created_at for m in self._messages.values() if m.conversation_id == conversation_id]
        if previous:
            created_at = max(created_at, max(previous))
        message = schemas.Message(
            id=self._id_seq,
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            message_type=schemas.MessageType(message_type),
            created_at=created_at,
        )
        self._id_seq += 1
        self._messages[message.id] = message
        self._conversations.touch(conversation_id, created_at)
        return message.model_copy()

    def get(self, message_id: int) -> Optional[schemas.Message]:
        message = self._messages.get(message_id)
        return message.model_copy() if message else None

    def list_since(
        self, conversation_id: int, cursor: Optional[int] = None
    ) -> List[schemas.Message]:
        items = [
            m.model_copy()
            for m in self._messages.values()
            if m.conversation_id == conversation_id and m.id > (cursor or 0)
        ]
        items.sort(key=lambda m: (m.created_at, m.id))
        return items

    def update_flags(
        self,
        message_id: int,
        *,
        is_read: Optional[bool] = None,
        is_answered: Optional[bool] = None,
    ) -> Optional[schemas.Message]:
        if self.fail_writes:
            raise PersistenceFailure("message store rejected the write")
        message = self._messages.get(message_id)
        if message is None:
            return None
        if is_read is not None:
            message.is_read = is_read
        if is_answered is not None:
            message.is_answered = is_answered
        return message.model_copy()
