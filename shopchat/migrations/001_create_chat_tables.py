"""Create conversation, message and quick reply template tables.

``shops`` and ``products`` belong to the catalog schema and are only read by
the chat service, so shop ids are stored as plain text here.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "001_create_chat_tables"
down_revision = None
branch_labels = None
depends_on = None

_NOW = sa.text("timezone('utc', now())")


def upgrade() -> None:
    op.create_table(
        "conversations",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("customer_id", sa.Text(), nullable=False),
        sa.Column("shop_id", sa.Text(), nullable=False),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=_NOW,
        ),
        sa.UniqueConstraint("customer_id", "shop_id", name="uq_conversations_customer_shop"),
    )
    op.create_index("ix_conversations_shop_id", "conversations", ["shop_id"])

    op.create_table(
        "messages",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "conversation_id",
            sa.BigInteger(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sender_id", sa.Text(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column(
            "message_type",
            sa.String(length=32),
            nullable=False,
            server_default="text",
        ),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_answered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=_NOW,
        ),
        sa.CheckConstraint(
            "message_type IN ('text', 'quick_reply', 'auto_response', 'system')",
            name="ck_messages_message_type",
        ),
    )
    op.create_index(
        "ix_messages_conversation_created",
        "messages",
        ["conversation_id", "created_at", "id"],
    )

    op.create_table(
        "quick_reply_templates",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("shop_id", sa.Text(), nullable=False),
        sa.Column("reply_text", sa.Text(), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False, server_default="general"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=_NOW,
        ),
    )
    op.create_index("ix_quick_reply_templates_shop_id", "quick_reply_templates", ["shop_id"])


def downgrade() -> None:
    op.drop_index("ix_quick_reply_templates_shop_id", table_name="quick_reply_templates")
    op.drop_table("quick_reply_templates")
    op.drop_index("ix_messages_conversation_created", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_conversations_shop_id", table_name="conversations")
    op.drop_table("conversations")
