"""Create relay tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Creates the record store used by the chat relay:
- api_keys
- chat_models
- conversations
- history_records
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create all relay tables."""
    # Provider credentials
    op.create_table(
        "api_keys",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("platform", sa.String(32), nullable=False),
        sa.Column("purpose", sa.String(16), nullable=False, server_default="chat"),
        sa.Column("name", sa.String(64), nullable=False, server_default=""),
        sa.Column("value", sa.String(255), nullable=False),
        sa.Column("api_url", sa.String(255), nullable=False),
        sa.Column("proxy_url", sa.String(255), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_used_at", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_api_keys")),
    )
    op.create_index("ix_api_keys_platform_purpose", "api_keys", ["platform", "purpose"])
    op.create_index("ix_api_keys_last_used_at", "api_keys", ["last_used_at"])

    # Models exposed to clients
    op.create_table(
        "chat_models",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("platform", sa.String(32), nullable=False),
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("value", sa.String(64), nullable=False),
        sa.Column("key_id", sa.Integer(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sort_num", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("temperature", sa.Float(), nullable=True),
        sa.Column("max_tokens", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_chat_models")),
        sa.ForeignKeyConstraint(
            ["key_id"], ["api_keys.id"],
            name=op.f("fk_chat_models_key_id_api_keys"),
            ondelete="SET NULL",
        ),
        sa.UniqueConstraint("value", name=op.f("uq_chat_models_value")),
    )

    # Conversations table
    op.create_table(
        "conversations",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=True),
        sa.Column("title", sa.String(255), nullable=False, server_default="New Chat"),
        sa.Column("model", sa.String(64), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_conversations")),
    )
    op.create_index("ix_conversations_user_id", "conversations", ["user_id"])
    op.create_index("ix_conversations_last_activity_at", "conversations", ["last_activity_at"])

    # One row per relayed turn
    op.create_table(
        "history_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("conversation_id", sa.String(36), nullable=False),
        sa.Column("model", sa.String(64), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(16), nullable=False, server_default="completed"),
        sa.Column("prompt_tokens", sa.Integer(), nullable=True),
        sa.Column("completion_tokens", sa.Integer(), nullable=True),
        sa.Column("total_tokens", sa.Integer(), nullable=True),
        sa.Column("prompt_at", sa.DateTime(), nullable=False),
        sa.Column("reply_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_history_records")),
        sa.ForeignKeyConstraint(
            ["conversation_id"], ["conversations.id"],
            name=op.f("fk_history_records_conversation_id_conversations"),
            ondelete="CASCADE",
        ),
    )
    op.create_index(
        "ix_history_records_conversation_id", "history_records", ["conversation_id"]
    )


def downgrade() -> None:
    """Drop all relay tables."""
    op.drop_index("ix_history_records_conversation_id", table_name="history_records")
    op.drop_table("history_records")
    op.drop_index("ix_conversations_last_activity_at", table_name="conversations")
    op.drop_index("ix_conversations_user_id", table_name="conversations")
    op.drop_table("conversations")
    op.drop_table("chat_models")
    op.drop_index("ix_api_keys_last_used_at", table_name="api_keys")
    op.drop_index("ix_api_keys_platform_purpose", table_name="api_keys")
    op.drop_table("api_keys")
