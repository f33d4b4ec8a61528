"""Migration 001: Initial schema

Creates characters, knowledge bases with files, chunks and subscriptions,
plugins with subscriptions, and chats with members and messages. Requires the
pgvector extension for the chunk embedding column and its cosine index.
"""
import os

import sqlalchemy as sa
from alembic import op
from pgvector.sqlalchemy import Vector

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None

EMBEDDING_DIMENSION = int(os.getenv("PERSONA_EMBEDDING_DIMENSION", "1024"))
VECTOR_INDEX_TYPE = os.getenv("PERSONA_VECTOR_INDEX_TYPE", "hnsw").lower()


def _base_columns() -> list:
    return [
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        "characters",
        *_base_columns(),
        sa.Column("owner_id", sa.String(36), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("avatar", sa.String(1024), nullable=True),
        sa.Column("bio", sa.Text(), nullable=True),
        sa.Column("origin_prompt", sa.Text(), nullable=True),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_characters_owner_id", "characters", ["owner_id"])

    op.create_table(
        "knowledge_bases",
        *_base_columns(),
        sa.Column("owner_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("visibility", sa.String(16), nullable=False, server_default="private"),
        sa.CheckConstraint("visibility IN ('public', 'private')", name="ck_knowledge_bases_visibility"),
    )
    op.create_index("ix_knowledge_bases_owner_id", "knowledge_bases", ["owner_id"])

    op.create_table(
        "knowledge_files",
        *_base_columns(),
        sa.Column(
            "knowledge_base_id",
            sa.String(36),
            sa.ForeignKey("knowledge_bases.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("storage_path", sa.String(1024), nullable=False),
        sa.Column("declared_name", sa.String(512), nullable=False),
        sa.Column("size", sa.Integer(), nullable=True),
        sa.Column("mime_type", sa.String(255), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("chunk_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processing_started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("processed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')", name="ck_knowledge_files_status"
        ),
    )
    op.create_index("ix_knowledge_files_knowledge_base_id", "knowledge_files", ["knowledge_base_id"])
    op.create_index("ix_knowledge_files_status_created", "knowledge_files", ["status", "created_at"])

    op.create_table(
        "knowledge_chunks",
        *_base_columns(),
        sa.Column(
            "knowledge_base_id",
            sa.String(36),
            sa.ForeignKey("knowledge_bases.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "file_id", sa.String(36), sa.ForeignKey("knowledge_files.id", ondelete="CASCADE"), nullable=True
        ),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSION), nullable=True),
    )
    op.create_index("ix_knowledge_chunks_knowledge_base_id", "knowledge_chunks", ["knowledge_base_id"])
    op.create_index("ix_knowledge_chunks_file_id", "knowledge_chunks", ["file_id"])
    if VECTOR_INDEX_TYPE == "ivfflat":
        op.execute(
            "CREATE INDEX ix_knowledge_chunks_embedding ON knowledge_chunks "
            "USING ivfflat (embedding vector_cosine_ops) WITH (lists = 100)"
        )
    else:
        op.execute(
            "CREATE INDEX ix_knowledge_chunks_embedding ON knowledge_chunks "
            "USING hnsw (embedding vector_cosine_ops)"
        )

    op.create_table(
        "knowledge_subscriptions",
        *_base_columns(),
        sa.Column(
            "character_id", sa.String(36), sa.ForeignKey("characters.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "knowledge_base_id",
            sa.String(36),
            sa.ForeignKey("knowledge_bases.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("character_id", "knowledge_base_id", name="uq_knowledge_subscriptions_character_kb"),
    )
    op.create_index("ix_knowledge_subscriptions_character_id", "knowledge_subscriptions", ["character_id"])
    op.create_index(
        "ix_knowledge_subscriptions_knowledge_base_id", "knowledge_subscriptions", ["knowledge_base_id"]
    )

    op.create_table(
        "plugins",
        *_base_columns(),
        sa.Column("author_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("version", sa.String(32), nullable=False, server_default="1.0.0"),
        sa.Column("schema", sa.JSON(), nullable=True),
        sa.Column("code", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.CheckConstraint("status IN ('pending', 'rejected', 'approved', 'archived')", name="ck_plugins_status"),
    )
    op.create_index("ix_plugins_author_id", "plugins", ["author_id"])
    op.create_index("ix_plugins_status", "plugins", ["status"])

    op.create_table(
        "plugin_subscriptions",
        *_base_columns(),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("plugin_id", sa.String(36), sa.ForeignKey("plugins.id", ondelete="CASCADE"), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint("user_id", "plugin_id", name="uq_plugin_subscriptions_user_plugin"),
    )
    op.create_index("ix_plugin_subscriptions_user_id", "plugin_subscriptions", ["user_id"])
    op.create_index("ix_plugin_subscriptions_plugin_id", "plugin_subscriptions", ["plugin_id"])

    op.create_table(
        "chats",
        *_base_columns(),
        sa.Column("owner_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("is_group", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_message", sa.Text(), nullable=True),
    )
    op.create_index("ix_chats_owner_id", "chats", ["owner_id"])

    op.create_table(
        "chat_members",
        *_base_columns(),
        sa.Column("chat_id", sa.String(36), sa.ForeignKey("chats.id", ondelete="CASCADE"), nullable=False),
        sa.Column("member_type", sa.String(16), nullable=False),
        sa.Column("profile_id", sa.String(36), nullable=True),
        sa.Column(
            "character_id", sa.String(36), sa.ForeignKey("characters.id", ondelete="CASCADE"), nullable=True
        ),
        sa.CheckConstraint(
            "(member_type = 'user' AND profile_id IS NOT NULL AND character_id IS NULL) OR "
            "(member_type = 'character' AND character_id IS NOT NULL AND profile_id IS NULL)",
            name="ck_chat_members_identity",
        ),
    )
    op.create_index("ix_chat_members_chat_id", "chat_members", ["chat_id"])

    op.create_table(
        "messages",
        *_base_columns(),
        sa.Column("chat_id", sa.String(36), sa.ForeignKey("chats.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sender_type", sa.String(16), nullable=False),
        sa.Column("sender_profile_id", sa.String(36), nullable=True),
        sa.Column(
            "sender_character_id",
            sa.String(36),
            sa.ForeignKey("characters.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("content", sa.JSON(), nullable=False),
        sa.CheckConstraint(
            "(sender_type = 'user' AND sender_profile_id IS NOT NULL AND sender_character_id IS NULL) OR "
            "(sender_type = 'character' AND sender_profile_id IS NULL AND sender_character_id IS NOT NULL)",
            name="ck_messages_sender",
        ),
    )
    op.create_index("ix_messages_chat_created", "messages", ["chat_id", "created_at"])

    for table in (
        "characters",
        "knowledge_bases",
        "knowledge_files",
        "knowledge_chunks",
        "knowledge_subscriptions",
        "plugins",
        "plugin_subscriptions",
        "chats",
        "chat_members",
        "messages",
    ):
        op.create_index(f"ix_{table}_created_at", table, ["created_at"])


def downgrade() -> None:
    for table in (
        "messages",
        "chat_members",
        "chats",
        "plugin_subscriptions",
        "plugins",
        "knowledge_subscriptions",
        "knowledge_chunks",
        "knowledge_files",
        "knowledge_bases",
        "characters",
    ):
        op.drop_table(table)
