"""session runtime tables

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "numbers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("phone_number", sa.String(32), nullable=False, unique=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending_qr"),
        sa.Column("last_connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_numbers_status", "numbers", ["status"])

    op.create_table(
        "number_sessions",
        sa.Column("number_id", sa.String(36), sa.ForeignKey("numbers.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("session_state", sa.String(32), nullable=False),
        sa.Column("qr_token", sa.Text(), nullable=True),
        sa.Column("qr_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "number_connection_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("number_id", sa.String(36), sa.ForeignKey("numbers.id", ondelete="CASCADE")),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_number_connection_events_number_id", "number_connection_events", ["number_id"])
    op.create_index("ix_number_connection_events_timestamp", "number_connection_events", ["timestamp"])

    op.create_table(
        "conversations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("number_id", sa.String(36), sa.ForeignKey("numbers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_wa_id", sa.String(100), nullable=False),
        sa.Column("bot_version_id", sa.String(36), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("opened_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_message_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_conversations_number_customer", "conversations", ["number_id", "customer_wa_id"])

    op.create_table(
        "messages",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("conversation_id", sa.String(36), sa.ForeignKey("conversations.id", ondelete="CASCADE")),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("message_type", sa.String(30), nullable=False, server_default="text"),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivery_status", sa.String(20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"])

    op.create_table(
        "number_bot_deployments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("number_id", sa.String(36), sa.ForeignKey("numbers.id", ondelete="CASCADE")),
        sa.Column("bot_version_id", sa.String(36), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("effective_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_number_bot_deployments_number_id", "number_bot_deployments", ["number_id"])


def downgrade() -> None:
    op.drop_table("number_bot_deployments")
    op.drop_table("messages")
    op.drop_table("conversations")
    op.drop_table("number_connection_events")
    op.drop_table("number_sessions")
    op.drop_table("numbers")
