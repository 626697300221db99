"""Create relay settings/messages/facts tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "relay_settings",
        sa.Column("key", sa.String(length=256), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "relay_messages",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("message_id", sa.String(length=256), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_relay_messages_timestamp", "relay_messages", ["timestamp"], unique=False)
    op.create_index("ix_relay_messages_user_id", "relay_messages", ["user_id"], unique=False)
    op.create_index("ix_relay_messages_message_id", "relay_messages", ["message_id"], unique=False)

    op.create_table(
        "relay_facts",
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("key", sa.String(length=256), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id", "key"),
    )


def downgrade() -> None:
    op.drop_table("relay_facts")
    op.drop_index("ix_relay_messages_message_id", table_name="relay_messages")
    op.drop_index("ix_relay_messages_user_id", table_name="relay_messages")
    op.drop_index("ix_relay_messages_timestamp", table_name="relay_messages")
    op.drop_table("relay_messages")
    op.drop_table("relay_settings")
