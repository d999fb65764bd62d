"""Initial reputation and notification schema

Creates the reputation event log, scoring rules, cached summaries, the
notification / delivery attempt tables, sparse user and organisation
preferences, user contacts and the settings store.

Revision ID: 4c2e9a7b1f30
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "4c2e9a7b1f30"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # --- Reputation ---
    op.create_table(
        "reputation_event",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("player_id", sa.String(36), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("base_impact", sa.Float(), nullable=True),
        sa.Column("match_id", sa.String(36), nullable=True),
        sa.Column("caused_by_player_id", sa.String(36), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_reputation_event_player_occurred", "reputation_event", ["player_id", "occurred_at"]
    )
    op.create_index("ix_reputation_event_type", "reputation_event", ["event_type"])

    op.create_table(
        "reputation_config",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("default_impact", sa.Float(), nullable=False),
        sa.Column("min_impact", sa.Float(), nullable=True),
        sa.Column("max_impact", sa.Float(), nullable=True),
        sa.Column("decay_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("decay_half_life_days", sa.Float(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_type", name="uq_reputation_config_event_type"),
    )

    op.create_table(
        "player_reputation",
        sa.Column("player_id", sa.String(36), nullable=False),
        sa.Column("score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("tier", sa.String(20), nullable=False, server_default="unknown"),
        sa.Column("total_events", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("positive_events", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("negative_events", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("matches_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_decay_calculation", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("player_id"),
    )
    op.create_index(
        "ix_player_reputation_decay", "player_reputation", ["last_decay_calculation"]
    )

    # --- Notifications ---
    op.create_table(
        "notification",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(64), nullable=True),
        sa.Column("dedup_key", sa.String(255), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("payload", postgresql.JSONB(), nullable=True),
        sa.Column("priority", sa.String(10), nullable=False, server_default="normal"),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedup_key", name="uq_notification_dedup_key"),
    )
    op.create_index("ix_notification_user_created", "notification", ["user_id", "created_at"])
    op.create_index(
        "ix_notification_priority_created", "notification", ["priority", "created_at"]
    )

    op.create_table(
        "notification_preference",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("notification_type", sa.String(50), nullable=False),
        sa.Column("channel", sa.String(10), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "user_id", "notification_type", "channel",
            name="uq_notification_preference_user_type_channel",
        ),
    )

    op.create_table(
        "organization_notification_preference",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("organization_id", sa.String(36), nullable=False),
        sa.Column("notification_type", sa.String(50), nullable=False),
        sa.Column("channel", sa.String(10), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "organization_id", "notification_type", "channel",
            name="uq_org_notification_preference",
        ),
    )

    op.create_table(
        "delivery_attempt",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("notification_id", sa.Integer(), nullable=True),
        sa.Column("invitation_id", sa.String(36), nullable=True),
        sa.Column("channel", sa.String(10), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("provider_response", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["notification_id"], ["notification.id"], ondelete="CASCADE"
        ),
        sa.UniqueConstraint(
            "notification_id", "channel", "attempt_number",
            name="uq_delivery_attempt_number",
        ),
    )
    op.create_index(
        "ix_delivery_attempt_notification_channel",
        "delivery_attempt",
        ["notification_id", "channel"],
    )

    op.create_table(
        "user_contact",
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("phone_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("push_token", sa.String(255), nullable=True),
        sa.Column("push_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("user_id"),
    )

    # --- Settings ---
    op.create_table(
        "settings",
        sa.Column("key", sa.String(100), nullable=False),
        sa.Column("value_json", sa.Text(), nullable=False),
        sa.Column("category", sa.String(50), nullable=False, server_default="general"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_index("ix_settings_category", "settings", ["category"])


def downgrade() -> None:
    op.drop_index("ix_settings_category", table_name="settings")
    op.drop_table("settings")
    op.drop_table("user_contact")
    op.drop_index("ix_delivery_attempt_notification_channel", table_name="delivery_attempt")
    op.drop_table("delivery_attempt")
    op.drop_table("organization_notification_preference")
    op.drop_table("notification_preference")
    op.drop_index("ix_notification_priority_created", table_name="notification")
    op.drop_index("ix_notification_user_created", table_name="notification")
    op.drop_table("notification")
    op.drop_index("ix_player_reputation_decay", table_name="player_reputation")
    op.drop_table("player_reputation")
    op.drop_table("reputation_config")
    op.drop_index("ix_reputation_event_type", table_name="reputation_event")
    op.drop_index("ix_reputation_event_player_occurred", table_name="reputation_event")
    op.drop_table("reputation_event")
