"""
rallia.database.models — SQLAlchemy 2.0 Data Models
====================================================

Tables:
- reputation_event     — Append-only log of player behaviour facts
- reputation_config    — Per-event-type impact / clamp / decay rules
- player_reputation    — Cached summary, rebuilt wholesale on recalculation
- notification         — One row per logical event per recipient (idempotent)
- notification_preference — Sparse per-user channel overrides
- organization_notification_preference — Sparse per-organisation overrides
- delivery_attempt     — Append-only audit trail of channel deliveries
- user_contact         — Email / phone / push token per recipient
- settings             — Admin-configurable tuning knobs (JSON values)

Player, user and organisation ids are UUID strings owned by the host
application; this schema only references them.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Rallia ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class ReputationEventType(enum.StrEnum):
    """Behaviour facts known to the scoring rules."""
    # Match-related
    MATCH_COMPLETED = "match_completed"
    MATCH_NO_SHOW = "match_no_show"
    MATCH_GHOSTED = "match_ghosted"
    MATCH_ON_TIME = "match_on_time"
    MATCH_LATE = "match_late"
    MATCH_CANCELLED_EARLY = "match_cancelled_early"
    MATCH_CANCELLED_LATE = "match_cancelled_late"
    MATCH_REPEAT_OPPONENT = "match_repeat_opponent"
    # Peer reviews
    REVIEW_RECEIVED_5STAR = "review_received_5star"
    REVIEW_RECEIVED_4STAR = "review_received_4star"
    REVIEW_RECEIVED_3STAR = "review_received_3star"
    REVIEW_RECEIVED_2STAR = "review_received_2star"
    REVIEW_RECEIVED_1STAR = "review_received_1star"
    # Reports / moderation
    REPORT_RECEIVED = "report_received"
    REPORT_DISMISSED = "report_dismissed"
    REPORT_UPHELD = "report_upheld"
    WARNING_ISSUED = "warning_issued"
    SUSPENSION_LIFTED = "suspension_lifted"
    # Community
    PEER_RATING_GIVEN = "peer_rating_given"
    FIRST_MATCH_BONUS = "first_match_bonus"


class ReputationTier(enum.StrEnum):
    UNKNOWN = "unknown"
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


class NotificationType(enum.StrEnum):
    """Closed set of domain events that can become notifications."""
    # Match lifecycle
    MATCH_INVITATION = "match_invitation"
    MATCH_JOIN_REQUEST = "match_join_request"
    MATCH_JOIN_ACCEPTED = "match_join_accepted"
    MATCH_JOIN_REJECTED = "match_join_rejected"
    MATCH_PLAYER_JOINED = "match_player_joined"
    MATCH_CANCELLED = "match_cancelled"
    MATCH_UPDATED = "match_updated"
    MATCH_STARTING_SOON = "match_starting_soon"
    MATCH_COMPLETED = "match_completed"
    MATCH_NEW_AVAILABLE = "match_new_available"
    PLAYER_KICKED = "player_kicked"
    PLAYER_LEFT = "player_left"
    # Social
    CHAT = "chat"
    NEW_MESSAGE = "new_message"
    FRIEND_REQUEST = "friend_request"
    RATING_VERIFIED = "rating_verified"
    # System
    REMINDER = "reminder"
    PAYMENT = "payment"
    SUPPORT = "support"
    SYSTEM = "system"
    # Feedback
    FEEDBACK_REQUEST = "feedback_request"
    FEEDBACK_REMINDER = "feedback_reminder"
    SCORE_CONFIRMATION = "score_confirmation"
    # Organisation staff
    BOOKING_CREATED = "booking_created"
    BOOKING_CANCELLED_BY_PLAYER = "booking_cancelled_by_player"
    BOOKING_MODIFIED = "booking_modified"
    NEW_MEMBER_JOINED = "new_member_joined"
    MEMBER_LEFT = "member_left"
    MEMBER_ROLE_CHANGED = "member_role_changed"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    REFUND_PROCESSED = "refund_processed"
    DAILY_SUMMARY = "daily_summary"
    WEEKLY_REPORT = "weekly_report"
    # Organisation members
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_REMINDER = "booking_reminder"
    BOOKING_CANCELLED_BY_ORG = "booking_cancelled_by_org"
    MEMBERSHIP_APPROVED = "membership_approved"
    ORG_ANNOUNCEMENT = "org_announcement"
    # Programs
    PROGRAM_REGISTRATION_CONFIRMED = "program_registration_confirmed"
    PROGRAM_REGISTRATION_CANCELLED = "program_registration_cancelled"
    PROGRAM_SESSION_REMINDER = "program_session_reminder"
    PROGRAM_SESSION_CANCELLED = "program_session_cancelled"
    PROGRAM_WAITLIST_PROMOTED = "program_waitlist_promoted"
    PROGRAM_PAYMENT_DUE = "program_payment_due"
    PROGRAM_PAYMENT_RECEIVED = "program_payment_received"


class NotificationCategory(enum.StrEnum):
    MATCH = "match"
    SOCIAL = "social"
    SYSTEM = "system"
    ORGANIZATION = "organization"


class NotificationPriority(enum.StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class DeliveryChannel(enum.StrEnum):
    EMAIL = "email"
    PUSH = "push"
    SMS = "sms"


class DeliveryStatus(enum.StrEnum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED_PREFERENCE = "skipped_preference"
    SKIPPED_MISSING_CONTACT = "skipped_missing_contact"


# ---------------------------------------------------------------------------
# ReputationEventLog — append-only behaviour log
# ---------------------------------------------------------------------------
class ReputationEventLog(Base):
    """Immutable fact about a player's behaviour.

    Rows are never updated or deleted; the cached summary is always
    reproducible from this table plus ``reputation_config``.
    """
    __tablename__ = "reputation_event"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    player_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    base_impact: Mapped[float | None] = mapped_column(Float, nullable=True)
    match_id: Mapped[str | None] = mapped_column(String(36), default=None)
    caused_by_player_id: Mapped[str | None] = mapped_column(String(36), default=None)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_reputation_event_player_occurred", "player_id", "occurred_at"),
        Index("ix_reputation_event_type", "event_type"),
    )

    def __repr__(self) -> str:
        return f"<ReputationEventLog id={self.id} player={self.player_id} type={self.event_type}>"


# ---------------------------------------------------------------------------
# ReputationRule — configuration row per event type
# ---------------------------------------------------------------------------
class ReputationRule(Base):
    __tablename__ = "reputation_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    default_impact: Mapped[float] = mapped_column(Float, nullable=False)
    min_impact: Mapped[float | None] = mapped_column(Float, default=None)
    max_impact: Mapped[float | None] = mapped_column(Float, default=None)
    decay_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    decay_half_life_days: Mapped[float | None] = mapped_column(Float, default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("event_type", name="uq_reputation_config_event_type"),
    )

    def __repr__(self) -> str:
        return f"<ReputationRule type={self.event_type} impact={self.default_impact}>"


# ---------------------------------------------------------------------------
# PlayerReputation — cached summary (a cache, never a source of truth)
# ---------------------------------------------------------------------------
class PlayerReputation(Base):
    __tablename__ = "player_reputation"

    player_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    tier: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ReputationTier.UNKNOWN.value
    )
    total_events: Mapped[int] = mapped_column(Integer, default=0)
    positive_events: Mapped[int] = mapped_column(Integer, default=0)
    negative_events: Mapped[int] = mapped_column(Integer, default=0)
    matches_completed: Mapped[int] = mapped_column(Integer, default=0)
    is_public: Mapped[bool] = mapped_column(Boolean, default=False)
    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_decay_calculation: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    __table_args__ = (
        Index("ix_player_reputation_decay", "last_decay_calculation"),
    )

    def __repr__(self) -> str:
        return f"<PlayerReputation player={self.player_id} score={self.score} tier={self.tier}>"


# ---------------------------------------------------------------------------
# Notification — created once per logical event per recipient
# ---------------------------------------------------------------------------
class Notification(Base):
    """A notification record.

    ``dedup_key`` carries the idempotency key; its unique constraint is what
    makes concurrent create-or-reuse safe.
    """
    __tablename__ = "notification"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(64), default=None)
    dedup_key: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str | None] = mapped_column(Text, default=None)
    payload: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    priority: Mapped[str] = mapped_column(
        String(10), nullable=False, default=NotificationPriority.NORMAL.value
    )
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    attempts: Mapped[list[DeliveryAttempt]] = relationship(
        back_populates="notification", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("dedup_key", name="uq_notification_dedup_key"),
        Index("ix_notification_user_created", "user_id", "created_at"),
        Index("ix_notification_priority_created", "priority", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Notification id={self.id} user={self.user_id} type={self.type}>"


# ---------------------------------------------------------------------------
# NotificationPreference — sparse per-user overrides
# ---------------------------------------------------------------------------
class NotificationPreference(Base):
    __tablename__ = "notification_preference"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(50), nullable=False)
    channel: Mapped[str] = mapped_column(String(10), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "notification_type", "channel",
            name="uq_notification_preference_user_type_channel",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<NotificationPreference user={self.user_id} "
            f"{self.notification_type}/{self.channel}={self.enabled}>"
        )


# ---------------------------------------------------------------------------
# OrganizationNotificationPreference — sparse per-organisation overrides
# ---------------------------------------------------------------------------
class OrganizationNotificationPreference(Base):
    __tablename__ = "organization_notification_preference"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(50), nullable=False)
    channel: Mapped[str] = mapped_column(String(10), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "notification_type", "channel",
            name="uq_org_notification_preference",
        ),
    )


# ---------------------------------------------------------------------------
# DeliveryAttempt — append-only delivery audit trail
# ---------------------------------------------------------------------------
class DeliveryAttempt(Base):
    __tablename__ = "delivery_attempt"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    notification_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("notification.id", ondelete="CASCADE"), nullable=True
    )
    invitation_id: Mapped[str | None] = mapped_column(String(36), default=None)
    channel: Mapped[str] = mapped_column(String(10), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, default=None)
    provider_response: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    notification: Mapped[Notification | None] = relationship(back_populates="attempts")

    __table_args__ = (
        UniqueConstraint(
            "notification_id", "channel", "attempt_number",
            name="uq_delivery_attempt_number",
        ),
        Index("ix_delivery_attempt_notification_channel", "notification_id", "channel"),
    )

    def __repr__(self) -> str:
        return (
            f"<DeliveryAttempt notification={self.notification_id} "
            f"{self.channel}#{self.attempt_number} {self.status}>"
        )


# ---------------------------------------------------------------------------
# UserContact — delivery addresses per recipient
# ---------------------------------------------------------------------------
class UserContact(Base):
    __tablename__ = "user_contact"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), default=None)
    phone: Mapped[str | None] = mapped_column(String(32), default=None)
    phone_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    push_token: Mapped[str | None] = mapped_column(String(255), default=None)
    push_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<UserContact user={self.user_id}>"


# ---------------------------------------------------------------------------
# Setting — admin-configurable key-value store
# ---------------------------------------------------------------------------
class Setting(Base):
    """Key-value configuration store.

    Tier thresholds, the visibility floor and delivery retry limits live
    here so operators can tune them without redeploying.  Values are stored
    as JSON strings; typed accessors live in
    :class:`~rallia.engine.cache.ConfigCache`.
    """
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    description: Mapped[str | None] = mapped_column(Text, default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_settings_category", "category"),
    )

    def __repr__(self) -> str:
        return f"<Setting key={self.key!r} category={self.category!r}>"
