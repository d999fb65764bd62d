"""
rallia.engine.preferences — Default Matrix & Preference Cascade
================================================================

An explicit per-user row always wins; absence of a row means "use the
default matrix".  Absence and ``False`` are never collapsed: preference
lookups return ``None`` for "no row".

The default matrix must be total over ``NotificationType × DeliveryChannel``;
this is asserted at import time so a gap fails deployment, not delivery.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

from rallia.database.models import DeliveryChannel, NotificationCategory, NotificationType
from rallia.errors import ValidationError

if TYPE_CHECKING:
    from rallia.engine.repositories import PreferenceRepository

__all__ = [
    "CHANNELS",
    "DEFAULT_PREFERENCE_MATRIX",
    "NOTIFICATION_CATEGORIES",
    "ResolvedPreference",
    "category_for",
    "coerce_channel",
    "coerce_notification_type",
    "resolve_channels",
    "resolve_grid",
]

CHANNELS: tuple[DeliveryChannel, ...] = (
    DeliveryChannel.EMAIL,
    DeliveryChannel.PUSH,
    DeliveryChannel.SMS,
)

T = NotificationType
C = NotificationCategory

# ---------------------------------------------------------------------------
# Category grouping (preference UI only — never used for delivery)
# ---------------------------------------------------------------------------
NOTIFICATION_CATEGORIES: dict[NotificationType, NotificationCategory] = {
    T.MATCH_INVITATION: C.MATCH,
    T.MATCH_JOIN_REQUEST: C.MATCH,
    T.MATCH_JOIN_ACCEPTED: C.MATCH,
    T.MATCH_JOIN_REJECTED: C.MATCH,
    T.MATCH_PLAYER_JOINED: C.MATCH,
    T.MATCH_CANCELLED: C.MATCH,
    T.MATCH_UPDATED: C.MATCH,
    T.MATCH_STARTING_SOON: C.MATCH,
    T.MATCH_COMPLETED: C.MATCH,
    T.MATCH_NEW_AVAILABLE: C.MATCH,
    T.PLAYER_KICKED: C.MATCH,
    T.PLAYER_LEFT: C.MATCH,
    T.CHAT: C.SOCIAL,
    T.NEW_MESSAGE: C.SOCIAL,
    T.FRIEND_REQUEST: C.SOCIAL,
    T.RATING_VERIFIED: C.SOCIAL,
    T.REMINDER: C.SYSTEM,
    T.PAYMENT: C.SYSTEM,
    T.SUPPORT: C.SYSTEM,
    T.SYSTEM: C.SYSTEM,
    T.FEEDBACK_REQUEST: C.MATCH,
    T.FEEDBACK_REMINDER: C.MATCH,
    T.SCORE_CONFIRMATION: C.MATCH,
    T.BOOKING_CREATED: C.ORGANIZATION,
    T.BOOKING_CANCELLED_BY_PLAYER: C.ORGANIZATION,
    T.BOOKING_MODIFIED: C.ORGANIZATION,
    T.NEW_MEMBER_JOINED: C.ORGANIZATION,
    T.MEMBER_LEFT: C.ORGANIZATION,
    T.MEMBER_ROLE_CHANGED: C.ORGANIZATION,
    T.PAYMENT_RECEIVED: C.ORGANIZATION,
    T.PAYMENT_FAILED: C.ORGANIZATION,
    T.REFUND_PROCESSED: C.ORGANIZATION,
    T.DAILY_SUMMARY: C.ORGANIZATION,
    T.WEEKLY_REPORT: C.ORGANIZATION,
    T.BOOKING_CONFIRMED: C.ORGANIZATION,
    T.BOOKING_REMINDER: C.ORGANIZATION,
    T.BOOKING_CANCELLED_BY_ORG: C.ORGANIZATION,
    T.MEMBERSHIP_APPROVED: C.ORGANIZATION,
    T.ORG_ANNOUNCEMENT: C.ORGANIZATION,
    T.PROGRAM_REGISTRATION_CONFIRMED: C.ORGANIZATION,
    T.PROGRAM_REGISTRATION_CANCELLED: C.ORGANIZATION,
    T.PROGRAM_SESSION_REMINDER: C.ORGANIZATION,
    T.PROGRAM_SESSION_CANCELLED: C.ORGANIZATION,
    T.PROGRAM_WAITLIST_PROMOTED: C.ORGANIZATION,
    T.PROGRAM_PAYMENT_DUE: C.ORGANIZATION,
    T.PROGRAM_PAYMENT_RECEIVED: C.ORGANIZATION,
}


def _row(email: bool, push: bool, sms: bool) -> dict[DeliveryChannel, bool]:
    return {DeliveryChannel.EMAIL: email, DeliveryChannel.PUSH: push, DeliveryChannel.SMS: sms}


# ---------------------------------------------------------------------------
# Default matrix — fallback when a user has no explicit row
# ---------------------------------------------------------------------------
DEFAULT_PREFERENCE_MATRIX: dict[NotificationType, dict[DeliveryChannel, bool]] = {
    T.MATCH_INVITATION: _row(True, True, False),
    T.MATCH_JOIN_REQUEST: _row(True, True, False),
    T.MATCH_JOIN_ACCEPTED: _row(True, True, False),
    T.MATCH_JOIN_REJECTED: _row(True, True, False),
    T.MATCH_PLAYER_JOINED: _row(False, True, False),
    T.MATCH_CANCELLED: _row(True, True, True),
    T.MATCH_UPDATED: _row(False, True, False),
    T.MATCH_STARTING_SOON: _row(False, True, True),
    T.MATCH_COMPLETED: _row(False, True, False),
    T.MATCH_NEW_AVAILABLE: _row(False, True, False),
    T.PLAYER_KICKED: _row(True, True, False),
    T.PLAYER_LEFT: _row(False, True, False),
    T.CHAT: _row(False, True, False),
    T.NEW_MESSAGE: _row(False, True, False),
    T.FRIEND_REQUEST: _row(False, True, False),
    T.RATING_VERIFIED: _row(True, True, False),
    T.REMINDER: _row(False, True, False),
    T.PAYMENT: _row(True, True, False),
    T.SUPPORT: _row(True, False, False),
    T.SYSTEM: _row(True, False, False),
    T.FEEDBACK_REQUEST: _row(True, True, False),
    T.FEEDBACK_REMINDER: _row(True, True, False),
    T.SCORE_CONFIRMATION: _row(True, True, False),
    T.BOOKING_CREATED: _row(True, False, False),
    T.BOOKING_CANCELLED_BY_PLAYER: _row(True, False, False),
    T.BOOKING_MODIFIED: _row(True, False, False),
    T.NEW_MEMBER_JOINED: _row(True, False, False),
    T.MEMBER_LEFT: _row(True, False, False),
    T.MEMBER_ROLE_CHANGED: _row(True, False, False),
    T.PAYMENT_RECEIVED: _row(True, False, False),
    T.PAYMENT_FAILED: _row(True, False, True),
    T.REFUND_PROCESSED: _row(True, False, False),
    T.DAILY_SUMMARY: _row(False, False, False),  # opt-in
    T.WEEKLY_REPORT: _row(True, False, False),
    T.BOOKING_CONFIRMED: _row(True, False, False),
    T.BOOKING_REMINDER: _row(True, False, True),
    T.BOOKING_CANCELLED_BY_ORG: _row(True, False, True),
    T.MEMBERSHIP_APPROVED: _row(True, False, False),
    T.ORG_ANNOUNCEMENT: _row(True, False, False),
    T.PROGRAM_REGISTRATION_CONFIRMED: _row(True, True, False),
    T.PROGRAM_REGISTRATION_CANCELLED: _row(True, True, True),
    T.PROGRAM_SESSION_REMINDER: _row(False, True, True),
    T.PROGRAM_SESSION_CANCELLED: _row(True, True, True),
    T.PROGRAM_WAITLIST_PROMOTED: _row(True, True, False),
    T.PROGRAM_PAYMENT_DUE: _row(True, True, False),
    T.PROGRAM_PAYMENT_RECEIVED: _row(True, False, False),
}


def _assert_total(
    matrix: Mapping[NotificationType, Mapping[DeliveryChannel, bool]],
    categories: Mapping[NotificationType, NotificationCategory],
) -> None:
    for ntype in NotificationType:
        if ntype not in categories:
            raise RuntimeError(f"Notification type {ntype.value!r} has no category")
        row = matrix.get(ntype)
        if row is None or any(channel not in row for channel in CHANNELS):
            raise RuntimeError(f"Default preference matrix is missing {ntype.value!r}")


_assert_total(DEFAULT_PREFERENCE_MATRIX, NOTIFICATION_CATEGORIES)


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------
def coerce_notification_type(value: str) -> NotificationType:
    try:
        return NotificationType(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown notification type {value!r}") from exc


def coerce_channel(value: str) -> DeliveryChannel:
    try:
        return DeliveryChannel(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown delivery channel {value!r}") from exc


def category_for(notification_type: str) -> NotificationCategory:
    return NOTIFICATION_CATEGORIES[coerce_notification_type(notification_type)]


# ---------------------------------------------------------------------------
# Cascade
# ---------------------------------------------------------------------------
def resolve_channels(
    subject_id: str,
    notification_type: str,
    preferences: PreferenceRepository,
    matrix: Mapping[NotificationType, Mapping[DeliveryChannel, bool]] = DEFAULT_PREFERENCE_MATRIX,
) -> dict[DeliveryChannel, bool]:
    """Return ``{channel: enabled}`` for every channel, in fixed order.

    *subject_id* is normally the recipient; for organisation notifications
    it is the organisation whose preferences govern delivery.

    Raises
    ------
    ValidationError
        If *notification_type* is not a known type, or *matrix* has no row
        for it.
    """
    ntype = coerce_notification_type(notification_type)
    defaults = matrix.get(ntype)
    if defaults is None:
        raise ValidationError(f"No default preferences for {ntype.value!r}")

    resolved: dict[DeliveryChannel, bool] = {}
    for channel in CHANNELS:
        explicit = preferences.load_preference(subject_id, ntype, channel)
        if explicit is not None:
            resolved[channel] = bool(explicit)
        else:
            resolved[channel] = bool(defaults[channel])
    return resolved


@dataclass(frozen=True, slots=True)
class ResolvedPreference:
    notification_type: NotificationType
    category: NotificationCategory
    channel: DeliveryChannel
    enabled: bool
    source: str  # "explicit" | "default"

    def to_dict(self) -> dict:
        return {
            "notification_type": self.notification_type.value,
            "category": self.category.value,
            "channel": self.channel.value,
            "enabled": self.enabled,
            "source": self.source,
        }


def resolve_grid(
    explicit: Mapping[tuple[str, str], bool],
    matrix: Mapping[NotificationType, Mapping[DeliveryChannel, bool]] = DEFAULT_PREFERENCE_MATRIX,
) -> list[ResolvedPreference]:
    """Expand sparse ``{(type, channel): enabled}`` rows into the full grid.

    Rows for types or channels that no longer exist are ignored.
    """
    grid: list[ResolvedPreference] = []
    for ntype in NotificationType:
        for channel in CHANNELS:
            key = (ntype.value, channel.value)
            if key in explicit:
                enabled, source = bool(explicit[key]), "explicit"
            else:
                enabled, source = bool(matrix[ntype][channel]), "default"
            grid.append(ResolvedPreference(
                notification_type=ntype,
                category=NOTIFICATION_CATEGORIES[ntype],
                channel=channel,
                enabled=enabled,
                source=source,
            ))
    return grid
