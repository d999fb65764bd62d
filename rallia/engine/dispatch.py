"""
rallia.engine.dispatch — Multi-Channel Notification Delivery
=============================================================

Orchestrates one logical notification for one recipient:

  NotificationInput → insert-or-reuse → preference cascade → per-channel
  (contact check → sender → attempt row) → DispatchResult

No Session or HTTP client is touched here; storage and providers come in
through the protocols in :mod:`rallia.engine.repositories`.

Channels are independent result slots.  A sender that raises is turned into
a ``failed`` attempt for that channel only; the other channels still run.
Re-dispatching the same idempotency key never creates a second notification
and never re-attempts a channel that already has a ``success`` attempt.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from rallia.database.models import (
    DeliveryChannel,
    DeliveryStatus,
    NotificationCategory,
    NotificationPriority,
    NotificationType,
)
from rallia.engine.events import as_utc
from rallia.engine.preferences import (
    CHANNELS,
    DEFAULT_PREFERENCE_MATRIX,
    NOTIFICATION_CATEGORIES,
    coerce_notification_type,
    resolve_channels,
)
from rallia.errors import ValidationError

if TYPE_CHECKING:
    from rallia.engine.repositories import (
        AttemptRepository,
        ChannelSender,
        ContactRepository,
        NotificationRepository,
        PreferenceRepository,
    )

logger = logging.getLogger(__name__)

__all__ = [
    "AttemptRecord",
    "ChannelOutcome",
    "ContactInfo",
    "DispatchResult",
    "NotificationInput",
    "NotificationRecord",
    "SendResult",
    "dispatch",
    "idempotency_key",
]

_E164 = re.compile(r"^\+[1-9]\d{7,14}$")


def idempotency_key(notification_type: str, target_id: str | None, user_id: str) -> str:
    """Default dedup key: ``type:target:user`` (``-`` for no target)."""
    return f"{notification_type}:{target_id or '-'}:{user_id}"


# ---------------------------------------------------------------------------
# Values crossing the engine boundary
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class NotificationInput:
    """A logical event destined for one user."""

    user_id: str
    type: str
    title: str
    body: str | None = None
    payload: dict = field(default_factory=dict)
    priority: NotificationPriority = NotificationPriority.NORMAL
    target_id: str | None = None
    scheduled_at: datetime | None = None
    expires_at: datetime | None = None
    dedup_key: str | None = None

    @property
    def idempotency_key(self) -> str:
        return self.dedup_key or idempotency_key(self.type, self.target_id, self.user_id)


@dataclass(frozen=True, slots=True)
class NotificationRecord:
    id: int
    user_id: str
    type: str
    title: str
    body: str | None
    payload: dict
    priority: str
    target_id: str | None
    dedup_key: str
    created_at: datetime | None = None
    read_at: datetime | None = None
    expires_at: datetime | None = None
    scheduled_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class ContactInfo:
    email: str | None = None
    phone: str | None = None
    phone_verified: bool = False
    push_token: str | None = None
    push_enabled: bool = False

    def address_for(self, channel: DeliveryChannel) -> tuple[str | None, str | None]:
        """Return ``(recipient, None)`` or ``(None, reason)``."""
        if channel == DeliveryChannel.EMAIL:
            if not self.email:
                return None, "No email address"
            return self.email, None
        if channel == DeliveryChannel.PUSH:
            if not self.push_enabled:
                return None, "Push notifications disabled on device"
            if not self.push_token:
                return None, "No push token registered"
            return self.push_token, None
        if channel == DeliveryChannel.SMS:
            if not self.phone:
                return None, "No phone number"
            if not self.phone_verified:
                return None, "Phone number not verified"
            if not _E164.match(self.phone):
                return None, "Invalid phone number format"
            return self.phone, None
        return None, f"Unknown channel {channel!r}"


@dataclass(frozen=True, slots=True)
class SendResult:
    """What a provider reported for one send."""

    success: bool
    provider_response: dict = field(default_factory=dict)
    error_message: str | None = None


@dataclass(frozen=True, slots=True)
class AttemptRecord:
    notification_id: int | None
    channel: DeliveryChannel
    status: DeliveryStatus
    attempt_number: int = 0
    error_message: str | None = None
    provider_response: dict | None = None
    invitation_id: str | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class ChannelOutcome:
    """Terminal state of one channel for one dispatch call.

    ``recorded`` is ``False`` when the outcome was carried over from earlier
    attempts (already delivered, retries exhausted, or a previous preference
    skip that was not re-evaluated) and no new attempt row was written.
    """

    channel: DeliveryChannel
    status: DeliveryStatus
    attempt_number: int | None
    error_message: str | None = None
    recorded: bool = True

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "attempt_number": self.attempt_number,
            "error_message": self.error_message,
            "recorded": self.recorded,
        }


@dataclass
class DispatchResult:
    notification_id: int
    created: bool
    channels: dict[DeliveryChannel, ChannelOutcome] = field(default_factory=dict)
    deferred: bool = False
    expired: bool = False

    @property
    def any_success(self) -> bool:
        return any(o.status == DeliveryStatus.SUCCESS for o in self.channels.values())

    def to_dict(self) -> dict:
        return {
            "notification_id": self.notification_id,
            "created": self.created,
            "deferred": self.deferred,
            "expired": self.expired,
            "any_success": self.any_success,
            "channels": {ch.value: o.to_dict() for ch, o in self.channels.items()},
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _preference_source(
    record: NotificationRecord,
    ntype: NotificationType,
    preferences: PreferenceRepository,
    org_preferences: PreferenceRepository | None,
) -> tuple[str, PreferenceRepository]:
    """Organisation notifications follow the organisation's preferences."""
    org_id = (record.payload or {}).get("organization_id")
    if (
        org_preferences is not None
        and org_id
        and NOTIFICATION_CATEGORIES[ntype] == NotificationCategory.ORGANIZATION
    ):
        return str(org_id), org_preferences
    return record.user_id, preferences


def _message(record: NotificationRecord) -> dict:
    return {
        "notification_id": record.id,
        "type": record.type,
        "title": record.title,
        "body": record.body,
        "payload": record.payload or {},
        "priority": record.priority,
    }


def _send(
    sender: ChannelSender | None,
    channel: DeliveryChannel,
    recipient: str,
    message: dict,
    notification_id: int,
) -> SendResult:
    if sender is None:
        return SendResult(success=False, error_message=f"No sender configured for {channel.value}")
    try:
        return sender.send(channel, recipient, message)
    except Exception as exc:
        logger.warning(
            "Sender for %s raised on notification %s", channel.value, notification_id,
            exc_info=True,
        )
        return SendResult(success=False, error_message=f"{type(exc).__name__}: {exc}")


# ---------------------------------------------------------------------------
# Per-channel step
# ---------------------------------------------------------------------------
def _dispatch_channel(
    channel: DeliveryChannel,
    *,
    record: NotificationRecord,
    enabled: bool,
    contact: ContactInfo | None,
    sender: ChannelSender | None,
    attempts: AttemptRepository,
    reresolve_preferences: bool,
    max_attempts: int | None,
) -> ChannelOutcome:
    history = attempts.statuses(record.id, channel)

    if DeliveryStatus.SUCCESS in history:
        return ChannelOutcome(
            channel, DeliveryStatus.SUCCESS,
            attempt_number=history.index(DeliveryStatus.SUCCESS) + 1,
            recorded=False,
        )

    if (
        history
        and history[-1] == DeliveryStatus.SKIPPED_PREFERENCE
        and not reresolve_preferences
    ):
        return ChannelOutcome(
            channel, DeliveryStatus.SKIPPED_PREFERENCE,
            attempt_number=len(history), recorded=False,
        )

    def record_attempt(
        status: DeliveryStatus,
        error_message: str | None = None,
        provider_response: dict | None = None,
    ) -> ChannelOutcome:
        stored = attempts.append_attempt(AttemptRecord(
            notification_id=record.id,
            channel=channel,
            status=status,
            error_message=error_message,
            provider_response=provider_response,
        ))
        return ChannelOutcome(channel, status, stored.attempt_number, error_message)

    if not enabled:
        return record_attempt(DeliveryStatus.SKIPPED_PREFERENCE)

    if contact is None:
        recipient, reason = None, "No contact record for user"
    else:
        recipient, reason = contact.address_for(channel)
    if recipient is None:
        logger.info(
            "Notification %s: %s skipped (%s)", record.id, channel.value, reason
        )
        return record_attempt(DeliveryStatus.SKIPPED_MISSING_CONTACT, reason)

    failures = history.count(DeliveryStatus.FAILED)
    if max_attempts is not None and failures >= max_attempts:
        return ChannelOutcome(
            channel, DeliveryStatus.FAILED,
            attempt_number=len(history),
            error_message=f"Gave up after {failures} failed attempts",
            recorded=False,
        )

    # Advisory for the sender; append_attempt assigns the stored number at insert.
    attempt_number = attempts.count_attempts(record.id, channel) + 1
    outcome = _send(
        sender, channel, recipient,
        {**_message(record), "attempt_number": attempt_number},
        record.id,
    )
    if not outcome.success:
        logger.warning(
            "Notification %s: %s attempt %d failed: %s",
            record.id, channel.value, attempt_number, outcome.error_message,
        )
    return record_attempt(
        DeliveryStatus.SUCCESS if outcome.success else DeliveryStatus.FAILED,
        outcome.error_message,
        outcome.provider_response,
    )


# ---------------------------------------------------------------------------
# Full dispatch
# ---------------------------------------------------------------------------
def dispatch(
    notification: NotificationInput,
    senders: Mapping[DeliveryChannel, ChannelSender],
    *,
    notifications: NotificationRepository,
    attempts: AttemptRepository,
    preferences: PreferenceRepository,
    contacts: ContactRepository,
    org_preferences: PreferenceRepository | None = None,
    now: datetime | None = None,
    reresolve_preferences: bool = True,
    max_attempts: int | None = None,
    matrix: Mapping[NotificationType, Mapping[DeliveryChannel, bool]] = DEFAULT_PREFERENCE_MATRIX,
) -> DispatchResult:
    """Deliver *notification* through every channel the cascade enables.

    Parameters
    ----------
    notification : the logical event for one recipient
    senders : channel → sender; a missing sender records a ``failed`` attempt
    notifications, attempts, preferences, contacts : storage boundaries
    org_preferences : organisation preference store, consulted for
        organisation notifications whose payload names an ``organization_id``
    now : evaluation instant for scheduling / expiry (defaults to UTC now)
    reresolve_preferences : when ``False``, a channel whose latest attempt
        was ``skipped_preference`` keeps that outcome instead of being looked
        up again
    max_attempts : stop retrying a channel after this many ``failed`` attempts

    Raises
    ------
    ValidationError
        Unknown notification type or empty title.
    """
    ntype = coerce_notification_type(notification.type)
    if not notification.title:
        raise ValidationError("Notification title must not be empty")
    now = as_utc(now or datetime.now(UTC))

    record, created = notifications.create_notification(notification)
    if not created:
        logger.info(
            "Reusing notification %s for key %s", record.id, notification.idempotency_key
        )
    result = DispatchResult(notification_id=record.id, created=created)

    if record.expires_at is not None and as_utc(record.expires_at) <= now:
        logger.info("Notification %s expired at %s; not delivered", record.id, record.expires_at)
        result.expired = True
        return result

    if record.scheduled_at is not None and as_utc(record.scheduled_at) > now:
        logger.info("Notification %s scheduled for %s", record.id, record.scheduled_at)
        result.deferred = True
        return result

    subject_id, source = _preference_source(record, ntype, preferences, org_preferences)
    enabled = resolve_channels(subject_id, ntype, source, matrix)
    contact = contacts.load_contact(record.user_id)

    for channel in CHANNELS:
        result.channels[channel] = _dispatch_channel(
            channel,
            record=record,
            enabled=enabled[channel],
            contact=contact,
            sender=senders.get(channel),
            attempts=attempts,
            reresolve_preferences=reresolve_preferences,
            max_attempts=max_attempts,
        )

    logger.info(
        "Dispatched notification %s (%s) → %s",
        record.id, ntype.value,
        ", ".join(f"{ch.value}={o.status.value}" for ch, o in result.channels.items()),
    )
    return result
