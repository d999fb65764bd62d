"""
rallia.engine.repositories — Storage & Sender Boundaries
=========================================================

Narrow protocols the engines call.  SQLAlchemy implementations live in
:mod:`rallia.services`; tests use in-memory fakes.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from rallia.database.models import DeliveryChannel, DeliveryStatus, NotificationType
    from rallia.engine.dispatch import (
        AttemptRecord,
        ContactInfo,
        NotificationInput,
        NotificationRecord,
        SendResult,
    )
    from rallia.engine.events import ReputationConfig, ReputationEvent
    from rallia.engine.reputation import ReputationSummary


class EventLogRepository(Protocol):
    def load_events(self, player_id: str) -> list[ReputationEvent]: ...

    def append_event(self, event: ReputationEvent) -> ReputationEvent: ...


class ConfigRepository(Protocol):
    def load_reputation_config(self) -> Mapping[str, ReputationConfig]: ...


class SummaryRepository(Protocol):
    def save_summary(self, player_id: str, summary: ReputationSummary) -> None: ...

    def load_summary(self, player_id: str) -> ReputationSummary | None: ...


class PreferenceRepository(Protocol):
    def load_preference(
        self, subject_id: str, notification_type: NotificationType, channel: DeliveryChannel
    ) -> bool | None:
        """Return the explicit setting, or ``None`` when no row exists."""
        ...

    def set_preference(
        self,
        subject_id: str,
        notification_type: NotificationType,
        channel: DeliveryChannel,
        enabled: bool,
    ) -> None: ...


class NotificationRepository(Protocol):
    def find_by_idempotency_key(
        self, notification_type: str, target_id: str | None, user_id: str
    ) -> NotificationRecord | None: ...

    def create_notification(
        self, notification: NotificationInput
    ) -> tuple[NotificationRecord, bool]:
        """Insert-or-get on the idempotency key.  Returns ``(record, created)``."""
        ...

    def mark_read(self, notification_id: int) -> NotificationRecord | None: ...


class AttemptRepository(Protocol):
    def count_attempts(self, notification_id: int, channel: DeliveryChannel) -> int: ...

    def statuses(self, notification_id: int, channel: DeliveryChannel) -> list[DeliveryStatus]:
        """Statuses of every prior attempt, oldest first."""
        ...

    def append_attempt(self, attempt: AttemptRecord) -> AttemptRecord:
        """Persist *attempt*, assigning ``count + 1`` atomically."""
        ...


class ContactRepository(Protocol):
    def load_contact(self, user_id: str) -> ContactInfo | None: ...


class ChannelSender(Protocol):
    """Delivers one message.  ``payload["attempt_number"]`` is a hint; the
    number on the stored attempt is authoritative."""

    def send(self, channel: DeliveryChannel, recipient: str, payload: dict) -> SendResult: ...
