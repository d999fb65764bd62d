"""
rallia.services.notification_service — Notification Persistence & Dispatch
===========================================================================

SQLAlchemy implementations of the notification, attempt and contact
repositories, plus the service entry points the API and retry workers call.

Concurrency relies on two unique constraints:

* ``notification.dedup_key`` — insert-or-get runs inside a SAVEPOINT; on
  ``IntegrityError`` the row that won the race is re-read and reused.
* ``delivery_attempt(notification_id, channel, attempt_number)`` — the
  number is ``count + 1`` computed in the inserting transaction; a collision
  triggers one recount-and-retry.

Each repository call opens its own short :class:`Session`, so every attempt
row is committed before the next channel is tried.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime

from sqlalchemy import Engine, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rallia.database.models import (
    DeliveryAttempt,
    DeliveryChannel,
    DeliveryStatus,
    Notification,
    NotificationPriority,
    UserContact,
)
from rallia.engine.cache import ConfigCache
from rallia.engine.dispatch import (
    AttemptRecord,
    ContactInfo,
    DispatchResult,
    NotificationInput,
    NotificationRecord,
    dispatch,
    idempotency_key,
)
from rallia.engine.events import as_utc
from rallia.engine.repositories import ChannelSender
from rallia.services.preference_service import (
    SqlOrganizationPreferenceRepository,
    SqlPreferenceRepository,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------
def _utc(value: datetime | None) -> datetime | None:
    return as_utc(value) if value is not None else None


def _to_record(row: Notification) -> NotificationRecord:
    return NotificationRecord(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        title=row.title,
        body=row.body,
        payload=dict(row.payload or {}),
        priority=row.priority,
        target_id=row.target_id,
        dedup_key=row.dedup_key,
        created_at=_utc(row.created_at),
        read_at=_utc(row.read_at),
        expires_at=_utc(row.expires_at),
        scheduled_at=_utc(row.scheduled_at),
    )


def _to_attempt(row: DeliveryAttempt) -> AttemptRecord:
    return AttemptRecord(
        id=row.id,
        notification_id=row.notification_id,
        invitation_id=row.invitation_id,
        channel=DeliveryChannel(row.channel),
        status=DeliveryStatus(row.status),
        attempt_number=row.attempt_number,
        error_message=row.error_message,
        provider_response=row.provider_response,
        created_at=row.created_at,
    )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------
class SqlNotificationRepository:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def find_by_dedup_key(self, dedup_key: str) -> NotificationRecord | None:
        with Session(self._engine) as session:
            row = session.scalar(select(Notification).where(Notification.dedup_key == dedup_key))
            return _to_record(row) if row is not None else None

    def find_by_idempotency_key(
        self, notification_type: str, target_id: str | None, user_id: str
    ) -> NotificationRecord | None:
        return self.find_by_dedup_key(idempotency_key(notification_type, target_id, user_id))

    def get(self, notification_id: int) -> NotificationRecord | None:
        with Session(self._engine) as session:
            row = session.get(Notification, notification_id)
            return _to_record(row) if row is not None else None

    def create_notification(
        self, notification: NotificationInput
    ) -> tuple[NotificationRecord, bool]:
        key = notification.idempotency_key
        with Session(self._engine, expire_on_commit=False) as session:
            existing = session.scalar(select(Notification).where(Notification.dedup_key == key))
            if existing is not None:
                return _to_record(existing), False

            row = Notification(
                user_id=notification.user_id,
                type=notification.type,
                target_id=notification.target_id,
                dedup_key=key,
                title=notification.title,
                body=notification.body,
                payload=notification.payload or None,
                priority=notification.priority.value,
                expires_at=notification.expires_at,
                scheduled_at=notification.scheduled_at,
            )
            try:
                with session.begin_nested():   # SAVEPOINT
                    session.add(row)
                    session.flush()
            except IntegrityError:
                # Lost the race; the winner's row is committed and visible now.
                winner = session.scalar(select(Notification).where(Notification.dedup_key == key))
                session.commit()
                if winner is None:
                    raise
                return _to_record(winner), False

            session.commit()
            session.refresh(row)
            return _to_record(row), True

    def mark_read(
        self, notification_id: int, *, now: datetime | None = None
    ) -> NotificationRecord | None:
        with Session(self._engine, expire_on_commit=False) as session:
            row = session.get(Notification, notification_id)
            if row is None:
                return None
            if row.read_at is None:
                row.read_at = now or datetime.now(UTC)
                session.commit()
            return _to_record(row)


# ---------------------------------------------------------------------------
# Delivery attempts
# ---------------------------------------------------------------------------
class SqlAttemptRepository:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @staticmethod
    def _count(session: Session, notification_id: int, channel: str) -> int:
        return session.scalar(
            select(func.count()).select_from(DeliveryAttempt).where(
                DeliveryAttempt.notification_id == notification_id,
                DeliveryAttempt.channel == channel,
            )
        ) or 0

    def count_attempts(self, notification_id: int, channel: DeliveryChannel) -> int:
        with Session(self._engine) as session:
            return self._count(session, notification_id, channel.value)

    def statuses(self, notification_id: int, channel: DeliveryChannel) -> list[DeliveryStatus]:
        with Session(self._engine) as session:
            rows = session.scalars(
                select(DeliveryAttempt.status)
                .where(
                    DeliveryAttempt.notification_id == notification_id,
                    DeliveryAttempt.channel == channel.value,
                )
                .order_by(DeliveryAttempt.attempt_number)
            ).all()
        return [DeliveryStatus(s) for s in rows]

    def list_attempts(self, notification_id: int) -> list[AttemptRecord]:
        with Session(self._engine) as session:
            rows = session.scalars(
                select(DeliveryAttempt)
                .where(DeliveryAttempt.notification_id == notification_id)
                .order_by(DeliveryAttempt.channel, DeliveryAttempt.attempt_number)
            ).all()
            return [_to_attempt(r) for r in rows]

    @classmethod
    def _insert(cls, session: Session, attempt: AttemptRecord, channel: str) -> DeliveryAttempt:
        row = DeliveryAttempt(
            notification_id=attempt.notification_id,
            invitation_id=attempt.invitation_id,
            channel=channel,
            attempt_number=cls._count(session, attempt.notification_id, channel) + 1,
            status=DeliveryStatus(attempt.status).value,
            error_message=attempt.error_message,
            provider_response=attempt.provider_response or None,
        )
        with session.begin_nested():   # SAVEPOINT
            session.add(row)
            session.flush()
        return row

    def append_attempt(self, attempt: AttemptRecord) -> AttemptRecord:
        channel = DeliveryChannel(attempt.channel).value
        with Session(self._engine, expire_on_commit=False) as session:
            try:
                row = self._insert(session, attempt, channel)
            except IntegrityError:
                logger.warning(
                    "Attempt number for notification %s/%s taken concurrently; recounting",
                    attempt.notification_id, channel,
                )
                row = self._insert(session, attempt, channel)
            session.commit()
            return _to_attempt(row)


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------
class SqlContactRepository:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def load_contact(self, user_id: str) -> ContactInfo | None:
        with Session(self._engine) as session:
            row = session.get(UserContact, user_id)
            return None if row is None else _to_contact(row)


def _to_contact(row: UserContact) -> ContactInfo:
    return ContactInfo(
        email=row.email,
        phone=row.phone,
        phone_verified=bool(row.phone_verified),
        push_token=row.push_token,
        push_enabled=bool(row.push_enabled),
    )


_CONTACT_FIELDS = ("email", "phone", "phone_verified", "push_token", "push_enabled")


def upsert_contact(engine: Engine, user_id: str, **fields) -> ContactInfo:
    """Create or update a user's delivery addresses.

    Only the given fields change; pass ``None`` to clear one.  A new phone
    number is unverified unless ``phone_verified`` is passed with it.
    """
    unknown = set(fields) - set(_CONTACT_FIELDS)
    if unknown:
        raise TypeError(f"Unknown contact fields: {sorted(unknown)}")

    with Session(engine, expire_on_commit=False) as session:
        row = session.get(UserContact, user_id)
        if row is None:
            row = UserContact(user_id=user_id, phone_verified=False, push_enabled=True)
            session.add(row)
        if "phone" in fields and fields["phone"] != row.phone:
            fields.setdefault("phone_verified", False)
        for name, value in fields.items():
            setattr(row, name, value)
        session.commit()
        return _to_contact(row)


# ---------------------------------------------------------------------------
# Dispatch entry points
# ---------------------------------------------------------------------------
def dispatch_notification(
    engine: Engine,
    cache: ConfigCache,
    notification: NotificationInput,
    senders: Mapping[DeliveryChannel, ChannelSender],
    *,
    now: datetime | None = None,
    reresolve_preferences: bool = True,
) -> DispatchResult:
    """Create-or-reuse *notification* and deliver it on every enabled channel."""
    return dispatch(
        notification,
        senders,
        notifications=SqlNotificationRepository(engine),
        attempts=SqlAttemptRepository(engine),
        preferences=SqlPreferenceRepository(engine),
        contacts=SqlContactRepository(engine),
        org_preferences=SqlOrganizationPreferenceRepository(engine),
        now=now,
        reresolve_preferences=reresolve_preferences,
        max_attempts=cache.max_attempts(),
    )


def _as_input(record: NotificationRecord) -> NotificationInput:
    return NotificationInput(
        user_id=record.user_id,
        type=record.type,
        title=record.title,
        body=record.body,
        payload=record.payload,
        priority=NotificationPriority(record.priority),
        target_id=record.target_id,
        scheduled_at=record.scheduled_at,
        expires_at=record.expires_at,
        dedup_key=record.dedup_key,
    )


def redispatch(
    engine: Engine,
    cache: ConfigCache,
    notification_id: int,
    senders: Mapping[DeliveryChannel, ChannelSender],
    *,
    now: datetime | None = None,
    reresolve_preferences: bool = True,
) -> DispatchResult | None:
    """Retry an existing notification.  Returns ``None`` if it does not exist."""
    record = SqlNotificationRepository(engine).get(notification_id)
    if record is None:
        return None
    return dispatch_notification(
        engine, cache, _as_input(record), senders,
        now=now, reresolve_preferences=reresolve_preferences,
    )


def dispatch_due(
    engine: Engine,
    cache: ConfigCache,
    senders: Mapping[DeliveryChannel, ChannelSender],
    *,
    now: datetime | None = None,
    limit: int = 100,
) -> list[DispatchResult]:
    """Deliver scheduled notifications whose time has come.

    Picks unexpired notifications with ``scheduled_at <= now`` that have no
    delivery attempts yet.  One failing notification does not stop the others.
    """
    now = as_utc(now or datetime.now(UTC))
    with Session(engine) as session:
        ids = session.scalars(
            select(Notification.id)
            .where(
                Notification.scheduled_at.is_not(None),
                Notification.scheduled_at <= now,
                or_(Notification.expires_at.is_(None), Notification.expires_at > now),
                ~Notification.attempts.any(),
            )
            .order_by(Notification.scheduled_at, Notification.id)
            .limit(limit)
        ).all()

    results: list[DispatchResult] = []
    for notification_id in ids:
        try:
            result = redispatch(engine, cache, notification_id, senders, now=now)
        except Exception:
            logger.exception("Scheduled dispatch failed for notification %s", notification_id)
            continue
        if result is not None:
            results.append(result)

    if results:
        logger.info("Dispatched %d scheduled notifications", len(results))
    return results


# ---------------------------------------------------------------------------
# Read state
# ---------------------------------------------------------------------------
def mark_read(
    engine: Engine, notification_id: int, user_id: str, *, now: datetime | None = None
) -> NotificationRecord | None:
    """Mark a notification read for its owner.

    Idempotent: ``read_at`` keeps its first value.  Returns ``None`` when the
    notification does not exist or belongs to someone else.
    """
    repo = SqlNotificationRepository(engine)
    record = repo.get(notification_id)
    if record is None or record.user_id != user_id:
        return None
    return repo.mark_read(notification_id, now=now)


def _visible(user_id: str, now: datetime):
    return (
        Notification.user_id == user_id,
        or_(Notification.expires_at.is_(None), Notification.expires_at > now),
    )


def unread_count(engine: Engine, user_id: str, *, now: datetime | None = None) -> int:
    now = as_utc(now or datetime.now(UTC))
    with Session(engine) as session:
        return session.scalar(
            select(func.count()).select_from(Notification).where(
                *_visible(user_id, now), Notification.read_at.is_(None)
            )
        ) or 0


def list_notifications(
    engine: Engine,
    user_id: str,
    *,
    now: datetime | None = None,
    unread_only: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> list[NotificationRecord]:
    """Newest-first notifications for *user_id*, excluding expired ones."""
    now = as_utc(now or datetime.now(UTC))
    stmt = select(Notification).where(*_visible(user_id, now))
    if unread_only:
        stmt = stmt.where(Notification.read_at.is_(None))
    stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
    with Session(engine) as session:
        rows = session.scalars(stmt.offset(offset).limit(limit)).all()
        return [_to_record(r) for r in rows]
