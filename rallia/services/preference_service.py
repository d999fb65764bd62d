"""
rallia.services.preference_service — Notification Preference Storage
=====================================================================

Sparse explicit rows on top of the default matrix.  Resetting a preference
deletes its row, which hands the decision back to the matrix; it never
writes the default value explicitly.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from rallia.database.models import (
    DeliveryChannel,
    NotificationPreference,
    NotificationType,
    OrganizationNotificationPreference,
)
from rallia.engine.preferences import (
    ResolvedPreference,
    coerce_channel,
    coerce_notification_type,
    resolve_grid,
)
from rallia.errors import ValidationError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------
class SqlPreferenceRepository:
    """Per-user preference rows as a :class:`PreferenceRepository`."""

    model = NotificationPreference
    subject_column = "user_id"

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _match(self, subject_id: str, notification_type: str, channel: str):
        return (
            getattr(self.model, self.subject_column) == subject_id,
            self.model.notification_type == notification_type,
            self.model.channel == channel,
        )

    def load_preference(
        self, subject_id: str, notification_type: NotificationType, channel: DeliveryChannel
    ) -> bool | None:
        with Session(self._engine) as session:
            enabled = session.scalar(
                select(self.model.enabled).where(
                    *self._match(subject_id, notification_type.value, channel.value)
                )
            )
        return None if enabled is None else bool(enabled)

    def load_explicit(self, subject_id: str) -> dict[tuple[str, str], bool]:
        """Every explicit row for *subject_id* as ``{(type, channel): enabled}``."""
        with Session(self._engine) as session:
            rows = session.execute(
                select(self.model.notification_type, self.model.channel, self.model.enabled)
                .where(getattr(self.model, self.subject_column) == subject_id)
            ).all()
        return {(r.notification_type, r.channel): bool(r.enabled) for r in rows}

    def _upsert(
        self,
        session: Session,
        subject_id: str,
        notification_type: str,
        channel: str,
        enabled: bool,
    ) -> None:
        row = session.scalar(
            select(self.model).where(*self._match(subject_id, notification_type, channel))
        )
        if row is None:
            session.add(self.model(**{
                self.subject_column: subject_id,
                "notification_type": notification_type,
                "channel": channel,
                "enabled": enabled,
            }))
        else:
            row.enabled = enabled

    def set_preference(
        self,
        subject_id: str,
        notification_type: NotificationType,
        channel: DeliveryChannel,
        enabled: bool,
    ) -> None:
        with Session(self._engine) as session:
            self._upsert(session, subject_id, notification_type.value, channel.value, enabled)
            session.commit()

    def set_many(
        self, subject_id: str, items: list[tuple[NotificationType, DeliveryChannel, bool]]
    ) -> int:
        with Session(self._engine) as session:
            for ntype, channel, enabled in items:
                self._upsert(session, subject_id, ntype.value, channel.value, enabled)
            session.commit()
        return len(items)

    def delete(
        self,
        subject_id: str,
        notification_type: NotificationType | None = None,
        channel: DeliveryChannel | None = None,
    ) -> int:
        stmt = delete(self.model).where(getattr(self.model, self.subject_column) == subject_id)
        if notification_type is not None:
            stmt = stmt.where(self.model.notification_type == notification_type.value)
        if channel is not None:
            stmt = stmt.where(self.model.channel == channel.value)
        with Session(self._engine) as session:
            deleted = session.execute(stmt).rowcount
            session.commit()
        return deleted or 0


class SqlOrganizationPreferenceRepository(SqlPreferenceRepository):
    """Per-organisation preference rows; same cascade, different subject."""

    model = OrganizationNotificationPreference
    subject_column = "organization_id"


# ---------------------------------------------------------------------------
# Service functions
# ---------------------------------------------------------------------------
def _coerce_item(item) -> tuple[NotificationType, DeliveryChannel, bool]:
    if isinstance(item, dict):
        try:
            ntype, channel, enabled = item["notification_type"], item["channel"], item["enabled"]
        except KeyError as exc:
            raise ValidationError(f"Preference entry is missing {exc.args[0]!r}") from exc
    else:
        try:
            ntype, channel, enabled = item
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid preference entry {item!r}") from exc
    if not isinstance(enabled, bool):
        raise ValidationError(f"'enabled' must be a boolean, got {enabled!r}")
    return coerce_notification_type(ntype), coerce_channel(channel), enabled


def set_preference(
    engine: Engine, user_id: str, notification_type: str, channel: str, enabled: bool
) -> None:
    """Write one explicit preference (insert or update)."""
    ntype, ch, enabled = _coerce_item((notification_type, channel, enabled))
    SqlPreferenceRepository(engine).set_preference(user_id, ntype, ch, enabled)
    logger.info("Preference %s/%s=%s for user %s", ntype.value, ch.value, enabled, user_id)


def set_preferences(engine: Engine, user_id: str, items: Iterable) -> int:
    """Bulk upsert.  *items* are dicts or ``(type, channel, enabled)`` tuples.

    Every entry is validated before anything is written.  Returns rows touched.
    """
    coerced = [_coerce_item(i) for i in items]
    count = SqlPreferenceRepository(engine).set_many(user_id, coerced)
    logger.info("Updated %d preferences for user %s", count, user_id)
    return count


def reset_preference(engine: Engine, user_id: str, notification_type: str, channel: str) -> bool:
    """Drop the explicit row so the default matrix applies again."""
    ntype = coerce_notification_type(notification_type)
    ch = coerce_channel(channel)
    return SqlPreferenceRepository(engine).delete(user_id, ntype, ch) > 0


def reset_all_preferences(engine: Engine, user_id: str) -> int:
    deleted = SqlPreferenceRepository(engine).delete(user_id)
    logger.info("Reset %d preferences for user %s", deleted, user_id)
    return deleted


def get_resolved_preferences(engine: Engine, user_id: str) -> list[ResolvedPreference]:
    """Full type × channel grid with the source of each value."""
    return resolve_grid(SqlPreferenceRepository(engine).load_explicit(user_id))


def set_organization_preference(
    engine: Engine, organization_id: str, notification_type: str, channel: str, enabled: bool
) -> None:
    ntype, ch, enabled = _coerce_item((notification_type, channel, enabled))
    SqlOrganizationPreferenceRepository(engine).set_preference(organization_id, ntype, ch, enabled)


def get_resolved_organization_preferences(
    engine: Engine, organization_id: str
) -> list[ResolvedPreference]:
    return resolve_grid(SqlOrganizationPreferenceRepository(engine).load_explicit(organization_id))
