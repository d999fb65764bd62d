"""
tests/test_notification_service.py — Notification Service Integration Tests
============================================================================

Exercises the SQLAlchemy repositories, dispatch entry points, inbox reads
and preference services against in-memory SQLite.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rallia.database.models import (
    DeliveryAttempt,
    DeliveryChannel,
    DeliveryStatus,
    Notification,
    NotificationPreference,
)
from rallia.engine.dispatch import AttemptRecord, NotificationInput, SendResult
from rallia.errors import ValidationError
from rallia.services.notification_service import (
    SqlAttemptRepository,
    SqlNotificationRepository,
    dispatch_due,
    dispatch_notification,
    list_notifications,
    mark_read,
    redispatch,
    unread_count,
    upsert_contact,
)
from rallia.services.preference_service import (
    get_resolved_organization_preferences,
    get_resolved_preferences,
    reset_all_preferences,
    reset_preference,
    set_organization_preference,
    set_preference,
    set_preferences,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
EMAIL, PUSH, SMS = DeliveryChannel.EMAIL, DeliveryChannel.PUSH, DeliveryChannel.SMS


class RecordingSender:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = []

    def send(self, channel, recipient, payload):
        self.calls.append(recipient)
        if self.fail:
            return SendResult(success=False, error_message="provider down")
        return SendResult(success=True, provider_response={"id": "abc"})


@pytest.fixture
def senders():
    return {EMAIL: RecordingSender(), PUSH: RecordingSender(), SMS: RecordingSender()}


@pytest.fixture
def contact(seeded_engine):
    return upsert_contact(
        seeded_engine, "u1",
        email="ana@example.com",
        phone="+15145550100",
        phone_verified=True,
        push_token="ExponentPushToken[abc]",
        push_enabled=True,
    )


def _cancelled(**overrides) -> NotificationInput:
    fields = dict(user_id="u1", type="match_cancelled", title="Match cancelled",
                  target_id="match-42")
    fields.update(overrides)
    return NotificationInput(**fields)


def _count(engine, model) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(model))


# ===========================================================================
# Dispatch end to end
# ===========================================================================
class TestDispatchNotification:
    def test_sms_opt_out_scenario(self, seeded_engine, config_cache, senders, contact):
        set_preference(seeded_engine, "u1", "match_cancelled", "sms", False)

        result = dispatch_notification(
            seeded_engine, config_cache, _cancelled(), senders, now=NOW
        )

        assert result.created is True
        assert result.channels[EMAIL].status == DeliveryStatus.SUCCESS
        assert result.channels[PUSH].status == DeliveryStatus.SUCCESS
        assert result.channels[SMS].status == DeliveryStatus.SKIPPED_PREFERENCE
        attempts = SqlAttemptRepository(seeded_engine).list_attempts(result.notification_id)
        assert len(attempts) == 3
        assert all(a.attempt_number == 1 for a in attempts)

    def test_redispatch_creates_one_row(self, seeded_engine, config_cache, senders, contact):
        first = dispatch_notification(seeded_engine, config_cache, _cancelled(), senders, now=NOW)
        second = dispatch_notification(seeded_engine, config_cache, _cancelled(), senders, now=NOW)

        assert second.notification_id == first.notification_id
        assert second.created is False
        assert _count(seeded_engine, Notification) == 1
        assert len(senders[EMAIL].calls) == 1

    def test_failures_number_attempts(self, seeded_engine, config_cache, senders, contact):
        senders[SMS] = RecordingSender(fail=True)
        for _ in range(3):
            result = dispatch_notification(
                seeded_engine, config_cache, _cancelled(), senders, now=NOW
            )
        assert result.channels[SMS].attempt_number == 3
        statuses = SqlAttemptRepository(seeded_engine).statuses(result.notification_id, SMS)
        assert statuses == [DeliveryStatus.FAILED] * 3

    def test_missing_contact_recorded(self, seeded_engine, config_cache, senders):
        result = dispatch_notification(seeded_engine, config_cache, _cancelled(), senders, now=NOW)
        assert {o.status for o in result.channels.values()} == {
            DeliveryStatus.SKIPPED_MISSING_CONTACT
        }
        assert _count(seeded_engine, DeliveryAttempt) == 3

    def test_org_preferences_apply(self, seeded_engine, config_cache, senders, contact):
        set_organization_preference(seeded_engine, "org-7", "booking_created", "email", False)
        result = dispatch_notification(
            seeded_engine, config_cache,
            _cancelled(type="booking_created", target_id="b-1",
                       payload={"organization_id": "org-7"}),
            senders, now=NOW,
        )
        assert result.channels[EMAIL].status == DeliveryStatus.SKIPPED_PREFERENCE

    def test_redispatch_by_id(self, seeded_engine, config_cache, senders, contact):
        senders[PUSH] = RecordingSender(fail=True)
        first = dispatch_notification(seeded_engine, config_cache, _cancelled(), senders, now=NOW)

        senders[PUSH] = RecordingSender()
        retried = redispatch(seeded_engine, config_cache, first.notification_id, senders, now=NOW)

        assert retried.channels[PUSH].status == DeliveryStatus.SUCCESS
        assert retried.channels[PUSH].attempt_number == 2
        assert redispatch(seeded_engine, config_cache, 9999, senders, now=NOW) is None

    def test_scheduled_notifications_dispatch_when_due(
        self, seeded_engine, config_cache, senders, contact
    ):
        deferred = dispatch_notification(
            seeded_engine, config_cache,
            _cancelled(scheduled_at=NOW + timedelta(hours=1)), senders, now=NOW,
        )
        assert deferred.deferred is True
        assert dispatch_due(seeded_engine, config_cache, senders, now=NOW) == []

        due = dispatch_due(seeded_engine, config_cache, senders, now=NOW + timedelta(hours=2))
        assert [r.notification_id for r in due] == [deferred.notification_id]
        assert due[0].any_success is True

        again = dispatch_due(seeded_engine, config_cache, senders, now=NOW + timedelta(hours=3))
        assert again == []

    def test_expired_scheduled_notification_does_not_block_batch(
        self, seeded_engine, config_cache, senders, contact
    ):
        dispatch_notification(
            seeded_engine, config_cache,
            _cancelled(
                target_id="match-1",
                scheduled_at=NOW + timedelta(hours=1),
                expires_at=NOW + timedelta(hours=2),
            ),
            senders, now=NOW,
        )
        live = dispatch_notification(
            seeded_engine, config_cache,
            _cancelled(target_id="match-2", scheduled_at=NOW + timedelta(hours=4)),
            senders, now=NOW,
        )

        due = dispatch_due(
            seeded_engine, config_cache, senders, now=NOW + timedelta(hours=5), limit=1
        )

        assert [r.notification_id for r in due] == [live.notification_id]
        later = dispatch_due(
            seeded_engine, config_cache, senders, now=NOW + timedelta(hours=6), limit=1
        )
        assert later == []

    def test_unknown_type_rejected(self, seeded_engine, config_cache, senders):
        with pytest.raises(ValidationError):
            dispatch_notification(
                seeded_engine, config_cache, _cancelled(type="nope"), senders, now=NOW
            )
        assert _count(seeded_engine, Notification) == 0


# ===========================================================================
# Repository details
# ===========================================================================
class TestRepositories:
    def test_attempt_numbers_are_per_channel(self, seeded_engine):
        record, _ = SqlNotificationRepository(seeded_engine).create_notification(_cancelled())
        repo = SqlAttemptRepository(seeded_engine)

        numbers = [
            repo.append_attempt(AttemptRecord(record.id, ch, DeliveryStatus.FAILED)).attempt_number
            for ch in (EMAIL, EMAIL, SMS)
        ]

        assert numbers == [1, 2, 1]
        assert repo.count_attempts(record.id, EMAIL) == 2

    def test_create_is_idempotent_on_key(self, seeded_engine):
        repo = SqlNotificationRepository(seeded_engine)
        first, created = repo.create_notification(_cancelled())
        again, created_again = repo.create_notification(_cancelled(title="Different title"))

        assert (created, created_again) == (True, False)
        assert again.id == first.id
        assert again.title == "Match cancelled"
        assert repo.find_by_idempotency_key("match_cancelled", "match-42", "u1").id == first.id

    def test_upsert_contact_updates_only_given_fields(self, seeded_engine, contact):
        updated = upsert_contact(seeded_engine, "u1", phone_verified=False)
        assert updated.phone_verified is False
        assert updated.email == "ana@example.com"

    def test_upsert_contact_rejects_unknown_fields(self, seeded_engine):
        with pytest.raises(TypeError):
            upsert_contact(seeded_engine, "u1", fax="+1")

    def test_new_phone_number_is_unverified(self, seeded_engine, contact):
        updated = upsert_contact(seeded_engine, "u1", phone="+15145559999")
        assert updated.phone == "+15145559999"
        assert updated.phone_verified is False

    def test_same_phone_keeps_verification(self, seeded_engine, contact):
        updated = upsert_contact(seeded_engine, "u1", phone=contact.phone, email=None)
        assert updated.phone_verified is True
        assert updated.email is None

    def test_new_contact_row_defaults(self, seeded_engine):
        created = upsert_contact(seeded_engine, "u2", phone="+15145550100")
        assert created.phone_verified is False
        assert created.push_enabled is True


# ===========================================================================
# Inbox
# ===========================================================================
class TestInbox:
    def _create(self, engine, **overrides):
        record, _ = SqlNotificationRepository(engine).create_notification(_cancelled(**overrides))
        return record

    def test_mark_read_is_owner_only_and_idempotent(self, seeded_engine):
        record = self._create(seeded_engine)

        assert mark_read(seeded_engine, record.id, "intruder", now=NOW) is None
        first = mark_read(seeded_engine, record.id, "u1", now=NOW)
        second = mark_read(seeded_engine, record.id, "u1", now=NOW + timedelta(hours=1))

        assert first.read_at is not None
        assert second.read_at == first.read_at
        assert mark_read(seeded_engine, 9999, "u1", now=NOW) is None

    def test_unread_count_and_list_skip_expired(self, seeded_engine):
        live = self._create(seeded_engine, target_id="m-1")
        self._create(seeded_engine, target_id="m-2", expires_at=NOW - timedelta(minutes=1))
        read = self._create(seeded_engine, target_id="m-3")
        mark_read(seeded_engine, read.id, "u1", now=NOW)

        assert unread_count(seeded_engine, "u1", now=NOW) == 1
        listed = list_notifications(seeded_engine, "u1", now=NOW)
        assert [r.id for r in listed] == [read.id, live.id]
        unread = list_notifications(seeded_engine, "u1", now=NOW, unread_only=True)
        assert [r.id for r in unread] == [live.id]

    def test_list_is_per_user(self, seeded_engine):
        self._create(seeded_engine)
        assert list_notifications(seeded_engine, "u2", now=NOW) == []


# ===========================================================================
# Preferences
# ===========================================================================
class TestPreferenceService:
    def test_set_and_resolve(self, seeded_engine):
        set_preference(seeded_engine, "u1", "chat", "email", True)
        grid = {
            (p.notification_type.value, p.channel.value): p
            for p in get_resolved_preferences(seeded_engine, "u1")
        }
        assert grid[("chat", "email")].enabled is True
        assert grid[("chat", "email")].source == "explicit"
        assert grid[("chat", "sms")].source == "default"

    def test_set_twice_updates_in_place(self, seeded_engine):
        set_preference(seeded_engine, "u1", "chat", "push", False)
        set_preference(seeded_engine, "u1", "chat", "push", True)
        assert _count(seeded_engine, NotificationPreference) == 1

    def test_bulk_accepts_dicts_and_tuples(self, seeded_engine):
        count = set_preferences(seeded_engine, "u1", [
            {"notification_type": "chat", "channel": "email", "enabled": True},
            ("match_cancelled", "sms", False),
        ])
        assert count == 2

    def test_bulk_validates_before_writing(self, seeded_engine):
        with pytest.raises(ValidationError):
            set_preferences(seeded_engine, "u1", [
                ("chat", "email", True),
                ("chat", "pigeon", True),
            ])
        assert _count(seeded_engine, NotificationPreference) == 0

    def test_non_bool_enabled_rejected(self, seeded_engine):
        with pytest.raises(ValidationError):
            set_preference(seeded_engine, "u1", "chat", "email", "yes")

    def test_reset_restores_default(self, seeded_engine):
        set_preference(seeded_engine, "u1", "chat", "push", False)
        assert reset_preference(seeded_engine, "u1", "chat", "push") is True
        assert reset_preference(seeded_engine, "u1", "chat", "push") is False

    def test_reset_all(self, seeded_engine):
        set_preferences(seeded_engine, "u1", [("chat", "push", False), ("chat", "sms", True)])
        set_preference(seeded_engine, "u2", "chat", "push", False)
        assert reset_all_preferences(seeded_engine, "u1") == 2
        assert _count(seeded_engine, NotificationPreference) == 1

    def test_org_grid_is_separate(self, seeded_engine):
        set_organization_preference(seeded_engine, "org-7", "booking_created", "email", False)
        org = get_resolved_organization_preferences(seeded_engine, "org-7")
        user = get_resolved_preferences(seeded_engine, "org-7")
        assert any(p.source == "explicit" for p in org)
        assert all(p.source == "default" for p in user)
