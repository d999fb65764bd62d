"""
tests/test_preferences.py — Preference Cascade Tests
=====================================================

The cascade is exercised against an in-memory repository, exhaustively over
every notification type and channel.
"""

from __future__ import annotations

import itertools

import pytest

from rallia.database.models import DeliveryChannel, NotificationCategory, NotificationType
from rallia.engine.preferences import (
    CHANNELS,
    DEFAULT_PREFERENCE_MATRIX,
    NOTIFICATION_CATEGORIES,
    _assert_total,
    category_for,
    resolve_channels,
    resolve_grid,
)
from rallia.errors import ValidationError


class DictPreferences:
    """In-memory PreferenceRepository."""

    def __init__(self, rows: dict | None = None) -> None:
        self.rows: dict[tuple[str, str, str], bool] = dict(rows or {})
        self.lookups = 0

    def load_preference(self, subject_id, notification_type, channel):
        self.lookups += 1
        return self.rows.get((subject_id, notification_type.value, channel.value))

    def set_preference(self, subject_id, notification_type, channel, enabled):
        self.rows[(subject_id, notification_type.value, channel.value)] = enabled


ALL_PAIRS = list(itertools.product(NotificationType, DeliveryChannel))


# ===========================================================================
# Total function
# ===========================================================================
class TestResolveChannels:
    @pytest.mark.parametrize("ntype", list(NotificationType))
    def test_defaults_cover_every_channel(self, ntype):
        resolved = resolve_channels("u1", ntype.value, DictPreferences())
        assert list(resolved) == list(CHANNELS)
        assert resolved == DEFAULT_PREFERENCE_MATRIX[ntype]

    @pytest.mark.parametrize(("ntype", "channel"), ALL_PAIRS)
    def test_explicit_row_overrides_default(self, ntype, channel):
        default = DEFAULT_PREFERENCE_MATRIX[ntype][channel]
        prefs = DictPreferences({("u1", ntype.value, channel.value): not default})

        resolved = resolve_channels("u1", ntype.value, prefs)

        assert resolved[channel] is (not default)
        for other in CHANNELS:
            if other != channel:
                assert resolved[other] is DEFAULT_PREFERENCE_MATRIX[ntype][other]

    def test_explicit_false_is_not_treated_as_absent(self):
        prefs = DictPreferences({("u1", "match_cancelled", "email"): False})
        assert resolve_channels("u1", "match_cancelled", prefs)[DeliveryChannel.EMAIL] is False

    def test_other_users_rows_are_ignored(self):
        prefs = DictPreferences({("u2", "match_cancelled", "sms"): False})
        assert resolve_channels("u1", "match_cancelled", prefs)[DeliveryChannel.SMS] is True

    def test_unknown_type_raises(self):
        with pytest.raises(ValidationError, match="Unknown notification type"):
            resolve_channels("u1", "carrier_pigeon", DictPreferences())

    def test_matrix_gap_raises(self):
        partial = {NotificationType.CHAT: DEFAULT_PREFERENCE_MATRIX[NotificationType.CHAT]}
        with pytest.raises(ValidationError, match="No default preferences"):
            resolve_channels("u1", "match_cancelled", DictPreferences(), partial)

    def test_every_call_is_a_live_lookup(self):
        prefs = DictPreferences()
        resolve_channels("u1", "chat", prefs)
        prefs.set_preference("u1", NotificationType.CHAT, DeliveryChannel.PUSH, False)
        assert resolve_channels("u1", "chat", prefs)[DeliveryChannel.PUSH] is False
        assert prefs.lookups == 6


# ===========================================================================
# Matrix integrity
# ===========================================================================
class TestDefaultMatrix:
    def test_matrix_is_total(self):
        assert {(t, c) for t in DEFAULT_PREFERENCE_MATRIX for c in DEFAULT_PREFERENCE_MATRIX[t]} \
            == set(ALL_PAIRS)

    def test_assert_total_detects_gap(self):
        broken = dict(DEFAULT_PREFERENCE_MATRIX)
        broken.pop(NotificationType.CHAT)
        with pytest.raises(RuntimeError, match="chat"):
            _assert_total(broken, NOTIFICATION_CATEGORIES)

    def test_match_cancelled_enables_all_channels(self):
        assert all(DEFAULT_PREFERENCE_MATRIX[NotificationType.MATCH_CANCELLED].values())

    def test_categories(self):
        assert category_for("booking_created") == NotificationCategory.ORGANIZATION
        assert category_for("chat") == NotificationCategory.SOCIAL


# ===========================================================================
# Grid view
# ===========================================================================
class TestResolveGrid:
    def test_grid_marks_sources(self):
        grid = resolve_grid({("chat", "email"): True})
        assert len(grid) == len(ALL_PAIRS)

        by_key = {(p.notification_type.value, p.channel.value): p for p in grid}
        assert by_key[("chat", "email")].enabled is True
        assert by_key[("chat", "email")].source == "explicit"
        assert by_key[("chat", "push")].source == "default"

    def test_stale_rows_are_ignored(self):
        grid = resolve_grid({("retired_type", "email"): True})
        assert all(p.source == "default" for p in grid)
