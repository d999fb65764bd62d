"""
tests/test_reputation_engine.py — Unit Tests for the Scoring Pipeline
======================================================================

Tests the pure calculation pipeline (no I/O, no database).
"""

from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta

import pytest

from rallia.database.models import ReputationEventType, ReputationTier
from rallia.engine.events import ReputationConfig, ReputationEvent
from rallia.engine.reputation import (
    DEFAULT_TIER_THRESHOLDS,
    clamp_impact,
    classify_tier,
    compute_score,
    decay_factor,
    default_summary,
    effective_impact,
    normalize_thresholds,
    review_event_type,
)
from rallia.errors import ValidationError

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def flat_configs():
    """Rules without clamps or decay."""
    return {
        "match_completed": ReputationConfig("match_completed", default_impact=5),
        "match_no_show": ReputationConfig("match_no_show", default_impact=-10),
        "match_on_time": ReputationConfig("match_on_time", default_impact=2),
    }


@pytest.fixture
def decaying_config():
    return ReputationConfig(
        "review_received_5star",
        default_impact=20,
        decay_enabled=True,
        decay_half_life_days=30,
    )


def _event(
    event_id: int,
    event_type: str = "match_completed",
    *,
    days_ago: float = 0,
    base_impact: float | None = None,
    player_id: str = "player-1",
) -> ReputationEvent:
    return ReputationEvent(
        id=event_id,
        player_id=player_id,
        event_type=event_type,
        occurred_at=NOW - timedelta(days=days_ago),
        base_impact=base_impact,
    )


# ===========================================================================
# Determinism
# ===========================================================================
class TestDeterminism:
    def test_repeated_calls_are_equal(self, flat_configs):
        events = [_event(i, days_ago=i) for i in range(5)]
        first = compute_score(events, flat_configs, NOW)
        second = compute_score(events, flat_configs, NOW)
        assert first == second

    def test_input_order_does_not_matter(self, flat_configs, decaying_config):
        configs = {**flat_configs, decaying_config.event_type: decaying_config}
        events = [
            _event(1, "match_completed", days_ago=40),
            _event(2, "match_no_show", days_ago=10),
            _event(3, "review_received_5star", days_ago=25),
            _event(4, "match_on_time", days_ago=10),
        ]
        shuffled = events[:]
        random.Random(7).shuffle(shuffled)
        assert compute_score(events, configs, NOW) == compute_score(shuffled, configs, NOW)

    def test_timestamps_come_from_now(self, flat_configs):
        summary = compute_score([_event(1)], flat_configs, NOW)
        assert summary.calculated_at == NOW
        assert summary.last_decay_calculation == NOW

    def test_without_decay_leaves_decay_timestamp_empty(self, flat_configs):
        summary = compute_score([_event(1)], flat_configs, NOW, apply_decay=False)
        assert summary.last_decay_calculation is None


# ===========================================================================
# Decay
# ===========================================================================
class TestDecay:
    def test_half_life_ratios(self, decaying_config):
        configs = {decaying_config.event_type: decaying_config}
        occurred = NOW
        event = ReputationEvent(1, "p", "review_received_5star", occurred_at=occurred)

        at_zero = compute_score([event], configs, occurred).score
        at_one = compute_score([event], configs, occurred + timedelta(days=30)).score
        at_two = compute_score([event], configs, occurred + timedelta(days=60)).score

        assert at_zero > at_one > at_two
        assert at_one / at_zero == pytest.approx(0.5)
        assert at_two / at_one == pytest.approx(0.5)

    def test_future_dated_event_keeps_full_weight(self, decaying_config):
        event = _event(1, "review_received_5star", days_ago=-3)
        raw, contribution = effective_impact(event, decaying_config, NOW)
        assert raw == contribution == 20

    def test_decay_disabled_ignores_half_life(self):
        config = ReputationConfig(
            "match_completed", default_impact=10, decay_enabled=False, decay_half_life_days=1
        )
        _, contribution = effective_impact(_event(1, days_ago=100), config, NOW)
        assert contribution == 10

    def test_apply_decay_false_scores_full_weight(self, decaying_config):
        configs = {decaying_config.event_type: decaying_config}
        event = _event(1, "review_received_5star", days_ago=300)
        assert compute_score([event], configs, NOW, apply_decay=False).score == 20

    def test_decay_factor_at_zero_age(self):
        assert decay_factor(0, 180) == 1.0


# ===========================================================================
# Clamping
# ===========================================================================
class TestClamping:
    @pytest.fixture
    def bounded(self):
        return ReputationConfig("match_completed", default_impact=25, min_impact=20, max_impact=30)

    def test_above_max_contributes_max(self, bounded):
        summary = compute_score(
            [_event(1, base_impact=1000)], {"match_completed": bounded}, NOW
        )
        assert summary.score == 30

    def test_below_min_contributes_min(self, bounded):
        summary = compute_score(
            [_event(1, base_impact=-1000)], {"match_completed": bounded}, NOW
        )
        assert summary.score == 20

    def test_open_bounds_pass_through(self):
        config = ReputationConfig("match_completed", default_impact=5)
        assert clamp_impact(999, config) == 999
        assert clamp_impact(-999, config) == -999

    def test_default_impact_used_when_base_missing(self, bounded):
        raw, _ = effective_impact(_event(1), bounded, NOW)
        assert raw == 25


# ===========================================================================
# Visibility & tiers
# ===========================================================================
class TestVisibility:
    def test_one_below_floor_is_private(self, flat_configs):
        summary = compute_score(
            [_event(i) for i in range(2)], flat_configs, NOW, min_events_for_public=3
        )
        assert summary.is_public is False
        assert summary.tier == ReputationTier.UNKNOWN

    def test_at_floor_is_public(self, flat_configs):
        summary = compute_score(
            [_event(i) for i in range(3)], flat_configs, NOW, min_events_for_public=3
        )
        assert summary.is_public is True
        assert summary.tier != ReputationTier.UNKNOWN

    @pytest.mark.parametrize("event_type", ["match_completed", "match_no_show"])
    def test_below_floor_unknown_regardless_of_sign(self, flat_configs, event_type):
        events = [_event(i, event_type) for i in range(3)]
        summary = compute_score(events, flat_configs, NOW, min_events_for_public=5)
        assert summary.is_public is False
        assert summary.tier == ReputationTier.UNKNOWN

    @pytest.mark.parametrize(
        ("score", "expected"),
        [
            (-40, ReputationTier.BRONZE),
            (0, ReputationTier.BRONZE),
            (59.9, ReputationTier.BRONZE),
            (60, ReputationTier.SILVER),
            (75, ReputationTier.GOLD),
            (89.99, ReputationTier.GOLD),
            (90, ReputationTier.PLATINUM),
            (500, ReputationTier.PLATINUM),
        ],
    )
    def test_tier_bands(self, score, expected):
        assert classify_tier(score, total_events=10) == expected

    def test_custom_thresholds(self):
        thresholds = [("bronze", 0), ("gold", 10)]
        assert classify_tier(12, 3, 3, thresholds) == ReputationTier.GOLD

    def test_non_ascending_thresholds_rejected(self):
        with pytest.raises(ValidationError):
            normalize_thresholds([("silver", 60), ("bronze", 0)])

    def test_duplicate_tier_rejected(self):
        with pytest.raises(ValidationError):
            normalize_thresholds([("bronze", 0), ("bronze", 10)])

    def test_unknown_tier_name_rejected(self):
        with pytest.raises(ValidationError):
            normalize_thresholds([("diamond", 0)])

    def test_defaults_are_valid(self):
        assert normalize_thresholds(DEFAULT_TIER_THRESHOLDS) == DEFAULT_TIER_THRESHOLDS


# ===========================================================================
# Aggregation
# ===========================================================================
class TestAggregation:
    def test_completed_and_no_show_net_out(self, flat_configs):
        events = [_event(1, "match_completed"), _event(2, "match_no_show")]
        summary = compute_score(events, flat_configs, NOW)
        assert summary.score == -5
        assert summary.positive_events == 1
        assert summary.negative_events == 1
        assert summary.total_events == 2
        assert summary.matches_completed == 1

    def test_score_is_not_clamped(self, flat_configs):
        events = [_event(i, "match_no_show") for i in range(50)]
        assert compute_score(events, flat_configs, NOW).score == -500

    def test_missing_config_scores_zero_and_is_not_counted(self, flat_configs):
        events = [_event(1), _event(2, "warning_issued")]
        summary = compute_score(events, flat_configs, NOW)
        assert summary.total_events == 1
        assert summary.score == 5

    def test_inactive_config_is_skipped(self):
        configs = {
            "match_completed": ReputationConfig("match_completed", 5, is_active=False),
        }
        summary = compute_score([_event(1)], configs, NOW)
        assert summary.total_events == 0
        assert summary.score == 0

    def test_zero_impact_counts_as_neither(self):
        configs = {"report_received": ReputationConfig("report_received", 0)}
        summary = compute_score([_event(1, "report_received")], configs, NOW)
        assert summary.total_events == 1
        assert summary.positive_events == summary.negative_events == 0

    def test_missing_event_type_raises(self, flat_configs):
        with pytest.raises(ValidationError, match="no event_type"):
            compute_score([_event(1, "")], flat_configs, NOW)

    def test_empty_log(self, flat_configs):
        summary = compute_score([], flat_configs, NOW, player_id="p-0")
        assert summary.player_id == "p-0"
        assert summary.score == 0
        assert summary.tier == ReputationTier.UNKNOWN

    def test_default_summary(self):
        summary = default_summary("p-9", NOW)
        assert summary.score == 0
        assert summary.is_public is False
        assert summary.to_dict()["tier"] == "unknown"


# ===========================================================================
# Review mapping
# ===========================================================================
class TestReviewEventType:
    @pytest.mark.parametrize(
        ("rating", "expected"),
        [
            (5, ReputationEventType.REVIEW_RECEIVED_5STAR),
            (4.5, ReputationEventType.REVIEW_RECEIVED_5STAR),
            (4.4, ReputationEventType.REVIEW_RECEIVED_4STAR),
            (2.5, ReputationEventType.REVIEW_RECEIVED_3STAR),
            (1, ReputationEventType.REVIEW_RECEIVED_1STAR),
            (0, ReputationEventType.REVIEW_RECEIVED_1STAR),
            (9, ReputationEventType.REVIEW_RECEIVED_5STAR),
        ],
    )
    def test_rounding_and_clamping(self, rating, expected):
        assert review_event_type(rating) == expected
