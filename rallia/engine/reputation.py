"""
rallia.engine.reputation — Reputation Scoring Pipeline
=======================================================

Pure calculation, no DB I/O.  The summary is always rebuilt from the full
event log; there is no incremental path.

Per-event pipeline:
  ReputationEvent → Rule lookup → Raw impact → Clamp → Decay → contribution

Aggregate:
  sum(contributions) → score → Tier (bounded, user-facing) + visibility
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import NamedTuple

from rallia.database.models import ReputationEventType, ReputationTier
from rallia.engine.events import ReputationConfig, ReputationEvent, as_utc
from rallia.errors import ValidationError

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_MIN_EVENTS_FOR_PUBLIC",
    "DEFAULT_TIER_THRESHOLDS",
    "ReputationSummary",
    "TierThreshold",
    "clamp_impact",
    "classify_tier",
    "compute_score",
    "decay_factor",
    "default_summary",
    "effective_impact",
    "normalize_thresholds",
    "review_event_type",
]

_SECONDS_PER_DAY = 86_400.0

DEFAULT_MIN_EVENTS_FOR_PUBLIC = 3


class TierThreshold(NamedTuple):
    tier: ReputationTier
    min_score: float


DEFAULT_TIER_THRESHOLDS: tuple[TierThreshold, ...] = (
    TierThreshold(ReputationTier.BRONZE, 0.0),
    TierThreshold(ReputationTier.SILVER, 60.0),
    TierThreshold(ReputationTier.GOLD, 75.0),
    TierThreshold(ReputationTier.PLATINUM, 90.0),
)


# ---------------------------------------------------------------------------
# ReputationSummary — output of the pipeline
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ReputationSummary:
    """Derived, cacheable view of a player's event log."""

    player_id: str
    score: float
    tier: ReputationTier
    total_events: int
    positive_events: int
    negative_events: int
    matches_completed: int
    is_public: bool
    calculated_at: datetime
    last_decay_calculation: datetime | None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["tier"] = self.tier.value
        data["calculated_at"] = self.calculated_at.isoformat()
        data["last_decay_calculation"] = (
            self.last_decay_calculation.isoformat() if self.last_decay_calculation else None
        )
        return data


# ---------------------------------------------------------------------------
# Tier classification
# ---------------------------------------------------------------------------
def normalize_thresholds(
    thresholds: Iterable[tuple[str, float]],
) -> tuple[TierThreshold, ...]:
    """Validate ``(tier, min_score)`` pairs and return them as TierThresholds.

    Pairs must already be sorted by strictly ascending ``min_score``; tier
    names must be real, non-``unknown`` tiers and appear once.
    """
    result: list[TierThreshold] = []
    for pair in thresholds:
        try:
            name, min_score = pair
            tier = ReputationTier(name)
            min_score = float(min_score)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid tier threshold {pair!r}") from exc
        if tier == ReputationTier.UNKNOWN:
            raise ValidationError("'unknown' cannot be used as a score tier")
        if result and min_score <= result[-1].min_score:
            raise ValidationError(
                f"Tier thresholds must be strictly ascending: {tier.value} "
                f"({min_score}) after {result[-1].tier.value} ({result[-1].min_score})"
            )
        if any(t.tier == tier for t in result):
            raise ValidationError(f"Tier {tier.value!r} appears more than once")
        result.append(TierThreshold(tier, min_score))

    if not result:
        raise ValidationError("At least one tier threshold is required")
    return tuple(result)


def classify_tier(
    score: float,
    total_events: int,
    min_events_for_public: int = DEFAULT_MIN_EVENTS_FOR_PUBLIC,
    thresholds: Iterable[tuple[str, float]] = DEFAULT_TIER_THRESHOLDS,
) -> ReputationTier:
    """Map a score to a tier band.

    ``unknown`` below the visibility floor; otherwise the highest tier whose
    ``min_score <= score``, or the lowest tier if the score is below all.
    """
    if total_events < min_events_for_public:
        return ReputationTier.UNKNOWN

    bands = normalize_thresholds(thresholds)
    chosen = bands[0].tier
    for band in bands:
        if band.min_score > score:
            break
        chosen = band.tier
    return chosen


# ---------------------------------------------------------------------------
# Per-event impact
# ---------------------------------------------------------------------------
def clamp_impact(raw: float, config: ReputationConfig) -> float:
    """Clamp into ``[min_impact, max_impact]``; unset bounds are open."""
    if config.min_impact is not None and raw < config.min_impact:
        return float(config.min_impact)
    if config.max_impact is not None and raw > config.max_impact:
        return float(config.max_impact)
    return float(raw)


def decay_factor(age_days: float, half_life_days: float) -> float:
    """Exponential half-life weight.  Future-dated events keep full weight."""
    return 0.5 ** (max(age_days, 0.0) / half_life_days)


def effective_impact(
    event: ReputationEvent,
    config: ReputationConfig,
    now: datetime,
    *,
    apply_decay: bool = True,
) -> tuple[float, float]:
    """Return ``(raw_impact, contribution)`` for one event.

    ``raw_impact`` is the clamped, pre-decay value used for the
    positive/negative counters; ``contribution`` is what enters the score.
    """
    raw = event.base_impact if event.base_impact is not None else config.default_impact
    raw = clamp_impact(raw, config)

    half_life = config.decay_half_life_days
    if not (apply_decay and config.decay_enabled and half_life):
        return raw, raw
    if half_life < 0:
        logger.warning(
            "Ignoring negative half-life %s for event type %s",
            half_life, config.event_type,
        )
        return raw, raw

    age_days = (as_utc(now) - as_utc(event.occurred_at)).total_seconds() / _SECONDS_PER_DAY
    if age_days < 0:
        logger.debug("Event %s is future-dated by %.3f days", event.id, -age_days)
    return raw, raw * decay_factor(age_days, half_life)


# ---------------------------------------------------------------------------
# Full calculation pipeline
# ---------------------------------------------------------------------------
def compute_score(
    events: Iterable[ReputationEvent],
    configs: Mapping[str, ReputationConfig],
    now: datetime,
    *,
    player_id: str | None = None,
    min_events_for_public: int = DEFAULT_MIN_EVENTS_FOR_PUBLIC,
    thresholds: Sequence[tuple[str, float]] = DEFAULT_TIER_THRESHOLDS,
    apply_decay: bool = True,
) -> ReputationSummary:
    """Rebuild a player's summary from their full event log.

    This is a PURE function: the only clock is *now*, and events are sorted
    internally so the caller's ordering never changes the result.

    Parameters
    ----------
    events : every event for one player, any order
    configs : event_type → rule; missing or inactive types score zero and
        are not counted
    now : evaluation instant for decay
    player_id : defaults to the player of the first event
    min_events_for_public : visibility floor
    thresholds : ascending ``(tier, min_score)`` pairs
    apply_decay : ``False`` scores every event at full weight

    Raises
    ------
    ValidationError
        If an event has no ``event_type``.
    """
    ordered = sorted(events, key=lambda e: (as_utc(e.occurred_at), str(e.id)))

    for event in ordered:
        if not event.event_type:
            raise ValidationError(f"Reputation event {event.id!r} has no event_type")

    if player_id is None:
        player_id = ordered[0].player_id if ordered else ""

    score = 0.0
    total = positive = negative = matches = 0

    for event in ordered:
        config = configs.get(event.event_type)
        if config is None or not config.is_active:
            continue

        raw, contribution = effective_impact(event, config, now, apply_decay=apply_decay)
        score += contribution
        total += 1
        if raw > 0:
            positive += 1
        elif raw < 0:
            negative += 1
        if event.event_type == ReputationEventType.MATCH_COMPLETED:
            matches += 1

    return ReputationSummary(
        player_id=player_id,
        score=score,
        tier=classify_tier(score, total, min_events_for_public, thresholds),
        total_events=total,
        positive_events=positive,
        negative_events=negative,
        matches_completed=matches,
        is_public=total >= min_events_for_public,
        calculated_at=now,
        last_decay_calculation=now if apply_decay else None,
    )


def default_summary(player_id: str, now: datetime) -> ReputationSummary:
    """Summary reported for a player who has never been scored."""
    return ReputationSummary(
        player_id=player_id,
        score=0.0,
        tier=ReputationTier.UNKNOWN,
        total_events=0,
        positive_events=0,
        negative_events=0,
        matches_completed=0,
        is_public=False,
        calculated_at=now,
        last_decay_calculation=None,
    )


def review_event_type(rating: float) -> ReputationEventType:
    """Map a 1–5 star peer rating onto its review event type."""
    stars = max(1, min(5, math.floor(rating + 0.5)))
    return ReputationEventType(f"review_received_{stars}star")
