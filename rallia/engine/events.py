"""
rallia.engine.events — Reputation event and rule envelopes
===========================================================

Plain, immutable values handed to the scoring function.  The service layer
converts ORM rows into these; the engine never sees a Session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

__all__ = ["ReputationConfig", "ReputationEvent", "as_utc"]


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC (SQLite drops tzinfo on round-trip)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@dataclass(frozen=True, slots=True)
class ReputationEvent:
    """A single timestamped fact about a player's behaviour.

    ``base_impact`` is optional: when ``None`` the rule's default impact is
    used.  ``event_type`` is a plain string so that types unknown to the
    current rule table are still representable (and scored as zero).
    """

    id: int | str
    player_id: str
    event_type: str
    occurred_at: datetime
    base_impact: float | None = None
    caused_by_player_id: str | None = None
    match_id: str | None = None
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ReputationConfig:
    """Scoring rule for one event type."""

    event_type: str
    default_impact: float
    min_impact: float | None = None
    max_impact: float | None = None
    decay_enabled: bool = False
    decay_half_life_days: float | None = None
    is_active: bool = True
