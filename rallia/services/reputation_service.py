"""
rallia.services.reputation_service — Event Recording & Summary Rebuilds
========================================================================

Persists reputation events and rebuilds the cached ``player_reputation``
row from the full log through :func:`rallia.engine.reputation.compute_score`.

Every rebuild is wholesale: the cached summary is replaced, never patched,
so concurrent recalculations for one player converge on the same row.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from rallia.database.models import (
    PlayerReputation,
    ReputationEventLog,
    ReputationEventType,
    ReputationTier,
)
from rallia.engine.events import ReputationEvent, as_utc
from rallia.engine.reputation import ReputationSummary, compute_score, default_summary
from rallia.errors import ValidationError

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from rallia.engine.cache import ConfigCache

logger = logging.getLogger(__name__)

# Players whose decay was refreshed more recently than this are skipped.
DECAY_REFRESH_INTERVAL = timedelta(days=1)


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------
def _to_event(row: ReputationEventLog) -> ReputationEvent:
    return ReputationEvent(
        id=row.id,
        player_id=row.player_id,
        event_type=row.event_type,
        occurred_at=as_utc(row.occurred_at),
        base_impact=row.base_impact,
        caused_by_player_id=row.caused_by_player_id,
        match_id=row.match_id,
        metadata=dict(row.metadata_ or {}),
    )


def _to_summary(row: PlayerReputation) -> ReputationSummary:
    return ReputationSummary(
        player_id=row.player_id,
        score=row.score,
        tier=ReputationTier(row.tier),
        total_events=row.total_events,
        positive_events=row.positive_events,
        negative_events=row.negative_events,
        matches_completed=row.matches_completed,
        is_public=bool(row.is_public),
        calculated_at=as_utc(row.calculated_at),
        last_decay_calculation=(
            as_utc(row.last_decay_calculation) if row.last_decay_calculation else None
        ),
    )


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------
class SqlEventLog:
    """``reputation_event`` table as an :class:`EventLogRepository`."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def load_events(self, player_id: str) -> list[ReputationEvent]:
        rows = self._session.scalars(
            select(ReputationEventLog)
            .where(ReputationEventLog.player_id == player_id)
            .order_by(ReputationEventLog.occurred_at, ReputationEventLog.id)
        ).all()
        return [_to_event(r) for r in rows]

    def append_event(self, event: ReputationEvent) -> ReputationEvent:
        row = ReputationEventLog(
            player_id=event.player_id,
            event_type=event.event_type,
            base_impact=event.base_impact,
            match_id=event.match_id,
            caused_by_player_id=event.caused_by_player_id,
            metadata_=event.metadata or None,
            occurred_at=event.occurred_at,
        )
        self._session.add(row)
        self._session.flush()
        return replace(event, id=row.id)


class SqlSummaryStore:
    """``player_reputation`` table as a :class:`SummaryRepository`."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def load_summary(self, player_id: str) -> ReputationSummary | None:
        row = self._session.get(PlayerReputation, player_id)
        return _to_summary(row) if row is not None else None

    def save_summary(self, player_id: str, summary: ReputationSummary) -> None:
        row = self._session.get(PlayerReputation, player_id)
        if row is None:
            row = PlayerReputation(player_id=player_id)
            self._session.add(row)
        row.score = summary.score
        row.tier = summary.tier.value
        row.total_events = summary.total_events
        row.positive_events = summary.positive_events
        row.negative_events = summary.negative_events
        row.matches_completed = summary.matches_completed
        row.is_public = summary.is_public
        row.calculated_at = summary.calculated_at
        row.last_decay_calculation = summary.last_decay_calculation
        self._session.flush()


# ---------------------------------------------------------------------------
# Recalculation
# ---------------------------------------------------------------------------
def _recalculate_in_session(
    session: Session,
    cache: ConfigCache,
    player_id: str,
    now: datetime,
    apply_decay: bool,
) -> ReputationSummary:
    events = SqlEventLog(session).load_events(player_id)
    summary = compute_score(
        events,
        cache.load_reputation_config(),
        now,
        player_id=player_id,
        min_events_for_public=cache.min_events_for_public(),
        thresholds=cache.tier_thresholds(),
        apply_decay=apply_decay,
    )
    SqlSummaryStore(session).save_summary(player_id, summary)
    return summary


def recalculate(
    engine: Engine,
    cache: ConfigCache,
    player_id: str,
    *,
    now: datetime | None = None,
    apply_decay: bool = True,
) -> ReputationSummary:
    """Rebuild and store *player_id*'s summary from the full event log."""
    now = as_utc(now or datetime.now(UTC))
    with Session(engine) as session:
        summary = _recalculate_in_session(session, cache, player_id, now, apply_decay)
        session.commit()

    logger.info(
        "Recalculated reputation for %s: score=%.2f tier=%s events=%d",
        player_id, summary.score, summary.tier.value, summary.total_events,
    )
    return summary


# ---------------------------------------------------------------------------
# Event recording
# ---------------------------------------------------------------------------
def _prepare_event(cache: ConfigCache, event: ReputationEvent, now: datetime) -> ReputationEvent:
    """Validate *event* and pin its impact to the rule in force right now."""
    if not event.player_id:
        raise ValidationError("Reputation event requires a player_id")
    try:
        event_type = ReputationEventType(event.event_type)
    except ValueError as exc:
        raise ValidationError(f"Unknown reputation event type {event.event_type!r}") from exc

    base_impact = event.base_impact
    if base_impact is None:
        config = cache.load_reputation_config().get(event_type.value)
        if config is not None:
            base_impact = config.default_impact

    return replace(
        event,
        event_type=event_type.value,
        base_impact=base_impact,
        occurred_at=as_utc(event.occurred_at or now),
    )


def record_event(
    engine: Engine,
    cache: ConfigCache,
    player_id: str,
    event_type: str,
    *,
    occurred_at: datetime | None = None,
    base_impact: float | None = None,
    match_id: str | None = None,
    caused_by_player_id: str | None = None,
    metadata: dict | None = None,
    now: datetime | None = None,
    recalculate_summary: bool = True,
) -> tuple[ReputationEvent, ReputationSummary | None]:
    """Append one event and (by default) rebuild the player's summary.

    When *base_impact* is omitted the rule's ``default_impact`` at insert
    time is stored with the event; later rule edits only affect clamping.

    Returns ``(stored_event, summary_or_None)``.
    """
    now = as_utc(now or datetime.now(UTC))
    event = _prepare_event(cache, ReputationEvent(
        id=0,
        player_id=player_id,
        event_type=event_type,
        occurred_at=occurred_at or now,
        base_impact=base_impact,
        caused_by_player_id=caused_by_player_id,
        match_id=match_id,
        metadata=metadata or {},
    ), now)

    summary = None
    with Session(engine) as session:
        stored = SqlEventLog(session).append_event(event)
        if recalculate_summary:
            summary = _recalculate_in_session(session, cache, player_id, now, True)
        session.commit()

    logger.info(
        "Recorded %s for player %s (impact=%s)", stored.event_type, player_id, stored.base_impact
    )
    return stored, summary


def record_events(
    engine: Engine,
    cache: ConfigCache,
    events: Iterable[ReputationEvent],
    *,
    now: datetime | None = None,
) -> dict[str, ReputationSummary]:
    """Append many events in one transaction and rebuild each player once.

    Validation runs on the whole batch before anything is written.
    """
    now = as_utc(now or datetime.now(UTC))
    prepared = [_prepare_event(cache, e, now) for e in events]

    summaries: dict[str, ReputationSummary] = {}
    with Session(engine) as session:
        log = SqlEventLog(session)
        for event in prepared:
            log.append_event(event)
        for player_id in dict.fromkeys(e.player_id for e in prepared):
            summaries[player_id] = _recalculate_in_session(session, cache, player_id, now, True)
        session.commit()

    logger.info("Recorded %d events for %d players", len(prepared), len(summaries))
    return summaries


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_summary(
    engine: Engine, player_id: str, *, now: datetime | None = None
) -> ReputationSummary:
    """Cached summary, or the default summary for an unscored player."""
    with Session(engine) as session:
        summary = SqlSummaryStore(session).load_summary(player_id)
    if summary is None:
        return default_summary(player_id, as_utc(now or datetime.now(UTC)))
    return summary


def get_summaries(engine: Engine, player_ids: Iterable[str]) -> dict[str, ReputationSummary]:
    """Cached summaries for many players; unscored players are omitted."""
    ids = list(dict.fromkeys(player_ids))
    if not ids:
        return {}
    with Session(engine) as session:
        rows = session.scalars(
            select(PlayerReputation).where(PlayerReputation.player_id.in_(ids))
        ).all()
        return {r.player_id: _to_summary(r) for r in rows}


def visible_summary(
    engine: Engine,
    player_id: str,
    viewer_id: str | None,
    *,
    now: datetime | None = None,
) -> ReputationSummary:
    """Summary as seen by *viewer_id*.

    Players always see their own numbers.  Anyone else sees a non-public
    summary masked to the default (score 0, tier ``unknown``).
    """
    summary = get_summary(engine, player_id, now=now)
    if summary.is_public or viewer_id == player_id:
        return summary
    return default_summary(player_id, summary.calculated_at)


# ---------------------------------------------------------------------------
# Scheduled decay job
# ---------------------------------------------------------------------------
def batch_recalculate_with_decay(
    engine: Engine,
    cache: ConfigCache,
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
) -> dict[str, int]:
    """Refresh decayed scores for players not refreshed in the last day.

    A failure for one player is logged and does not stop the batch.

    Returns ``{"processed": n, "updated": m}``.
    """
    now = as_utc(now or datetime.now(UTC))
    limit = batch_size if batch_size is not None else cache.decay_batch_size()
    cutoff = now - DECAY_REFRESH_INTERVAL

    with Session(engine) as session:
        player_ids = session.scalars(
            select(PlayerReputation.player_id)
            .where(or_(
                PlayerReputation.last_decay_calculation.is_(None),
                PlayerReputation.last_decay_calculation < cutoff,
            ))
            .order_by(PlayerReputation.player_id)
            .limit(limit)
        ).all()

    processed = updated = 0
    for player_id in player_ids:
        processed += 1
        try:
            recalculate(engine, cache, player_id, now=now, apply_decay=True)
            updated += 1
        except Exception:
            logger.exception("Decay recalculation failed for player %s", player_id)

    logger.info("Decay batch complete: processed=%d updated=%d", processed, updated)
    return {"processed": processed, "updated": updated}
