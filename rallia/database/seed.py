"""
rallia.database.seed — Default Settings & Reputation Rules
===========================================================

Baseline tuning seeded on first startup so scoring and delivery work out
of the box.

Idempotent — only inserts keys / event types that don't already exist.
Rows edited by operators afterwards are never overwritten.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from rallia.database.models import ReputationEventType as E
from rallia.database.models import ReputationRule, Setting

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default settings catalogue
# ---------------------------------------------------------------------------
DEFAULT_SETTINGS: dict[str, tuple[object, str, str]] = {
    "reputation.min_events_for_public": (
        3, "reputation", "Scored events required before a summary is shown to others",
    ),
    "reputation.tier_thresholds": (
        [["bronze", 0], ["silver", 60], ["gold", 75], ["platinum", 90]],
        "reputation",
        "Ascending [tier, min_score] pairs used to bucket scores",
    ),
    "reputation.decay_batch_size": (
        100, "reputation", "Players recalculated per decay batch run",
    ),
    "notifications.max_attempts": (
        5, "notifications", "Delivery attempts per channel before retries stop",
    ),
}
"""Each entry maps ``key`` → ``(default_value, category, description)``."""


# ---------------------------------------------------------------------------
# Default reputation rules
# ---------------------------------------------------------------------------
RuleDefaults = tuple[float, float | None, float | None, bool, float | None]

# event_type → (default, min, max, decay_enabled, half_life_days)
DEFAULT_REPUTATION_RULES: dict[str, RuleDefaults] = {
    E.MATCH_COMPLETED: (25, 20, 30, True, 180),
    E.MATCH_NO_SHOW: (-50, -60, -40, True, 180),
    E.MATCH_GHOSTED: (-20, -30, -15, True, 180),
    E.MATCH_ON_TIME: (5, 3, 10, False, None),
    E.MATCH_LATE: (-10, -15, -5, False, None),
    E.MATCH_CANCELLED_EARLY: (0, 0, 0, False, None),
    E.MATCH_CANCELLED_LATE: (-25, -30, -20, True, 180),
    E.MATCH_REPEAT_OPPONENT: (3, 2, 5, False, None),
    E.REVIEW_RECEIVED_5STAR: (20, 15, 25, True, 365),
    E.REVIEW_RECEIVED_4STAR: (10, 8, 12, True, 365),
    E.REVIEW_RECEIVED_3STAR: (0, 0, 0, False, None),
    E.REVIEW_RECEIVED_2STAR: (-5, -8, -3, True, 365),
    E.REVIEW_RECEIVED_1STAR: (-10, -15, -8, True, 365),
    E.REPORT_RECEIVED: (0, 0, 0, False, None),
    E.REPORT_DISMISSED: (5, 3, 8, False, None),
    E.REPORT_UPHELD: (-15, -25, -10, True, 365),
    E.WARNING_ISSUED: (-10, -15, -5, True, 180),
    E.SUSPENSION_LIFTED: (0, 0, 0, False, None),
    E.PEER_RATING_GIVEN: (1, 0, 2, False, None),
    E.FIRST_MATCH_BONUS: (10, 10, 10, False, None),
}


# ---------------------------------------------------------------------------
# Seeders
# ---------------------------------------------------------------------------
def seed_default_settings(engine: Engine) -> int:
    """Insert default settings that don't yet exist.  Returns rows inserted."""
    session = Session(engine)
    inserted = 0
    try:
        for key, (value, category, desc) in DEFAULT_SETTINGS.items():
            existing = session.get(Setting, key)
            if existing is None:
                session.add(Setting(
                    key=key,
                    value_json=json.dumps(value),
                    category=category,
                    description=desc,
                ))
                inserted += 1
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if inserted:
        logger.info("Seeded %d default settings.", inserted)
    return inserted


def seed_reputation_rules(engine: Engine) -> int:
    """Insert a rule for every event type that has none.  Returns rows inserted."""
    session = Session(engine)
    inserted = 0
    try:
        existing = set(session.scalars(select(ReputationRule.event_type)).all())
        for event_type, (impact, lo, hi, decays, half_life) in DEFAULT_REPUTATION_RULES.items():
            if event_type.value in existing:
                continue
            session.add(ReputationRule(
                event_type=event_type.value,
                default_impact=impact,
                min_impact=lo,
                max_impact=hi,
                decay_enabled=decays,
                decay_half_life_days=half_life,
                is_active=True,
            ))
            inserted += 1
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if inserted:
        logger.info("Seeded %d reputation rules.", inserted)
    return inserted


def seed_defaults(engine: Engine) -> None:
    seed_default_settings(engine)
    seed_reputation_rules(engine)
