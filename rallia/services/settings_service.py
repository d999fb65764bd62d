"""
rallia.services.settings_service — Settings & Rule Writes
==========================================================

Typed read/write access to the ``settings`` and ``reputation_config``
tables.  Writers take an optional :class:`~rallia.engine.cache.ConfigCache`
and reload the affected partition after commit.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from rallia.database.models import ReputationEventType, ReputationRule, Setting
from rallia.errors import ValidationError

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from rallia.engine.cache import ConfigCache

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_setting_value(session: Session, key: str, default=None):
    """Read a single setting's parsed value from an existing session.

    Returns *default* when the key does not exist; a value that is not valid
    JSON is returned as the raw string.
    """
    row = session.get(Setting, key)
    if row is None:
        return default
    try:
        return json.loads(row.value_json)
    except (json.JSONDecodeError, TypeError):
        return row.value_json


def get_all_settings(engine: Engine) -> list[dict]:
    """Every setting, ordered by category then key, as plain dicts."""
    with Session(engine) as session:
        rows = session.scalars(select(Setting).order_by(Setting.category, Setting.key)).all()
        return [
            {
                "key": r.key,
                "value": get_setting_value(session, r.key),
                "category": r.category,
                "description": r.description,
            }
            for r in rows
        ]


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
def upsert_setting(
    engine: Engine,
    *,
    key: str,
    value: Any,
    category: str = "general",
    description: str | None = None,
    cache: ConfigCache | None = None,
) -> None:
    """Insert or update a single setting."""
    value_json = json.dumps(value)
    with Session(engine) as session:
        existing = session.get(Setting, key)
        if existing:
            existing.value_json = value_json
            if category:
                existing.category = category
            if description is not None:
                existing.description = description
        else:
            session.add(Setting(
                key=key,
                value_json=value_json,
                category=category,
                description=description,
            ))
        session.commit()

    logger.info("Setting %s updated", key)
    if cache is not None:
        cache.invalidate("settings")


def upsert_reputation_rule(
    engine: Engine,
    event_type: str,
    *,
    default_impact: float,
    min_impact: float | None = None,
    max_impact: float | None = None,
    decay_enabled: bool = False,
    decay_half_life_days: float | None = None,
    is_active: bool = True,
    cache: ConfigCache | None = None,
) -> None:
    """Create or replace the scoring rule for *event_type*.

    Raises
    ------
    ValidationError
        Unknown event type, inverted bounds, or a non-positive half-life on
        a decaying rule.
    """
    try:
        event_type = ReputationEventType(event_type).value
    except ValueError as exc:
        raise ValidationError(f"Unknown reputation event type {event_type!r}") from exc
    if min_impact is not None and max_impact is not None and min_impact > max_impact:
        raise ValidationError(f"min_impact {min_impact} exceeds max_impact {max_impact}")
    if decay_enabled and (decay_half_life_days is None or decay_half_life_days <= 0):
        raise ValidationError("A decaying rule needs a positive decay_half_life_days")

    with Session(engine) as session:
        rule = session.scalar(select(ReputationRule).where(ReputationRule.event_type == event_type))
        if rule is None:
            rule = ReputationRule(event_type=event_type)
            session.add(rule)
        rule.default_impact = default_impact
        rule.min_impact = min_impact
        rule.max_impact = max_impact
        rule.decay_enabled = decay_enabled
        rule.decay_half_life_days = decay_half_life_days
        rule.is_active = is_active
        session.commit()

    logger.info("Reputation rule %s updated (impact=%s)", event_type, default_impact)
    if cache is not None:
        cache.invalidate("reputation_config")
