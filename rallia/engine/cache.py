"""
rallia.engine.cache — In-Memory Rule & Settings Cache
======================================================

Reputation rules and tuning settings change rarely but are read on every
recalculation and dispatch.  They are loaded once into memory and reloaded
per partition when a service writes to the underlying table.

Usage:
    cache = ConfigCache(engine)
    cache.load_all()

    configs = cache.load_reputation_config()
    thresholds = cache.tier_thresholds()
    floor = cache.min_events_for_public()
"""

from __future__ import annotations

import json
import logging
import threading
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from rallia.database.models import ReputationRule, Setting
from rallia.engine.events import ReputationConfig
from rallia.engine.reputation import (
    DEFAULT_MIN_EVENTS_FOR_PUBLIC,
    DEFAULT_TIER_THRESHOLDS,
    TierThreshold,
    normalize_thresholds,
)
from rallia.errors import ValidationError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

SETTING_MIN_EVENTS_FOR_PUBLIC = "reputation.min_events_for_public"
SETTING_TIER_THRESHOLDS = "reputation.tier_thresholds"
SETTING_DECAY_BATCH_SIZE = "reputation.decay_batch_size"
SETTING_MAX_ATTEMPTS = "notifications.max_attempts"


class ConfigCache:
    """Thread-safe in-memory cache for reputation rules and settings.

    Satisfies :class:`~rallia.engine.repositories.ConfigRepository`.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = threading.Lock()

        # event_type → ReputationConfig
        self._rules: dict[str, ReputationConfig] = {}
        # key → parsed JSON value
        self._settings: dict[str, Any] = {}

    # -------------------------------------------------------------------
    # Cache loading
    # -------------------------------------------------------------------
    def load_all(self) -> None:
        """Load every partition from the DB.  Call on startup."""
        self._load_rules()
        self._load_settings()
        logger.info(
            "ConfigCache loaded: %d reputation rules, %d settings",
            len(self._rules), len(self._settings),
        )

    def _load_rules(self) -> None:
        with Session(self._engine) as session:
            rows = session.scalars(select(ReputationRule)).all()
            rules = {
                r.event_type: ReputationConfig(
                    event_type=r.event_type,
                    default_impact=r.default_impact,
                    min_impact=r.min_impact,
                    max_impact=r.max_impact,
                    decay_enabled=bool(r.decay_enabled),
                    decay_half_life_days=r.decay_half_life_days,
                    is_active=bool(r.is_active),
                )
                for r in rows
            }
        with self._lock:
            self._rules = rules

    def _load_settings(self) -> None:
        with Session(self._engine) as session:
            rows = session.scalars(select(Setting)).all()
            parsed: dict[str, Any] = {}
            for row in rows:
                try:
                    parsed[row.key] = json.loads(row.value_json)
                except (json.JSONDecodeError, TypeError):
                    parsed[row.key] = row.value_json
        with self._lock:
            self._settings = parsed

    def invalidate(self, table_name: str) -> None:
        """Reload the partition backed by *table_name*."""
        table_name = table_name.strip().lower()
        logger.info("Config cache invalidation for table: %s", table_name)
        if table_name == "reputation_config":
            self._load_rules()
        elif table_name == "settings":
            self._load_settings()
        else:
            logger.warning("Unknown table for cache invalidation: %s; ignoring", table_name)

    # -------------------------------------------------------------------
    # Rule reads
    # -------------------------------------------------------------------
    def load_reputation_config(self) -> dict[str, ReputationConfig]:
        with self._lock:
            return dict(self._rules)

    # -------------------------------------------------------------------
    # Typed setting accessors
    # -------------------------------------------------------------------
    def get_setting(self, key: str, default: Any = None) -> Any:
        """Return the parsed JSON value for *key*, or *default*."""
        with self._lock:
            return self._settings.get(key, default)

    def get_int(self, key: str, default: int = 0) -> int:
        val = self.get_setting(key)
        if val is None:
            return default
        try:
            return int(val)
        except (TypeError, ValueError):
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        val = self.get_setting(key)
        if val is None:
            return default
        try:
            return float(val)
        except (TypeError, ValueError):
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        val = self.get_setting(key)
        if val is None:
            return default
        return bool(val)

    # -------------------------------------------------------------------
    # Domain accessors
    # -------------------------------------------------------------------
    def min_events_for_public(self) -> int:
        return self.get_int(SETTING_MIN_EVENTS_FOR_PUBLIC, DEFAULT_MIN_EVENTS_FOR_PUBLIC)

    def tier_thresholds(self) -> tuple[TierThreshold, ...]:
        """Configured thresholds, falling back to the defaults when invalid."""
        raw = self.get_setting(SETTING_TIER_THRESHOLDS)
        if raw is None:
            return DEFAULT_TIER_THRESHOLDS
        try:
            return normalize_thresholds(raw)
        except (ValidationError, TypeError) as exc:
            logger.warning("Invalid %s setting (%s); using defaults", SETTING_TIER_THRESHOLDS, exc)
            return DEFAULT_TIER_THRESHOLDS

    def decay_batch_size(self) -> int:
        return max(1, self.get_int(SETTING_DECAY_BATCH_SIZE, 100))

    def max_attempts(self) -> int | None:
        """Failed attempts per channel before retries stop; ``None`` = unlimited."""
        value = self.get_int(SETTING_MAX_ATTEMPTS, 0)
        return value if value > 0 else None
