"""
rallia.config — YAML Configuration Loader
==========================================

Reads ``config.yaml`` for **infrastructure-only** settings (app identity,
API port, delivery provider endpoints).  Scoring and delivery tuning
(tier thresholds, visibility floor, retry limits) lives in the ``settings``
database table and is read through :class:`~rallia.engine.cache.ConfigCache`.
Provider credentials come from the environment, never from YAML.

Usage::

    from rallia.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.app_name)          # "Rallia"
    print(cfg.senders.timeout_seconds)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class SenderConfig:
    """Endpoints and limits shared by the per-channel HTTP senders."""

    timeout_seconds: float = 10.0
    email_from: str = "Rallia <notifications@rallia.app>"
    resend_base_url: str = "https://api.resend.com"
    expo_base_url: str = "https://exp.host/--/api/v2"
    twilio_base_url: str = "https://api.twilio.com/2010-04-01"
    twilio_from_number: str | None = None
    log_unconfigured: bool = False


@dataclass(frozen=True, slots=True)
class RalliaConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    app_name: str
    api_port: int
    senders: SenderConfig = field(default_factory=SenderConfig)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> RalliaConfig:
    """Read *path* and return a :class:`RalliaConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    senders_raw: dict = raw.get("senders") or {}
    defaults = SenderConfig()
    senders = SenderConfig(
        timeout_seconds=float(senders_raw.get("timeout_seconds", defaults.timeout_seconds)),
        email_from=senders_raw.get("email_from", defaults.email_from),
        resend_base_url=senders_raw.get("resend_base_url", defaults.resend_base_url),
        expo_base_url=senders_raw.get("expo_base_url", defaults.expo_base_url),
        twilio_base_url=senders_raw.get("twilio_base_url", defaults.twilio_base_url),
        twilio_from_number=senders_raw.get("twilio_from_number"),
        log_unconfigured=bool(senders_raw.get("log_unconfigured", False)),
    )

    return RalliaConfig(
        app_name=raw["app_name"],
        api_port=int(raw["api_port"]),
        senders=senders,
    )
