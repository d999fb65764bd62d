"""
Rallia — Reputation & Notification Engine
==========================================
Turns player behaviour into a decayed, tiered reputation score and turns
typed domain events into preference-aware, multi-channel notification
deliveries with a full attempt history.

Package layout::

    rallia/
    ├── config.py          # YAML → typed Python config
    ├── errors.py          # RalliaError / ValidationError
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # ORM models (event log, rules, notifications, …)
    │   └── seed.py        # Default settings + reputation rules
    ├── engine/
    │   ├── events.py      # ReputationEvent / ReputationConfig envelopes
    │   ├── reputation.py  # Decay, clamping, scoring, tiering
    │   ├── preferences.py # Default matrix + preference cascade
    │   ├── dispatch.py    # Multi-channel delivery orchestration
    │   ├── repositories.py # Storage / sender protocols
    │   └── cache.py       # In-memory settings + rule cache
    ├── services/
    │   ├── reputation_service.py   # Event log persistence + recalculation
    │   ├── notification_service.py # Notification + attempt persistence, dispatch
    │   ├── preference_service.py   # Sparse preference CRUD
    │   ├── settings_service.py     # Settings table reads/writes
    │   └── senders.py              # Resend / Expo / Twilio HTTP senders
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Engine, cache, JWT dependencies
        └── routes/        # Reputation + notification endpoints
"""

__version__ = "0.1.0"
