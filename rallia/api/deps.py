"""
rallia.api.deps — FastAPI dependency injection
================================================
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from rallia.config import RalliaConfig, SenderConfig, load_config
from rallia.database.engine import create_db_engine
from rallia.engine.cache import ConfigCache
from rallia.services.senders import build_senders

logger = logging.getLogger(__name__)

_WEAK_SECRETS = frozenset({
    "rallia-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"

SERVICE_ROLE = "service"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> RalliaConfig:
    return load_config()


@lru_cache(maxsize=1)
def _cache_for(engine: Engine) -> ConfigCache:
    cache = ConfigCache(engine)
    cache.load_all()
    return cache


def get_cache(engine: Annotated[Engine, Depends(get_engine)]) -> ConfigCache:
    return _cache_for(engine)


@lru_cache(maxsize=1)
def get_senders() -> dict:
    try:
        sender_config = get_config().senders
    except FileNotFoundError:
        logger.warning("config.yaml not found; using default sender endpoints")
        sender_config = SenderConfig()
    return build_senders(sender_config)


def _decode(authorization: str | None) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    if not payload.get("sub"):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Token has no subject")
    return payload


def get_current_user(authorization: Annotated[str | None, Header()] = None) -> dict:
    """Validate JWT and return its payload.  ``sub`` is the user / player id."""
    return _decode(authorization)


def require_service(authorization: Annotated[str | None, Header()] = None) -> dict:
    """Validate JWT and require the backend ``service`` role.  403 otherwise."""
    payload = _decode(authorization)
    if payload.get("role") != SERVICE_ROLE:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Service role required")
    return payload
