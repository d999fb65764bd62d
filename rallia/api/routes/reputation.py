"""
rallia.api.routes.reputation — Player reputation endpoints
============================================================
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import Engine

from rallia.api.deps import get_cache, get_current_user, get_engine, require_service
from rallia.database.models import ReputationEventType
from rallia.engine.cache import ConfigCache
from rallia.engine.reputation import review_event_type
from rallia.services import reputation_service

router = APIRouter(tags=["reputation"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class EventCreate(BaseModel):
    event_type: ReputationEventType | None = None
    rating: float | None = Field(default=None, ge=1, le=5)  # peer review stars
    occurred_at: datetime | None = None
    base_impact: float | None = None
    match_id: str | None = None
    caused_by_player_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _type_or_rating(self) -> EventCreate:
        if self.event_type is None and self.rating is None:
            raise ValueError("Either event_type or rating is required")
        return self


class RecalculateRequest(BaseModel):
    apply_decay: bool = True


class DecayBatchRequest(BaseModel):
    batch_size: int | None = Field(default=None, ge=1, le=10_000)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@router.get("/players/{player_id}/reputation")
def get_player_reputation(
    player_id: str,
    user: Annotated[dict, Depends(get_current_user)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    summary = reputation_service.visible_summary(engine, player_id, user["sub"])
    data = summary.to_dict()
    data["is_visible"] = summary.is_public or user["sub"] == player_id
    return data


@router.post("/players/{player_id}/reputation/events", status_code=201)
def record_reputation_event(
    player_id: str,
    body: EventCreate,
    _service: Annotated[dict, Depends(require_service)],
    engine: Annotated[Engine, Depends(get_engine)],
    cache: Annotated[ConfigCache, Depends(get_cache)],
):
    event_type = body.event_type or review_event_type(body.rating)
    event, summary = reputation_service.record_event(
        engine,
        cache,
        player_id,
        event_type,
        occurred_at=body.occurred_at,
        base_impact=body.base_impact,
        match_id=body.match_id,
        caused_by_player_id=body.caused_by_player_id,
        metadata=body.metadata,
    )
    return {
        "event": {
            "id": event.id,
            "event_type": event.event_type,
            "base_impact": event.base_impact,
            "occurred_at": event.occurred_at.isoformat(),
        },
        "summary": summary.to_dict() if summary else None,
    }


@router.post("/players/{player_id}/reputation/recalculate")
def recalculate_reputation(
    player_id: str,
    _service: Annotated[dict, Depends(require_service)],
    engine: Annotated[Engine, Depends(get_engine)],
    cache: Annotated[ConfigCache, Depends(get_cache)],
    body: RecalculateRequest | None = None,
):
    apply_decay = body.apply_decay if body is not None else True
    summary = reputation_service.recalculate(engine, cache, player_id, apply_decay=apply_decay)
    return summary.to_dict()


@router.post("/reputation/decay-batch")
def run_decay_batch(
    _service: Annotated[dict, Depends(require_service)],
    engine: Annotated[Engine, Depends(get_engine)],
    cache: Annotated[ConfigCache, Depends(get_cache)],
    body: DecayBatchRequest | None = None,
):
    batch_size = body.batch_size if body is not None else None
    return reputation_service.batch_recalculate_with_decay(engine, cache, batch_size=batch_size)
