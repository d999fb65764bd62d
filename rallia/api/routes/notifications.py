"""
rallia.api.routes.notifications — Dispatch webhook, inbox & preferences
=========================================================================
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from rallia.api.deps import get_cache, get_current_user, get_engine, get_senders, require_service
from rallia.database.engine import run_db
from rallia.database.models import DeliveryChannel, NotificationPriority, NotificationType
from rallia.engine.cache import ConfigCache
from rallia.engine.dispatch import NotificationInput, NotificationRecord
from rallia.services import notification_service, preference_service

router = APIRouter(tags=["notifications"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class DispatchRequest(BaseModel):
    user_id: str
    type: NotificationType
    title: str = Field(min_length=1, max_length=255)
    body: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: NotificationPriority = NotificationPriority.NORMAL
    target_id: str | None = None
    scheduled_at: datetime | None = None
    expires_at: datetime | None = None
    dedup_key: str | None = Field(default=None, max_length=255)
    reresolve_preferences: bool = True


class PreferenceItem(BaseModel):
    notification_type: NotificationType
    channel: DeliveryChannel
    enabled: bool


class PreferenceBulkUpdate(BaseModel):
    preferences: list[PreferenceItem]


class ContactUpdate(BaseModel):
    email: str | None = None
    phone: str | None = None
    push_token: str | None = None
    push_enabled: bool = True


class PhoneVerification(BaseModel):
    phone: str


def _notification_dict(n: NotificationRecord) -> dict:
    return {
        "id": n.id,
        "type": n.type,
        "title": n.title,
        "body": n.body,
        "payload": n.payload,
        "priority": n.priority,
        "target_id": n.target_id,
        "created_at": n.created_at.isoformat() if n.created_at else None,
        "read_at": n.read_at.isoformat() if n.read_at else None,
        "expires_at": n.expires_at.isoformat() if n.expires_at else None,
    }


# ---------------------------------------------------------------------------
# Dispatch (backend webhook)
# ---------------------------------------------------------------------------
@router.post("/notifications/dispatch")
async def dispatch_notification(
    body: DispatchRequest,
    _service: Annotated[dict, Depends(require_service)],
    engine: Annotated[Engine, Depends(get_engine)],
    cache: Annotated[ConfigCache, Depends(get_cache)],
    senders: Annotated[dict, Depends(get_senders)],
):
    notification = NotificationInput(
        user_id=body.user_id,
        type=body.type.value,
        title=body.title,
        body=body.body,
        payload=body.payload,
        priority=body.priority,
        target_id=body.target_id,
        scheduled_at=body.scheduled_at,
        expires_at=body.expires_at,
        dedup_key=body.dedup_key,
    )
    result = await run_db(
        notification_service.dispatch_notification,
        engine, cache, notification, senders,
        reresolve_preferences=body.reresolve_preferences,
    )
    return result.to_dict()


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------
@router.get("/me/notifications")
def list_my_notifications(
    user: Annotated[dict, Depends(get_current_user)],
    engine: Annotated[Engine, Depends(get_engine)],
    unread_only: bool = False,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    items = notification_service.list_notifications(
        engine, user["sub"], unread_only=unread_only, limit=limit, offset=offset
    )
    return {
        "items": [_notification_dict(n) for n in items],
        "unread_count": notification_service.unread_count(engine, user["sub"]),
    }


@router.post("/notifications/{notification_id}/read")
def mark_notification_read(
    notification_id: int,
    user: Annotated[dict, Depends(get_current_user)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    record = notification_service.mark_read(engine, notification_id, user["sub"])
    if record is None:
        raise HTTPException(404, "Notification not found")
    return _notification_dict(record)


# ---------------------------------------------------------------------------
# Preferences & contact
# ---------------------------------------------------------------------------
@router.get("/me/notification-preferences")
def get_my_preferences(
    user: Annotated[dict, Depends(get_current_user)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    grid = preference_service.get_resolved_preferences(engine, user["sub"])
    return [p.to_dict() for p in grid]


@router.put("/me/notification-preferences")
def update_my_preferences(
    body: PreferenceBulkUpdate,
    user: Annotated[dict, Depends(get_current_user)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    count = preference_service.set_preferences(
        engine,
        user["sub"],
        [(p.notification_type.value, p.channel.value, p.enabled) for p in body.preferences],
    )
    return {"updated": count}


@router.delete("/me/notification-preferences/{notification_type}/{channel}")
def reset_my_preference(
    notification_type: str,
    channel: str,
    user: Annotated[dict, Depends(get_current_user)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    reset = preference_service.reset_preference(engine, user["sub"], notification_type, channel)
    return {"reset": reset}


@router.delete("/me/notification-preferences")
def reset_all_my_preferences(
    user: Annotated[dict, Depends(get_current_user)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    return {"reset": preference_service.reset_all_preferences(engine, user["sub"])}


@router.put("/me/contact")
def update_my_contact(
    body: ContactUpdate,
    user: Annotated[dict, Depends(get_current_user)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    contact = notification_service.upsert_contact(
        engine, user["sub"], **body.model_dump(exclude_unset=True)
    )
    return _contact_dict(contact)


def _contact_dict(contact) -> dict:
    return {
        "email": contact.email,
        "phone": contact.phone,
        "phone_verified": contact.phone_verified,
        "push_enabled": contact.push_enabled,
        "has_push_token": bool(contact.push_token),
    }


@router.post("/users/{user_id}/contact/phone-verification")
def verify_phone(
    user_id: str,
    body: PhoneVerification,
    _service: Annotated[dict, Depends(require_service)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    """Mark *phone* verified once the OTP flow has confirmed it."""
    contact = notification_service.upsert_contact(
        engine, user_id, phone=body.phone, phone_verified=True
    )
    return _contact_dict(contact)
