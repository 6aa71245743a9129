from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from appointd.auth.dependencies import get_current_actor
from appointd.core.errors import AppointdError
from appointd.database import get_db
from appointd.routes.errors import database_unavailable, ensure_database_ready, http_error
from appointd.services import notifications
from appointd.services.lifecycle import Actor

router = APIRouter(tags=['notifications'])


class NotificationResponse(BaseModel):
    id: int
    recipient_id: int
    appointment_id: int | None = None
    kind: str
    title: str
    message: str
    payload: dict[str, Any]
    channels: list[str]
    is_read: bool
    created_at: datetime

    class Config:
        from_attributes = True


class NotificationReadRequest(BaseModel):
    is_read: bool = True


@router.get('', response_model=list[NotificationResponse])
def list_notifications(
    unread_only: bool = Query(default=False),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return notifications.list_notifications(db, actor.actor_id, unread_only=unread_only)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.put('/{notification_id}', response_model=NotificationResponse)
def mark_notification(
    notification_id: int,
    data: NotificationReadRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return notifications.mark_notification_read(db, notification_id, actor.actor_id, is_read=data.is_read)
    except AppointdError as exc:
        raise http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
