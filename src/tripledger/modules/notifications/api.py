from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tripledger.api.deps import get_current_user
from tripledger.core.db import db_session
from tripledger.modules.identity.models import User
from tripledger.modules.notifications.schemas import NotificationOut
from tripledger.modules.notifications.service import list_notifications, mark_all_read, mark_read

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationOut])
def list_notifications_endpoint(
    unread_only: bool = False,
    limit: int = 50,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[NotificationOut]:
    items = list_notifications(session, user=user, unread_only=unread_only, limit=min(limit, 200))
    return [NotificationOut.model_validate(n, from_attributes=True) for n in items]


@router.post("/{notification_id}/read", response_model=NotificationOut)
def mark_read_endpoint(
    notification_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> NotificationOut:
    notification = mark_read(session, notification_id=notification_id, user=user)
    return NotificationOut.model_validate(notification, from_attributes=True)


@router.post("/read-all")
def mark_all_read_endpoint(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> dict[str, int]:
    return {"updated": mark_all_read(session, user=user)}
