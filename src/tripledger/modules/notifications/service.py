from __future__ import annotations

import uuid
from datetime import UTC, datetime

from fastapi import HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from tripledger.modules.identity.models import User
from tripledger.modules.notifications.models import Notification


def notify(
    session: Session,
    *,
    user_id: uuid.UUID,
    type: str,
    title: str,
    message: str,
    report_id: uuid.UUID | None = None,
    travel_request_id: uuid.UUID | None = None,
) -> Notification:
    """Stage an in-app notification; the caller owns the transaction."""
    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        report_id=report_id,
        travel_request_id=travel_request_id,
        is_read=False,
    )
    session.add(notification)
    return notification


def list_notifications(
    session: Session, *, user: User, unread_only: bool = False, limit: int = 50
) -> list[Notification]:
    q = select(Notification).where(Notification.user_id == user.id)
    if unread_only:
        q = q.where(Notification.is_read.is_(False))
    return list(session.scalars(q.order_by(Notification.created_at.desc()).limit(limit)))


def mark_read(session: Session, *, notification_id: uuid.UUID, user: User) -> Notification:
    notification = session.get(Notification, notification_id)
    if not notification or notification.user_id != user.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = datetime.now(UTC)
        session.add(notification)
        session.commit()
        session.refresh(notification)
    return notification


def mark_all_read(session: Session, *, user: User) -> int:
    result = session.execute(
        update(Notification)
        .where(Notification.user_id == user.id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=datetime.now(UTC))
    )
    session.commit()
    return int(result.rowcount or 0)
