from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from tripledger.core.logging import get_logger, log_event
from tripledger.modules.audit.models import AuditAction, AuditEntityType, PolicyAuditLog
from tripledger.modules.identity.models import User
from tripledger.modules.identity.permissions import get_permissions

logger = get_logger(__name__)


def append_audit_entry(
    session: Session,
    *,
    organization_id: uuid.UUID,
    user_id: uuid.UUID | None,
    action: AuditAction,
    entity_type: AuditEntityType,
    entity_id: uuid.UUID | None,
    entity_name: str | None,
    old_values: dict | None = None,
    new_values: dict | None = None,
) -> PolicyAuditLog:
    """Stage an append-only audit row inside the caller's transaction."""
    entry = PolicyAuditLog(
        organization_id=organization_id,
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        entity_name=entity_name,
        old_values=old_values,
        new_values=new_values,
    )
    session.add(entry)
    log_event(
        logger,
        "policy.audit.append",
        action=action.value,
        entity_type=entity_type.value,
        entity_id=str(entity_id) if entity_id else None,
    )
    return entry


def list_audit_log(
    session: Session,
    *,
    actor: User,
    organization_id: uuid.UUID | None = None,
    entity_type: AuditEntityType | None = None,
    action: AuditAction | None = None,
    user_id: uuid.UUID | None = None,
    search: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[PolicyAuditLog]:
    perms = get_permissions(actor)
    if not perms.can_manage_policy:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")

    org_id = organization_id or actor.organization_id
    if not perms.is_admin and org_id != actor.organization_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")

    q = select(PolicyAuditLog)
    if org_id is not None:
        q = q.where(PolicyAuditLog.organization_id == org_id)
    if entity_type is not None:
        q = q.where(PolicyAuditLog.entity_type == entity_type)
    if action is not None:
        q = q.where(PolicyAuditLog.action == action)
    if user_id is not None:
        q = q.where(PolicyAuditLog.user_id == user_id)
    if search:
        q = q.where(PolicyAuditLog.entity_name.ilike(f"%{search.strip()}%"))
    if date_from is not None:
        q = q.where(PolicyAuditLog.created_at >= date_from)
    if date_to is not None:
        q = q.where(PolicyAuditLog.created_at <= date_to)

    q = q.order_by(PolicyAuditLog.created_at.desc()).offset(max(offset, 0)).limit(min(limit, 500))
    return list(session.scalars(q))
