from __future__ import annotations

import uuid

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from tripledger.core.db import db_session
from tripledger.core.logging import set_user_context
from tripledger.core.security import decode_access_token
from tripledger.modules.identity.models import User
from tripledger.modules.identity.permissions import Permissions, get_permissions

bearer_scheme = HTTPBearer(auto_error=False)

def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    session: Session = Depends(db_session),
) -> User:
    token = credentials.credentials if credentials else None
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    subject = decode_access_token(token)
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    try:
        user_id = uuid.UUID(subject)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from e

    user = session.scalar(select(User).where(User.id == user_id))
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user")
    set_user_context(
        str(user.id),
        organization_id=str(user.organization_id) if user.organization_id else None,
    )
    return user


def require_permission(name: str):
    """Dependency guarding an endpoint on one boolean of ``Permissions``."""

    if name not in Permissions.__dataclass_fields__:
        raise ValueError(f"Unknown permission: {name}")

    def _checker(user: User = Depends(get_current_user)) -> User:
        if not getattr(get_permissions(user), name):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions"
            )
        return user

    return _checker
