from __future__ import annotations

from sqlalchemy import select

from tripledger.core.config import settings
from tripledger.core.db import SessionLocal, engine
from tripledger.core.logging import get_logger, log_event
from tripledger.core.models import Base
from tripledger.core.security import hash_password
from tripledger.modules.identity.models import Role, User, UserRoleAssignment

logger = get_logger(__name__)


def bootstrap() -> None:
    if settings.environment == "dev" and str(settings.database_url).startswith("sqlite"):
        import tripledger.models  # noqa: F401

        Base.metadata.create_all(engine)

    if not settings.init_admin_email or not settings.init_admin_password:
        return

    # Support comma-separated list of admin emails
    admin_emails = [
        e.strip().lower() for e in settings.init_admin_email.split(",") if e.strip()
    ]
    if not admin_emails:
        return

    with SessionLocal() as session:
        for email in admin_emails:
            existing = session.scalar(select(User).where(User.email == email))
            if existing:
                # Ensure existing user is admin
                if Role.ADMIN not in existing.roles:
                    existing.role_assignments.append(UserRoleAssignment(role=Role.ADMIN))
                    session.add(existing)
                continue
            admin = User(
                email=email,
                full_name="Admin",
                password_hash=hash_password(settings.init_admin_password),
                is_active=True,
            )
            admin.role_assignments = [UserRoleAssignment(role=Role.ADMIN)]
            session.add(admin)
            log_event(logger, "bootstrap.admin.created", email=email)
        session.commit()
