from __future__ import annotations

import secrets
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from tripledger.core.config import settings
from tripledger.core.currencies import normalize_currency
from tripledger.core.db import lock_for_update
from tripledger.core.logging import get_logger, log_event
from tripledger.core.models import as_utc
from tripledger.core.security import hash_password, verify_password
from tripledger.modules.identity.models import (
    AccountingType,
    InvitationCode,
    Organization,
    Role,
    User,
    UserRoleAssignment,
)
from tripledger.modules.identity.permissions import get_permissions, is_manager_like
from tripledger.modules.notifications.dispatch import EmailMessage, dispatch_emails

logger = get_logger(__name__)

INVITATION_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_CODE_ATTEMPTS = 10


def get_user_by_email(session: Session, *, email: str) -> User | None:
    return session.scalar(select(User).where(User.email == email.strip().lower()))


def get_user(session: Session, *, user_id: uuid.UUID) -> User:
    user = session.scalar(select(User).where(User.id == user_id))
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


def _add_user(
    session: Session,
    *,
    email: str,
    password: str,
    roles: Iterable[Role],
    full_name: str | None = None,
    organization_id: uuid.UUID | None = None,
    manager_id: uuid.UUID | None = None,
    grade_id: uuid.UUID | None = None,
    is_manager: bool = False,
    department: str | None = None,
    employee_number: str | None = None,
) -> User:
    email_norm = email.strip().lower()
    if get_user_by_email(session, email=email_norm):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already exists")
    if len(password) < 8:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Password must be at least 8 characters",
        )

    user = User(
        email=email_norm,
        full_name=full_name,
        password_hash=hash_password(password),
        organization_id=organization_id,
        manager_id=manager_id,
        grade_id=grade_id,
        is_manager=is_manager,
        department=department,
        employee_number=employee_number,
        is_active=True,
    )
    user.role_assignments = [UserRoleAssignment(role=r) for r in sorted(set(roles))]
    session.add(user)
    session.flush()
    return user


def create_user(
    session: Session,
    *,
    email: str,
    password: str,
    roles: Iterable[Role] = (Role.USER,),
    full_name: str | None = None,
    organization_id: uuid.UUID | None = None,
    manager_id: uuid.UUID | None = None,
    grade_id: uuid.UUID | None = None,
    is_manager: bool = False,
    department: str | None = None,
    employee_number: str | None = None,
) -> User:
    user = _add_user(
        session,
        email=email,
        password=password,
        roles=roles,
        full_name=full_name,
        organization_id=organization_id,
        manager_id=manager_id,
        grade_id=grade_id,
        is_manager=is_manager,
        department=department,
        employee_number=employee_number,
    )
    session.commit()
    session.refresh(user)
    log_event(logger, "identity.user.created", created_user_id=str(user.id))
    return user


def authenticate_user(session: Session, *, email: str, password: str) -> User:
    user = get_user_by_email(session, email=email)
    if not user or not user.is_active or not verify_password(password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    return user


def _require_org_scope(actor: User, organization_id: uuid.UUID | None) -> None:
    perms = get_permissions(actor)
    if perms.is_admin:
        return
    if organization_id is None or actor.organization_id != organization_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")


def list_users(session: Session, *, actor: User) -> list[User]:
    perms = get_permissions(actor)
    q = select(User).order_by(User.email.asc())
    if perms.is_admin:
        return list(session.scalars(q))
    if perms.can_manage_users or perms.can_view_org_reports:
        return list(session.scalars(q.where(User.organization_id == actor.organization_id)))
    if is_manager_like(actor):
        return list(session.scalars(q.where(User.manager_id == actor.id)))
    return [actor]


def update_profile(session: Session, *, user: User, **changes) -> User:
    for field in ("full_name", "username", "department", "employee_number"):
        value = changes.get(field)
        if value is not None:
            setattr(user, field, value)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def assign_role(session: Session, *, actor: User, user: User, role: Role) -> User:
    perms = get_permissions(actor)
    if not perms.can_manage_users:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    _require_org_scope(actor, user.organization_id)
    if role == Role.ADMIN and not perms.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")

    if role not in user.roles:
        user.role_assignments.append(UserRoleAssignment(role=role))
        if role in {Role.MANAGER, Role.ORG_ADMIN}:
            user.is_manager = True
        session.add(user)
        session.commit()
        session.refresh(user)
        log_event(logger, "identity.role.assigned", target_user_id=str(user.id), role=role.value)
    return user


def revoke_role(session: Session, *, actor: User, user: User, role: Role) -> User:
    perms = get_permissions(actor)
    if not perms.can_manage_users:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    _require_org_scope(actor, user.organization_id)
    if role == Role.ADMIN and not perms.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    if actor.id == user.id and role in {Role.ADMIN, Role.ORG_ADMIN}:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot revoke your own admin role"
        )

    remaining = [a for a in user.role_assignments if a.role != role]
    if len(remaining) != len(user.role_assignments):
        user.role_assignments = remaining
        session.add(user)
        session.commit()
        session.refresh(user)
        log_event(logger, "identity.role.revoked", target_user_id=str(user.id), role=role.value)
    return user


def set_manager(
    session: Session, *, actor: User, user: User, manager_id: uuid.UUID | None
) -> User:
    if not get_permissions(actor).can_manage_users:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    _require_org_scope(actor, user.organization_id)

    if manager_id is not None:
        if manager_id == user.id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="A user cannot manage themselves"
            )
        manager = get_user(session, user_id=manager_id)
        if manager.organization_id != user.organization_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Manager must belong to the same organization",
            )
        if not manager.is_active or not is_manager_like(manager):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="User is not an active manager"
            )
        # Walk upwards so a reporting line never loops back to this user.
        seen: set[uuid.UUID] = set()
        cursor: User | None = manager
        while cursor is not None and cursor.manager_id is not None:
            if cursor.manager_id == user.id or cursor.manager_id in seen:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Manager assignment would create a cycle",
                )
            seen.add(cursor.manager_id)
            cursor = session.get(User, cursor.manager_id)

    user.manager_id = manager_id
    session.add(user)
    session.commit()
    session.refresh(user)
    log_event(
        logger,
        "identity.manager.set",
        target_user_id=str(user.id),
        manager_id=str(manager_id) if manager_id else None,
    )
    return user


def set_grade(session: Session, *, actor: User, user: User, grade_id: uuid.UUID | None) -> User:
    from tripledger.modules.policy.models import EmployeeGrade

    if not get_permissions(actor).can_manage_users:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    _require_org_scope(actor, user.organization_id)
    if grade_id is not None:
        grade = session.get(EmployeeGrade, grade_id)
        if not grade or grade.organization_id != user.organization_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Grade not found")
    user.grade_id = grade_id
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def set_user_active(session: Session, *, actor: User, user: User, is_active: bool) -> User:
    if not get_permissions(actor).can_manage_users:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    _require_org_scope(actor, user.organization_id)
    if actor.id == user.id and not is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot deactivate yourself"
        )
    user.is_active = is_active
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


# Organizations


def create_organization(
    session: Session,
    *,
    name: str,
    description: str | None = None,
    home_country: str | None = None,
    home_currency: str | None = None,
    accounting_type: AccountingType = AccountingType.INTERNAL,
    external_accounting_email: str | None = None,
    external_accounting_name: str | None = None,
) -> Organization:
    name = name.strip()
    if not name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Name is required")
    if session.scalar(select(Organization).where(Organization.name == name)):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Organization already exists"
        )
    currency = normalize_currency(home_currency or settings.default_home_currency)
    if not currency:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="home_currency must be a supported ISO-4217 code",
        )
    org = Organization(
        name=name,
        description=description,
        home_country=home_country,
        home_currency=currency,
        accounting_type=AccountingType.INTERNAL,
        is_active=True,
    )
    _apply_accounting_settings(
        org,
        accounting_type=accounting_type,
        external_accounting_email=external_accounting_email,
        external_accounting_name=external_accounting_name,
    )
    session.add(org)
    session.commit()
    session.refresh(org)
    log_event(logger, "identity.organization.created", organization_id=str(org.id))
    return org


def list_organizations(session: Session, *, actor: User) -> list[Organization]:
    q = select(Organization).order_by(Organization.name.asc())
    if get_permissions(actor).can_manage_organizations:
        return list(session.scalars(q))
    if actor.organization_id is None:
        return []
    return list(session.scalars(q.where(Organization.id == actor.organization_id)))


def get_organization(session: Session, *, organization_id: uuid.UUID) -> Organization:
    org = session.get(Organization, organization_id)
    if not org:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
    return org


def _apply_accounting_settings(
    org: Organization,
    *,
    accounting_type: AccountingType | None,
    external_accounting_email: str | None,
    external_accounting_name: str | None,
) -> None:
    target = accounting_type or org.accounting_type
    if target == AccountingType.INTERNAL:
        if (external_accounting_email or "").strip():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="An accounting email address needs accounting_type 'external'",
            )
        org.accounting_type = AccountingType.INTERNAL
        org.external_accounting_email = None
        org.external_accounting_name = None
        return

    email = (external_accounting_email or org.external_accounting_email or "").strip()
    if not email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="External accounting requires an accounting email address",
        )
    org.accounting_type = AccountingType.EXTERNAL
    org.external_accounting_email = email.lower()
    if external_accounting_name is not None:
        org.external_accounting_name = external_accounting_name.strip() or None


def update_organization_settings(
    session: Session,
    *,
    organization: Organization,
    actor: User,
    name: str | None = None,
    description: str | None = None,
    home_country: str | None = None,
    home_currency: str | None = None,
    accounting_type: AccountingType | None = None,
    external_accounting_email: str | None = None,
    external_accounting_name: str | None = None,
    is_active: bool | None = None,
) -> Organization:
    perms = get_permissions(actor)
    if not (perms.is_admin or perms.can_manage_users):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    _require_org_scope(actor, organization.id)

    _apply_accounting_settings(
        organization,
        accounting_type=accounting_type,
        external_accounting_email=external_accounting_email,
        external_accounting_name=external_accounting_name,
    )
    if name is not None and name.strip():
        organization.name = name.strip()
    if description is not None:
        organization.description = description
    if home_country is not None:
        organization.home_country = home_country.strip() or None
    if home_currency is not None:
        currency = normalize_currency(home_currency)
        if not currency:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="home_currency must be a supported ISO-4217 code",
            )
        organization.home_currency = currency
    if is_active is not None:
        if not perms.can_manage_organizations:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
        organization.is_active = is_active

    session.add(organization)
    session.commit()
    session.refresh(organization)
    log_event(
        logger,
        "identity.organization.updated",
        organization_id=str(organization.id),
        accounting_type=organization.accounting_type.value,
    )
    return organization


# Invitation codes


def _new_code(session: Session) -> str:
    for _ in range(_CODE_ATTEMPTS):
        code = "".join(
            secrets.choice(INVITATION_CODE_ALPHABET)
            for _ in range(settings.invitation_code_length)
        )
        if not session.scalar(select(InvitationCode.id).where(InvitationCode.code == code)):
            return code
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Could not allocate a unique invitation code",
    )


def generate_invitation_code(
    session: Session,
    *,
    actor: User,
    role: Role = Role.USER,
    organization_id: uuid.UUID | None = None,
    manager_id: uuid.UUID | None = None,
    grade_id: uuid.UUID | None = None,
    expires_in_days: int | None = None,
    max_uses: int | None = None,
    invited_email: str | None = None,
) -> InvitationCode:
    from tripledger.modules.policy.models import EmployeeGrade

    perms = get_permissions(actor)
    if not perms.can_manage_invitations:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    org_id = organization_id or actor.organization_id
    if org_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="organization_id is required"
        )
    _require_org_scope(actor, org_id)
    org = get_organization(session, organization_id=org_id)
    if role == Role.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invitation codes cannot grant the admin role",
        )

    if manager_id is not None:
        manager = get_user(session, user_id=manager_id)
        if manager.organization_id != org.id or not is_manager_like(manager):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Manager must be a manager in the same organization",
            )
    if grade_id is not None:
        grade = session.get(EmployeeGrade, grade_id)
        if not grade or grade.organization_id != org.id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Grade not found")

    days = expires_in_days if expires_in_days is not None else settings.invitation_code_expiry_days
    uses = max_uses if max_uses is not None else settings.invitation_code_max_uses
    if days < 1 or uses < 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Expiry and max uses must be positive",
        )

    invitation = InvitationCode(
        code=_new_code(session),
        organization_id=org.id,
        role=role,
        manager_id=manager_id,
        grade_id=grade_id,
        created_by_user_id=actor.id,
        invited_email=invited_email.strip().lower() if invited_email else None,
        expires_at=datetime.now(UTC) + timedelta(days=days),
        max_uses=uses,
        use_count=0,
        is_used=False,
        is_active=True,
    )
    session.add(invitation)
    session.commit()
    session.refresh(invitation)
    log_event(
        logger,
        "identity.invitation.created",
        invitation_id=str(invitation.id),
        organization_id=str(org.id),
        role=role.value,
        max_uses=uses,
    )

    if invitation.invited_email:
        dispatch_emails(
            [
                EmailMessage(
                    template="invitation",
                    to=[invitation.invited_email],
                    context={
                        "organization_name": org.name,
                        "code": invitation.code,
                        "role": role.value,
                        "expires_at": invitation.expires_at,
                        "register_url": f"{settings.base_url.rstrip('/')}/register?code="
                        f"{invitation.code}",
                    },
                )
            ]
        )
    return invitation


def _check_invitation(invitation: InvitationCode | None) -> InvitationCode:
    if invitation is None or not invitation.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Invitation code not found"
        )
    expires_at = as_utc(invitation.expires_at)
    if expires_at is not None and expires_at < datetime.now(UTC):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invitation code has expired"
        )
    if invitation.is_used or invitation.use_count >= invitation.max_uses:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Invitation code already used"
        )
    return invitation


def _normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def verify_invitation_code(session: Session, *, code: str) -> InvitationCode:
    invitation = session.scalar(
        select(InvitationCode).where(InvitationCode.code == _normalize_code(code))
    )
    return _check_invitation(invitation)


def redeem_invitation_code(
    session: Session,
    *,
    code: str,
    email: str,
    password: str,
    full_name: str | None = None,
    department: str | None = None,
    employee_number: str | None = None,
) -> User:
    invitation = session.scalar(
        lock_for_update(
            select(InvitationCode).where(InvitationCode.code == _normalize_code(code))
        )
    )
    invitation = _check_invitation(invitation)
    if invitation.invited_email and invitation.invited_email != email.strip().lower():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invitation code was issued for a different email address",
        )

    user = _add_user(
        session,
        email=email,
        password=password,
        roles=[invitation.role],
        full_name=full_name,
        organization_id=invitation.organization_id,
        manager_id=invitation.manager_id,
        grade_id=invitation.grade_id,
        is_manager=invitation.role in {Role.MANAGER, Role.ORG_ADMIN},
        department=department,
        employee_number=employee_number,
    )

    invitation.use_count += 1
    invitation.used_at = datetime.now(UTC)
    invitation.used_by_user_id = user.id
    if invitation.use_count >= invitation.max_uses:
        invitation.is_used = True
    session.add(invitation)
    session.commit()
    session.refresh(user)
    log_event(
        logger,
        "identity.invitation.redeemed",
        invitation_id=str(invitation.id),
        new_user_id=str(user.id),
        use_count=invitation.use_count,
    )
    return user


def revoke_invitation_code(
    session: Session, *, actor: User, invitation_id: uuid.UUID
) -> InvitationCode:
    invitation = session.get(InvitationCode, invitation_id)
    if not invitation:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Invitation code not found"
        )
    if not get_permissions(actor).can_manage_invitations:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    _require_org_scope(actor, invitation.organization_id)
    invitation.is_active = False
    session.add(invitation)
    session.commit()
    session.refresh(invitation)
    log_event(logger, "identity.invitation.revoked", invitation_id=str(invitation.id))
    return invitation


def list_invitation_codes(session: Session, *, actor: User) -> list[InvitationCode]:
    perms = get_permissions(actor)
    if not perms.can_manage_invitations:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    q = select(InvitationCode).order_by(InvitationCode.created_at.desc())
    if not perms.is_admin:
        q = q.where(InvitationCode.organization_id == actor.organization_id)
    return list(session.scalars(q))
