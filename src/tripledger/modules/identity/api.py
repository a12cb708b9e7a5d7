from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from tripledger.api.deps import get_current_user, require_permission
from tripledger.core.db import db_session
from tripledger.core.security import create_access_token
from tripledger.modules.identity.models import Role, User
from tripledger.modules.identity.permissions import get_permissions
from tripledger.modules.identity.schemas import (
    ActiveChange,
    GradeChange,
    InvitationCheckOut,
    InvitationCreate,
    InvitationOut,
    InvitationRedeem,
    ManagerChange,
    OrganizationCreate,
    OrganizationOut,
    OrganizationUpdate,
    ProfileUpdate,
    RoleChange,
    TokenOut,
    UserCreate,
    UserOut,
)
from tripledger.modules.identity.service import (
    assign_role,
    authenticate_user,
    create_organization,
    create_user,
    generate_invitation_code,
    get_organization,
    get_user,
    list_invitation_codes,
    list_organizations,
    list_users,
    redeem_invitation_code,
    revoke_invitation_code,
    revoke_role,
    set_grade,
    set_manager,
    set_user_active,
    update_organization_settings,
    update_profile,
    verify_invitation_code,
)

router = APIRouter(tags=["identity"])


def _user_out(user: User) -> UserOut:
    return UserOut.model_validate(user, from_attributes=True)


@router.post("/auth/token", response_model=TokenOut)
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    session: Session = Depends(db_session),
) -> TokenOut:
    user = authenticate_user(session, email=form_data.username, password=form_data.password)
    token = create_access_token(subject=str(user.id))
    return TokenOut(access_token=token)


@router.get("/auth/me", response_model=UserOut)
def me(user: User = Depends(get_current_user)) -> UserOut:
    return _user_out(user)


@router.get("/auth/me/permissions")
def my_permissions(user: User = Depends(get_current_user)) -> dict[str, bool]:
    perms = get_permissions(user)
    return {k: v for k, v in vars(perms).items() if isinstance(v, bool)}


@router.patch("/auth/me", response_model=UserOut)
def update_me(
    payload: ProfileUpdate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> UserOut:
    return _user_out(update_profile(session, user=user, **payload.model_dump(exclude_unset=True)))


@router.get("/users", response_model=list[UserOut])
def list_users_endpoint(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[UserOut]:
    return [_user_out(u) for u in list_users(session, actor=user)]


@router.post("/users", response_model=UserOut)
def create_user_endpoint(
    payload: UserCreate,
    session: Session = Depends(db_session),
    _: User = Depends(require_permission("can_manage_organizations")),
) -> UserOut:
    user = create_user(
        session,
        email=str(payload.email),
        password=payload.password,
        roles=payload.roles,
        full_name=payload.full_name,
        organization_id=payload.organization_id,
        manager_id=payload.manager_id,
        grade_id=payload.grade_id,
        is_manager=payload.is_manager,
        department=payload.department,
        employee_number=payload.employee_number,
    )
    return _user_out(user)


@router.post("/users/{user_id}/roles", response_model=UserOut)
def assign_role_endpoint(
    user_id: uuid.UUID,
    payload: RoleChange,
    session: Session = Depends(db_session),
    actor: User = Depends(get_current_user),
) -> UserOut:
    target = get_user(session, user_id=user_id)
    return _user_out(assign_role(session, actor=actor, user=target, role=payload.role))


@router.delete("/users/{user_id}/roles/{role}", response_model=UserOut)
def revoke_role_endpoint(
    user_id: uuid.UUID,
    role: Role,
    session: Session = Depends(db_session),
    actor: User = Depends(get_current_user),
) -> UserOut:
    target = get_user(session, user_id=user_id)
    return _user_out(revoke_role(session, actor=actor, user=target, role=role))


@router.put("/users/{user_id}/manager", response_model=UserOut)
def set_manager_endpoint(
    user_id: uuid.UUID,
    payload: ManagerChange,
    session: Session = Depends(db_session),
    actor: User = Depends(get_current_user),
) -> UserOut:
    target = get_user(session, user_id=user_id)
    return _user_out(set_manager(session, actor=actor, user=target, manager_id=payload.manager_id))


@router.put("/users/{user_id}/grade", response_model=UserOut)
def set_grade_endpoint(
    user_id: uuid.UUID,
    payload: GradeChange,
    session: Session = Depends(db_session),
    actor: User = Depends(get_current_user),
) -> UserOut:
    target = get_user(session, user_id=user_id)
    return _user_out(set_grade(session, actor=actor, user=target, grade_id=payload.grade_id))


@router.put("/users/{user_id}/active", response_model=UserOut)
def set_active_endpoint(
    user_id: uuid.UUID,
    payload: ActiveChange,
    session: Session = Depends(db_session),
    actor: User = Depends(get_current_user),
) -> UserOut:
    target = get_user(session, user_id=user_id)
    return _user_out(set_user_active(session, actor=actor, user=target, is_active=payload.is_active))


@router.post("/organizations", response_model=OrganizationOut)
def create_organization_endpoint(
    payload: OrganizationCreate,
    session: Session = Depends(db_session),
    _: User = Depends(require_permission("can_manage_organizations")),
) -> OrganizationOut:
    org = create_organization(
        session,
        name=payload.name,
        description=payload.description,
        home_country=payload.home_country,
        home_currency=payload.home_currency,
        accounting_type=payload.accounting_type,
        external_accounting_email=(
            str(payload.external_accounting_email) if payload.external_accounting_email else None
        ),
        external_accounting_name=payload.external_accounting_name,
    )
    return OrganizationOut.model_validate(org, from_attributes=True)


@router.get("/organizations", response_model=list[OrganizationOut])
def list_organizations_endpoint(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[OrganizationOut]:
    return [
        OrganizationOut.model_validate(o, from_attributes=True)
        for o in list_organizations(session, actor=user)
    ]


@router.patch("/organizations/{organization_id}", response_model=OrganizationOut)
def update_organization_endpoint(
    organization_id: uuid.UUID,
    payload: OrganizationUpdate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> OrganizationOut:
    org = get_organization(session, organization_id=organization_id)
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("external_accounting_email") is not None:
        changes["external_accounting_email"] = str(changes["external_accounting_email"])
    updated = update_organization_settings(session, organization=org, actor=user, **changes)
    return OrganizationOut.model_validate(updated, from_attributes=True)


@router.post("/invitations", response_model=InvitationOut)
def create_invitation_endpoint(
    payload: InvitationCreate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> InvitationOut:
    invitation = generate_invitation_code(
        session,
        actor=user,
        role=payload.role,
        organization_id=payload.organization_id,
        manager_id=payload.manager_id,
        grade_id=payload.grade_id,
        expires_in_days=payload.expires_in_days,
        max_uses=payload.max_uses,
        invited_email=str(payload.invited_email) if payload.invited_email else None,
    )
    return InvitationOut.model_validate(invitation, from_attributes=True)


@router.get("/invitations", response_model=list[InvitationOut])
def list_invitations_endpoint(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[InvitationOut]:
    return [
        InvitationOut.model_validate(i, from_attributes=True)
        for i in list_invitation_codes(session, actor=user)
    ]


@router.delete("/invitations/{invitation_id}", response_model=InvitationOut)
def revoke_invitation_endpoint(
    invitation_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> InvitationOut:
    invitation = revoke_invitation_code(session, actor=user, invitation_id=invitation_id)
    return InvitationOut.model_validate(invitation, from_attributes=True)


# Public: no bearer token while registering.


@router.get("/invitations/verify/{code}", response_model=InvitationCheckOut)
def verify_invitation_endpoint(
    code: str, session: Session = Depends(db_session)
) -> InvitationCheckOut:
    invitation = verify_invitation_code(session, code=code)
    return InvitationCheckOut(
        code=invitation.code,
        organization_id=invitation.organization_id,
        organization_name=invitation.organization.name,
        role=invitation.role,
        expires_at=invitation.expires_at,
    )


@router.post("/invitations/redeem", response_model=TokenOut)
def redeem_invitation_endpoint(
    payload: InvitationRedeem, session: Session = Depends(db_session)
) -> TokenOut:
    user = redeem_invitation_code(
        session,
        code=payload.code,
        email=str(payload.email),
        password=payload.password,
        full_name=payload.full_name,
        department=payload.department,
        employee_number=payload.employee_number,
    )
    return TokenOut(access_token=create_access_token(subject=str(user.id)))
