from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from fastapi import HTTPException
from sqlalchemy import select

from tripledger.core.db import SessionLocal
from tripledger.modules.identity.models import (
    AccountingType,
    InvitationCode,
    Organization,
    Role,
    User,
)
from tripledger.modules.identity.permissions import get_permissions, has_role
from tripledger.modules.identity.service import (
    INVITATION_CODE_ALPHABET,
    assign_role,
    authenticate_user,
    create_user,
    generate_invitation_code,
    redeem_invitation_code,
    revoke_invitation_code,
    revoke_role,
    set_manager,
    update_organization_settings,
    verify_invitation_code,
)
from tripledger.modules.policy.service import create_grade


def test_invitation_code_places_new_user_in_the_organization(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        grade = create_grade(session, actor=admin, name="Associate", level=1)
        invitation = generate_invitation_code(
            session,
            actor=admin,
            role=Role.USER,
            manager_id=team.manager_id,
            grade_id=grade.id,
        )
        assert len(invitation.code) == 8
        assert set(invitation.code) <= set(INVITATION_CODE_ALPHABET)
        assert invitation.organization_id == team.organization_id

        assert verify_invitation_code(session, code=invitation.code.lower()).id == invitation.id

        user = redeem_invitation_code(
            session,
            code=invitation.code,
            email="New.Hire@Acme.io",
            password="password123",
            full_name="Nora Newhire",
        )
        assert user.email == "new.hire@acme.io"
        assert user.organization_id == team.organization_id
        assert user.manager_id == team.manager_id
        assert user.grade_id == grade.id
        assert user.roles == {Role.USER}

        session.refresh(invitation)
        assert invitation.is_used is True
        assert invitation.used_by_user_id == user.id

        with pytest.raises(HTTPException) as excinfo:
            redeem_invitation_code(
                session, code=invitation.code, email="second@acme.io", password="password123"
            )
        assert excinfo.value.status_code == 409


def test_invitation_for_a_specific_email_cannot_be_used_by_others(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        invitation = generate_invitation_code(
            session, actor=admin, role=Role.MANAGER, invited_email="lead@acme.io"
        )

        with pytest.raises(HTTPException) as excinfo:
            redeem_invitation_code(
                session, code=invitation.code, email="intruder@acme.io", password="password123"
            )
        assert excinfo.value.status_code == 403
        session.rollback()

        lead = redeem_invitation_code(
            session, code=invitation.code, email="lead@acme.io", password="password123"
        )
        assert lead.roles == {Role.MANAGER}
        assert lead.is_manager is True


def test_expired_and_revoked_invitations_are_refused(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        expired = generate_invitation_code(session, actor=admin)
        expired.expires_at = datetime.now(UTC) - timedelta(minutes=1)
        session.add(expired)
        session.commit()

        with pytest.raises(HTTPException) as excinfo:
            verify_invitation_code(session, code=expired.code)
        assert excinfo.value.status_code == 400

        revoked = generate_invitation_code(session, actor=admin)
        revoke_invitation_code(session, actor=admin, invitation_id=revoked.id)
        with pytest.raises(HTTPException) as excinfo:
            verify_invitation_code(session, code=revoked.code)
        assert excinfo.value.status_code == 404


def test_multi_use_invitation_counts_redemptions(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        invitation = generate_invitation_code(session, actor=admin, max_uses=2)
        redeem_invitation_code(
            session, code=invitation.code, email="one@acme.io", password="password123"
        )
        session.refresh(invitation)
        assert invitation.use_count == 1
        assert invitation.is_used is False

        redeem_invitation_code(
            session, code=invitation.code, email="two@acme.io", password="password123"
        )
        session.refresh(invitation)
        assert invitation.use_count == 2
        assert invitation.is_used is True


def test_invitations_cannot_grant_admin_and_need_permission(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        manager = session.get(User, team.manager_id)

        with pytest.raises(HTTPException) as excinfo:
            generate_invitation_code(session, actor=admin, role=Role.ADMIN)
        assert excinfo.value.status_code == 400

        with pytest.raises(HTTPException) as excinfo:
            generate_invitation_code(session, actor=manager)
        assert excinfo.value.status_code == 403

        assert session.scalars(select(InvitationCode)).all() == []


def test_external_accounting_requires_an_email(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        org = session.get(Organization, team.organization_id)

        with pytest.raises(HTTPException) as excinfo:
            update_organization_settings(
                session, organization=org, actor=admin, accounting_type=AccountingType.EXTERNAL
            )
        assert excinfo.value.status_code == 400
        session.rollback()

        org = update_organization_settings(
            session,
            organization=org,
            actor=admin,
            accounting_type=AccountingType.EXTERNAL,
            external_accounting_email="Books@Firm.example",
            external_accounting_name="Firm & Co",
        )
        assert org.accounting_type == AccountingType.EXTERNAL
        assert org.external_accounting_email == "books@firm.example"

        org = update_organization_settings(
            session, organization=org, actor=admin, accounting_type=AccountingType.INTERNAL
        )
        assert org.external_accounting_email is None
        assert org.external_accounting_name is None


def test_accounting_email_on_an_internal_organization_is_refused(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        org = session.get(Organization, team.organization_id)

        with pytest.raises(HTTPException) as excinfo:
            update_organization_settings(
                session,
                organization=org,
                actor=admin,
                external_accounting_email="books@firm.example",
            )
        assert excinfo.value.status_code == 400
        session.rollback()

        org = session.get(Organization, team.organization_id)
        assert org.accounting_type == AccountingType.INTERNAL
        assert org.external_accounting_email is None

        with pytest.raises(HTTPException) as excinfo:
            update_organization_settings(
                session,
                organization=org,
                actor=admin,
                accounting_type=AccountingType.INTERNAL,
                external_accounting_email="books@firm.example",
            )
        assert excinfo.value.status_code == 400


def test_org_admin_cannot_change_another_organization(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        other = Organization(name="Other Co", home_currency="EUR")
        session.add(other)
        session.commit()

        with pytest.raises(HTTPException) as excinfo:
            update_organization_settings(session, organization=other, actor=admin, name="Mine")
        assert excinfo.value.status_code == 403


def test_reporting_lines_cannot_loop(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        manager = session.get(User, team.manager_id)
        employee = session.get(User, team.employee_id)

        set_manager(session, actor=admin, user=manager, manager_id=admin.id)
        assert manager.manager_id == admin.id

        with pytest.raises(HTTPException) as excinfo:
            set_manager(session, actor=admin, user=admin, manager_id=manager.id)
        assert excinfo.value.status_code == 400

        with pytest.raises(HTTPException) as excinfo:
            set_manager(session, actor=admin, user=manager, manager_id=employee.id)
        assert excinfo.value.status_code == 400

        with pytest.raises(HTTPException) as excinfo:
            set_manager(session, actor=admin, user=employee, manager_id=employee.id)
        assert excinfo.value.status_code == 400


def test_permissions_follow_the_role_set(team):
    with SessionLocal() as session:
        employee = session.get(User, team.employee_id)
        books = session.get(User, team.accounting_id)
        org_admin = session.get(User, team.org_admin_id)

        assert has_role(employee, Role.USER)
        assert not has_role(employee, Role.MANAGER)
        perms = get_permissions(employee)
        assert not perms.can_approve_travel
        assert not perms.can_view_org_reports

        perms = get_permissions(books)
        assert perms.can_mark_reimbursed and perms.can_manage_fx
        assert perms.can_approve_travel
        assert not perms.can_approve_reports

        perms = get_permissions(org_admin)
        assert perms.can_manage_policy and perms.can_manage_invitations
        assert not perms.is_admin
        assert not perms.can_manage_organizations


def test_role_changes(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)

        employee = assign_role(session, actor=admin, user=employee, role=Role.MANAGER)
        assert employee.roles == {Role.USER, Role.MANAGER}
        assert employee.is_manager is True

        employee = revoke_role(session, actor=admin, user=employee, role=Role.MANAGER)
        assert employee.roles == {Role.USER}

        with pytest.raises(HTTPException) as excinfo:
            assign_role(session, actor=admin, user=employee, role=Role.ADMIN)
        assert excinfo.value.status_code == 403

        with pytest.raises(HTTPException) as excinfo:
            revoke_role(session, actor=admin, user=admin, role=Role.ORG_ADMIN)
        assert excinfo.value.status_code == 400


def test_authentication_and_password_rules(team):
    with SessionLocal() as session:
        user = authenticate_user(session, email="employee@acme.io", password="password123")
        assert user.id == team.employee_id

        with pytest.raises(HTTPException) as excinfo:
            authenticate_user(session, email="employee@acme.io", password="wrong-password")
        assert excinfo.value.status_code == 401

        with pytest.raises(HTTPException) as excinfo:
            create_user(session, email="short@acme.io", password="short")
        assert excinfo.value.status_code == 400

        with pytest.raises(HTTPException) as excinfo:
            create_user(session, email="EMPLOYEE@acme.io", password="password123")
        assert excinfo.value.status_code == 409
