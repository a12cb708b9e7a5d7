from __future__ import annotations

from decimal import Decimal

import pytest
from fastapi import HTTPException

from tripledger.core.db import SessionLocal
from tripledger.modules.audit.models import AuditAction, AuditEntityType
from tripledger.modules.audit.service import list_audit_log
from tripledger.modules.identity.models import Role, User
from tripledger.modules.identity.service import create_organization, create_user, set_grade
from tripledger.modules.policy.models import ActionType, PerType, TravelCategory
from tripledger.modules.policy.service import (
    create_grade,
    create_restriction,
    create_rule,
    delete_grade,
    delete_rule,
    my_policy,
    update_rule,
)


def test_rule_lifecycle_is_recorded_with_before_and_after_values(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        rule = create_rule(
            session,
            actor=admin,
            category=TravelCategory.ACCOMMODATION,
            max_amount=Decimal("150"),
            currency="usd",
            per_type=PerType.PER_DAY,
        )
        assert rule.currency == "USD"
        rule_id = rule.id

        update_rule(session, actor=admin, rule_id=rule_id, max_amount=Decimal("175"))
        update_rule(session, actor=admin, rule_id=rule_id, is_active=False)
        # No-op edits leave no trace.
        update_rule(session, actor=admin, rule_id=rule_id, is_active=False)
        delete_rule(session, actor=admin, rule_id=rule_id)

        entries = list(reversed(list_audit_log(session, actor=admin)))
        assert [e.action for e in entries] == [
            AuditAction.CREATE,
            AuditAction.UPDATE,
            AuditAction.DEACTIVATE,
            AuditAction.DELETE,
        ]
        assert all(e.entity_type == AuditEntityType.TRAVEL_RULE for e in entries)
        assert all(e.entity_id == rule_id for e in entries)
        assert all(e.user_id == admin.id for e in entries)

        created, updated, deactivated, deleted = entries
        assert created.old_values is None
        assert created.new_values["max_amount"] == "150.00"
        assert updated.old_values["max_amount"] == "150.00"
        assert updated.new_values["max_amount"] == "175.00"
        assert deactivated.new_values["is_active"] is False
        assert deleted.new_values is None
        assert deleted.old_values["category"] == "accommodation"


def test_audit_log_filters(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        create_grade(session, actor=admin, name="Director", level=4)
        create_restriction(
            session,
            actor=admin,
            name="No first class",
            keywords=["First Class"],
            action_type=ActionType.BLOCK,
        )

        grades = list_audit_log(session, actor=admin, entity_type=AuditEntityType.EMPLOYEE_GRADE)
        assert [e.entity_name for e in grades] == ["Director"]

        found = list_audit_log(session, actor=admin, search="first")
        assert [e.entity_type for e in found] == [AuditEntityType.RESTRICTION]

        deletes = list_audit_log(session, actor=admin, action=AuditAction.DELETE)
        assert deletes == []


def test_audit_log_is_for_policy_managers_of_the_same_organization(team):
    with SessionLocal() as session:
        manager = session.get(User, team.manager_id)
        with pytest.raises(HTTPException) as excinfo:
            list_audit_log(session, actor=manager)
        assert excinfo.value.status_code == 403

        other_org = create_organization(session, name="Globex", home_currency="EUR")
        other_admin = create_user(
            session,
            email="admin@globex.io",
            password="password123",
            roles=[Role.ORG_ADMIN],
            organization_id=other_org.id,
        )
        with pytest.raises(HTTPException) as excinfo:
            list_audit_log(session, actor=other_admin, organization_id=team.organization_id)
        assert excinfo.value.status_code == 403

        with pytest.raises(HTTPException) as excinfo:
            create_grade(
                session,
                actor=other_admin,
                name="Intern",
                organization_id=team.organization_id,
            )
        assert excinfo.value.status_code == 403


def test_grade_in_use_cannot_be_deleted(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        grade = create_grade(session, actor=admin, name="Senior", level=3)
        set_grade(session, actor=admin, user=employee, grade_id=grade.id)

        with pytest.raises(HTTPException) as excinfo:
            delete_grade(session, actor=admin, grade_id=grade.id)
        assert excinfo.value.status_code == 409

        set_grade(session, actor=admin, user=employee, grade_id=None)
        delete_grade(session, actor=admin, grade_id=grade.id)
        actions = [e.action for e in list_audit_log(session, actor=admin)]
        assert sorted(a.value for a in actions) == ["create", "delete"]


def test_my_policy_shows_generic_and_own_grade_rules_only(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        senior = create_grade(session, actor=admin, name="Senior", level=3)
        junior = create_grade(session, actor=admin, name="Junior", level=1)
        set_grade(session, actor=admin, user=employee, grade_id=junior.id)

        create_rule(
            session,
            actor=admin,
            category=TravelCategory.FLIGHTS,
            max_amount=Decimal("800"),
            currency="USD",
        )
        create_rule(
            session,
            actor=admin,
            category=TravelCategory.ACCOMMODATION,
            max_amount=Decimal("300"),
            currency="USD",
            per_type=PerType.PER_DAY,
            grade_id=senior.id,
        )
        create_restriction(session, actor=admin, name="Casinos", keywords=["casino"])

        policy = my_policy(session, user=employee)
        assert policy["grade"].name == "Junior"
        assert [r.category for r in policy["rules"]] == [TravelCategory.FLIGHTS]
        assert [r.name for r in policy["restrictions"]] == ["Casinos"]
