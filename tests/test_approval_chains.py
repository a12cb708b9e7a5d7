from __future__ import annotations

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from tripledger.core.db import SessionLocal
from tripledger.modules.approvals.models import LevelType
from tripledger.modules.approvals.service import (
    add_level,
    create_assignment,
    create_chain,
    delete_chain,
    fallback_required_levels,
    fallback_steps,
    remove_level,
)
from tripledger.modules.identity.models import User
from tripledger.modules.identity.service import set_grade
from tripledger.modules.policy.service import create_grade
from tripledger.modules.travel.models import Decision, TravelRequestStatus
from tripledger.modules.travel.service import (
    create_travel_request,
    decide_travel_request,
    list_pending_approvals,
    submit_travel_request,
)


def _violation(pct=None, special=False):
    return SimpleNamespace(
        overage_percentage=Decimal(pct) if pct is not None else None,
        requires_special_approval=special,
    )


def test_fallback_levels_follow_the_largest_overage():
    assert fallback_required_levels([]) == 1
    assert fallback_required_levels([_violation("10.00")]) == 1
    assert fallback_required_levels([_violation("15.00")]) == 1
    assert fallback_required_levels([_violation("15.01")]) == 2
    assert fallback_required_levels([_violation("5.00"), _violation("30.50")]) == 3
    assert fallback_required_levels([_violation(None, special=True)]) == 2


def test_fallback_upper_levels_are_optional():
    steps = fallback_steps([_violation("40.00")])
    assert [(s.level, s.level_type, s.is_required) for s in steps] == [
        (1, LevelType.DIRECT_MANAGER, True),
        (2, LevelType.SECOND_LINE_MANAGER, False),
        (3, LevelType.ORG_ADMIN, False),
    ]


def test_grade_assignment_takes_precedence_over_default_chain(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        accounting = session.get(User, team.accounting_id)
        create_chain(
            session,
            actor=admin,
            name="Default",
            is_default=True,
            levels=[{"level_type": "direct_manager"}],
        )
        senior_chain = create_chain(
            session,
            actor=admin,
            name="Seniors",
            levels=[{"level_type": "specific_user", "specific_user_id": accounting.id}],
        )
        grade = create_grade(session, actor=admin, name="Senior", level=3)
        set_grade(session, actor=admin, user=employee, grade_id=grade.id)
        create_assignment(session, actor=admin, chain_id=senior_chain.id, grade_id=grade.id)

        request = create_travel_request(
            session,
            user=employee,
            destination_city="Paris",
            destination_country="France",
            start_date=date(2026, 4, 6),
            end_date=date(2026, 4, 8),
            purpose="Board meeting",
            currency="USD",
            estimates={"flights": "700"},
        )
        request = submit_travel_request(session, request_id=request.id, user=employee)
        assert request.chain_id == senior_chain.id
        assert [r.id for r in list_pending_approvals(session, user=accounting)] == [request.id]


def test_assignment_amount_range_limits_which_requests_it_covers(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        default = create_chain(
            session,
            actor=admin,
            name="Default",
            is_default=True,
            levels=[{"level_type": "direct_manager"}],
        )
        big = create_chain(
            session,
            actor=admin,
            name="Big trips",
            levels=[{"level_type": "direct_manager"}, {"level_type": "org_admin"}],
        )
        create_assignment(session, actor=admin, chain_id=big.id, min_amount=Decimal("5000"))

        request = create_travel_request(
            session,
            user=employee,
            destination_city="Paris",
            destination_country="France",
            start_date=date(2026, 4, 6),
            end_date=date(2026, 4, 8),
            purpose="Board meeting",
            currency="USD",
            estimates={"flights": "700"},
        )
        request = submit_travel_request(session, request_id=request.id, user=employee)
        assert request.chain_id == default.id


def test_only_one_default_chain_per_organization(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        first = create_chain(
            session,
            actor=admin,
            name="First",
            is_default=True,
            levels=[{"level_type": "org_admin"}],
        )
        second = create_chain(
            session,
            actor=admin,
            name="Second",
            is_default=True,
            levels=[{"level_type": "org_admin"}],
        )
        session.refresh(first)
        assert first.is_default is False
        assert second.is_default is True


def test_levels_are_renumbered_on_insert_and_remove(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        chain = create_chain(
            session,
            actor=admin,
            name="Layered",
            levels=[{"level_type": "direct_manager"}, {"level_type": "org_admin"}],
        )
        chain = add_level(
            session,
            actor=admin,
            chain_id=chain.id,
            level_type=LevelType.SECOND_LINE_MANAGER,
            is_required=False,
            position=2,
        )
        assert [(lvl.level_order, lvl.level_type) for lvl in chain.levels] == [
            (1, LevelType.DIRECT_MANAGER),
            (2, LevelType.SECOND_LINE_MANAGER),
            (3, LevelType.ORG_ADMIN),
        ]

        first = chain.levels[0]
        chain = remove_level(session, actor=admin, level_id=first.id)
        assert [(lvl.level_order, lvl.level_type) for lvl in chain.levels] == [
            (1, LevelType.SECOND_LINE_MANAGER),
            (2, LevelType.ORG_ADMIN),
        ]


def test_specific_user_level_requires_a_colleague(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        with pytest.raises(HTTPException) as excinfo:
            create_chain(
                session, actor=admin, name="Broken", levels=[{"level_type": "specific_user"}]
            )
        assert excinfo.value.status_code == 400


def test_chain_configuration_requires_policy_permission(team):
    with SessionLocal() as session:
        manager = session.get(User, team.manager_id)
        with pytest.raises(HTTPException) as excinfo:
            create_chain(session, actor=manager, name="Mine")
        assert excinfo.value.status_code == 403


def test_chain_in_use_cannot_be_deleted(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        chain = create_chain(
            session,
            actor=admin,
            name="Default",
            is_default=True,
            levels=[{"level_type": "direct_manager"}],
        )
        request = create_travel_request(
            session,
            user=employee,
            destination_city="Rome",
            destination_country="Italy",
            start_date=date(2026, 5, 4),
            end_date=date(2026, 5, 5),
            purpose="Partner visit",
            currency="USD",
        )
        submit_travel_request(session, request_id=request.id, user=employee)

        with pytest.raises(HTTPException) as excinfo:
            delete_chain(session, actor=admin, chain_id=chain.id)
        assert excinfo.value.status_code == 409


def test_levels_cannot_change_while_a_request_is_mid_chain(team):
    today = date(2026, 1, 5)
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        manager = session.get(User, team.manager_id)
        employee = session.get(User, team.employee_id)
        books = session.get(User, team.accounting_id)
        chain = create_chain(
            session,
            actor=admin,
            name="Three step",
            is_default=True,
            levels=[
                {"level_type": "direct_manager"},
                {"level_type": "org_admin"},
                {"level_type": "accounting_manager"},
            ],
        )
        first_level_id = chain.levels[0].id
        request = create_travel_request(
            session,
            user=employee,
            destination_city="Madrid",
            destination_country="Spain",
            start_date=date(2026, 6, 1),
            end_date=date(2026, 6, 3),
            purpose="Sales kickoff",
            currency="USD",
            today=today,
        )
        submit_travel_request(session, request_id=request.id, user=employee, today=today)
        decide_travel_request(
            session, request_id=request.id, user=manager, decision=Decision.APPROVE
        )

        with pytest.raises(HTTPException) as excinfo:
            remove_level(session, actor=admin, level_id=first_level_id)
        assert excinfo.value.status_code == 409
        session.rollback()

        with pytest.raises(HTTPException) as excinfo:
            add_level(session, actor=admin, chain_id=chain.id, level_type=LevelType.ORG_ADMIN)
        assert excinfo.value.status_code == 409
        session.rollback()

        request = decide_travel_request(
            session, request_id=request.id, user=admin, decision=Decision.APPROVE
        )
        assert request.status == TravelRequestStatus.PENDING_APPROVAL
        assert request.current_approval_level == 3
        assert [r.id for r in list_pending_approvals(session, user=books)] == [request.id]

        request = decide_travel_request(
            session, request_id=request.id, user=books, decision=Decision.APPROVE
        )
        assert request.status == TravelRequestStatus.APPROVED

        chain = remove_level(session, actor=admin, level_id=first_level_id)
        assert [lvl.level_type for lvl in chain.levels] == [
            LevelType.ORG_ADMIN,
            LevelType.ACCOUNTING_MANAGER,
        ]
