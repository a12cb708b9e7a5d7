from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException
from sqlalchemy import select

from tripledger.core.db import SessionLocal
from tripledger.modules.approvals.service import create_chain
from tripledger.modules.identity.models import Role, User
from tripledger.modules.identity.service import create_organization, create_user
from tripledger.modules.notifications.models import Notification
from tripledger.modules.policy.models import PerType, TravelCategory
from tripledger.modules.policy.service import create_rule
from tripledger.modules.reports.models import ReportStatus
from tripledger.modules.travel.models import (
    ApprovalStatus,
    ApprovedTravel,
    Decision,
    TravelRequestApproval,
    TravelRequestStatus,
)
from tripledger.modules.travel.service import (
    cancel_travel_request,
    convert_to_report,
    create_travel_request,
    decide_travel_request,
    explain_violation,
    list_approvals,
    list_my_decisions,
    list_pending_approvals,
    list_violations,
    resubmit_travel_request,
    submit_travel_request,
)

TODAY = date(2026, 1, 5)


def _draft(session, employee, accommodation="200"):
    return create_travel_request(
        session,
        user=employee,
        destination_city="Berlin",
        destination_country="Germany",
        start_date=date(2026, 3, 2),
        end_date=date(2026, 3, 5),
        purpose="Customer workshop",
        currency="USD",
        estimates={"accommodation_per_night": accommodation},
        today=TODAY,
    )


def _approved_travel(session, request_id):
    return session.scalar(
        select(ApprovedTravel).where(ApprovedTravel.travel_request_id == request_id)
    )


def test_large_overage_routes_through_three_level_fallback_chain(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        manager = session.get(User, team.manager_id)
        employee = session.get(User, team.employee_id)
        create_rule(
            session,
            actor=admin,
            category=TravelCategory.ACCOMMODATION,
            max_amount=Decimal("150"),
            currency="USD",
            per_type=PerType.PER_DAY,
        )
        request = _draft(session, employee)
        [v] = list_violations(session, request_id=request.id, user=employee)
        explain_violation(session, violation_id=v.id, user=employee, explanation="Trade fair week")

        request = submit_travel_request(
            session, request_id=request.id, user=employee, today=TODAY
        )
        assert request.chain_id is None
        assert request.current_approval_level == 1
        assert [r.id for r in list_pending_approvals(session, user=manager)] == [request.id]

        request = decide_travel_request(
            session, request_id=request.id, user=manager, decision=Decision.APPROVE
        )
        # Nobody above the manager, so level 2 is skipped and level 3 goes to the org admin.
        assert request.status == TravelRequestStatus.PENDING_APPROVAL
        assert request.current_approval_level == 3
        assert list_pending_approvals(session, user=manager) == []
        assert [r.id for r in list_pending_approvals(session, user=admin)] == [request.id]

        request = decide_travel_request(
            session,
            request_id=request.id,
            user=admin,
            decision=Decision.APPROVE,
            comments="Fine given the trade fair",
        )
        assert request.status == TravelRequestStatus.APPROVED
        assert request.approved_total == Decimal("600.00")

        approvals = list_approvals(session, request_id=request.id, user=employee)
        assert [(a.approval_level, a.status) for a in approvals] == [
            (1, ApprovalStatus.APPROVED),
            (2, ApprovalStatus.SKIPPED),
            (3, ApprovalStatus.APPROVED),
        ]
        assert approvals[1].approver_id is None
        assert approvals[1].skip_reason

        approved = _approved_travel(session, request.id)
        assert approved.approval_number.startswith("TA-")
        assert approved.approval_number.endswith("-00001")
        assert approved.approved_budget["total"] == "600.00"
        assert approved.approved_budget["accommodation_total"] == "600.00"

        notes = session.scalars(
            select(Notification).where(Notification.user_id == employee.id)
        ).all()
        assert [n.type for n in notes] == ["travel_decision"]
        assert len(list_my_decisions(session, user=manager)) == 1


def test_approve_with_changes_is_partially_approved(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        manager = session.get(User, team.manager_id)
        employee = session.get(User, team.employee_id)
        chain = create_chain(
            session,
            actor=admin,
            name="Standard",
            is_default=True,
            levels=[{"level_type": "direct_manager"}],
        )
        request = _draft(session, employee)
        request = submit_travel_request(
            session, request_id=request.id, user=employee, today=TODAY
        )
        assert request.chain_id == chain.id

        with pytest.raises(HTTPException) as excinfo:
            decide_travel_request(
                session,
                request_id=request.id,
                user=manager,
                decision=Decision.APPROVE_WITH_CHANGES,
            )
        assert excinfo.value.status_code == 400
        session.rollback()

        request = decide_travel_request(
            session,
            request_id=request.id,
            user=manager,
            decision=Decision.APPROVE_WITH_CHANGES,
            approved_amounts={"accommodation_per_night": "150"},
        )
        assert request.status == TravelRequestStatus.PARTIALLY_APPROVED
        assert request.approved_accommodation_per_night == Decimal("150.00")
        assert request.approved_total == Decimal("450.00")
        assert request.estimated_total == Decimal("600.00")

        approved = _approved_travel(session, request.id)
        assert approved.approved_budget["accommodation_total"] == "450.00"
        assert approved.valid_from == date(2026, 3, 2)
        assert approved.valid_until == date(2026, 3, 5)


def test_level_skipped_when_approved_total_is_under_threshold(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        manager = session.get(User, team.manager_id)
        employee = session.get(User, team.employee_id)
        create_chain(
            session,
            actor=admin,
            name="Two step",
            is_default=True,
            levels=[
                {"level_type": "direct_manager"},
                {
                    "level_type": "org_admin",
                    "can_skip_if_approved_amount_under": Decimal("1000"),
                },
            ],
        )
        request = _draft(session, employee)
        submit_travel_request(session, request_id=request.id, user=employee, today=TODAY)
        request = decide_travel_request(
            session, request_id=request.id, user=manager, decision=Decision.APPROVE
        )

        assert request.status == TravelRequestStatus.APPROVED
        skipped = session.scalar(
            select(TravelRequestApproval).where(
                TravelRequestApproval.travel_request_id == request.id,
                TravelRequestApproval.approval_level == 2,
            )
        )
        assert skipped.status == ApprovalStatus.SKIPPED
        assert skipped.approver_id is None
        assert "under" in skipped.skip_reason


def test_level_not_skipped_when_total_reaches_threshold(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        manager = session.get(User, team.manager_id)
        employee = session.get(User, team.employee_id)
        create_chain(
            session,
            actor=admin,
            name="Two step",
            is_default=True,
            levels=[
                {"level_type": "direct_manager"},
                {"level_type": "org_admin", "can_skip_if_approved_amount_under": Decimal("500")},
            ],
        )
        request = _draft(session, employee)
        submit_travel_request(session, request_id=request.id, user=employee, today=TODAY)
        request = decide_travel_request(
            session, request_id=request.id, user=manager, decision=Decision.APPROVE
        )
        assert request.status == TravelRequestStatus.PENDING_APPROVAL
        assert [r.id for r in list_pending_approvals(session, user=admin)] == [request.id]


def test_rejected_request_can_be_resubmitted_in_a_new_round(team):
    with SessionLocal() as session:
        manager = session.get(User, team.manager_id)
        employee = session.get(User, team.employee_id)
        request = _draft(session, employee)
        submit_travel_request(session, request_id=request.id, user=employee, today=TODAY)

        request = decide_travel_request(
            session,
            request_id=request.id,
            user=manager,
            decision=Decision.REJECT,
            comments="Join remotely",
        )
        assert request.status == TravelRequestStatus.REJECTED
        assert request.final_decision_at is not None
        assert _approved_travel(session, request.id) is None

        request = resubmit_travel_request(session, request_id=request.id, user=employee)
        assert request.status == TravelRequestStatus.DRAFT
        assert request.current_approval_level == 0
        assert request.submitted_at is None
        assert request.final_decision_at is None
        assert request.approved_total is None

        request = submit_travel_request(
            session, request_id=request.id, user=employee, today=TODAY
        )
        assert request.submission_count == 2
        approvals = list_approvals(session, request_id=request.id, user=employee)
        assert [(a.submission_round, a.status) for a in approvals] == [
            (1, ApprovalStatus.REJECTED),
            (2, ApprovalStatus.PENDING),
        ]


def test_cancel_removes_pending_approval(team):
    with SessionLocal() as session:
        manager = session.get(User, team.manager_id)
        employee = session.get(User, team.employee_id)
        request = _draft(session, employee)
        submit_travel_request(session, request_id=request.id, user=employee, today=TODAY)

        request = cancel_travel_request(session, request_id=request.id, user=employee)
        assert request.status == TravelRequestStatus.CANCELLED
        assert list_pending_approvals(session, user=manager) == []
        assert list_approvals(session, request_id=request.id, user=employee) == []

        with pytest.raises(HTTPException) as excinfo:
            cancel_travel_request(session, request_id=request.id, user=employee)
        assert excinfo.value.status_code == 409

        request = resubmit_travel_request(session, request_id=request.id, user=employee)
        assert request.status == TravelRequestStatus.DRAFT
        assert request.submitted_at is None
        assert request.final_decision_at is None

        request = submit_travel_request(
            session, request_id=request.id, user=employee, today=TODAY
        )
        assert request.status == TravelRequestStatus.PENDING_APPROVAL
        assert request.submission_count == 2
        assert [r.id for r in list_pending_approvals(session, user=manager)] == [request.id]


def test_only_finished_requests_can_be_resubmitted(team):
    with SessionLocal() as session:
        manager = session.get(User, team.manager_id)
        employee = session.get(User, team.employee_id)
        request = _draft(session, employee)

        with pytest.raises(HTTPException) as excinfo:
            resubmit_travel_request(session, request_id=request.id, user=employee)
        assert excinfo.value.status_code == 409

        submit_travel_request(session, request_id=request.id, user=employee, today=TODAY)
        with pytest.raises(HTTPException) as excinfo:
            resubmit_travel_request(session, request_id=request.id, user=employee)
        assert excinfo.value.status_code == 409

        cancel_travel_request(session, request_id=request.id, user=employee)
        with pytest.raises(HTTPException) as excinfo:
            resubmit_travel_request(session, request_id=request.id, user=manager)
        assert excinfo.value.status_code == 403


def test_only_the_current_approver_can_decide(team):
    with SessionLocal() as session:
        manager = session.get(User, team.manager_id)
        employee = session.get(User, team.employee_id)
        accounting = session.get(User, team.accounting_id)
        request = _draft(session, employee)
        submit_travel_request(session, request_id=request.id, user=employee, today=TODAY)

        with pytest.raises(HTTPException) as excinfo:
            decide_travel_request(
                session, request_id=request.id, user=accounting, decision=Decision.APPROVE
            )
        assert excinfo.value.status_code == 403

        decide_travel_request(
            session, request_id=request.id, user=manager, decision=Decision.APPROVE
        )
        with pytest.raises(HTTPException) as excinfo:
            decide_travel_request(
                session, request_id=request.id, user=manager, decision=Decision.APPROVE
            )
        assert excinfo.value.status_code == 409


def test_submit_without_any_approver_fails_and_stays_draft():
    with SessionLocal() as session:
        org = create_organization(session, name="Solo Ltd", home_currency="USD")
        loner = create_user(
            session, email="solo@solo.io", password="password123", organization_id=org.id
        )
        request = _draft(session, loner)

        with pytest.raises(HTTPException) as excinfo:
            submit_travel_request(session, request_id=request.id, user=loner, today=TODAY)
        assert excinfo.value.status_code == 400

        session.refresh(request)
        assert request.status == TravelRequestStatus.DRAFT
        assert request.submission_count == 0


def test_employee_without_a_manager_cannot_submit(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        newcomer = create_user(
            session,
            email="newcomer@acme.io",
            password="password123",
            roles=[Role.USER],
            organization_id=team.organization_id,
        )
        request = _draft(session, newcomer)

        with pytest.raises(HTTPException) as excinfo:
            submit_travel_request(session, request_id=request.id, user=newcomer, today=TODAY)
        assert excinfo.value.status_code == 400

        session.refresh(request)
        assert request.status == TravelRequestStatus.DRAFT
        assert request.submission_count == 0
        assert request.submitted_at is None
        assert list_pending_approvals(session, user=admin) == []
        assert list_approvals(session, request_id=request.id, user=newcomer) == []


def test_manager_without_a_manager_is_routed_to_org_admin(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        manager = session.get(User, team.manager_id)
        request = _draft(session, manager)
        submit_travel_request(session, request_id=request.id, user=manager, today=TODAY)
        assert [r.id for r in list_pending_approvals(session, user=admin)] == [request.id]


def test_approved_travel_converts_into_one_report(team):
    with SessionLocal() as session:
        manager = session.get(User, team.manager_id)
        employee = session.get(User, team.employee_id)
        request = _draft(session, employee)
        submit_travel_request(session, request_id=request.id, user=employee, today=TODAY)
        decide_travel_request(
            session, request_id=request.id, user=manager, decision=Decision.APPROVE
        )
        approved = _approved_travel(session, request.id)

        with pytest.raises(HTTPException) as excinfo:
            convert_to_report(session, approved_travel_id=approved.id, user=manager)
        assert excinfo.value.status_code == 403

        report = convert_to_report(session, approved_travel_id=approved.id, user=employee)
        assert report.status == ReportStatus.OPEN
        assert report.trip_destination == "Berlin, Germany"
        assert report.trip_start_date == date(2026, 3, 2)
        assert report.currency == "USD"

        session.refresh(approved)
        assert approved.is_used is True
        assert approved.expense_report_id == report.id

        with pytest.raises(HTTPException) as excinfo:
            convert_to_report(session, approved_travel_id=approved.id, user=employee)
        assert excinfo.value.status_code == 409
