from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException

from tripledger.core.db import SessionLocal
from tripledger.modules.identity.models import User
from tripledger.modules.identity.service import set_grade
from tripledger.modules.policy.models import (
    ActionType,
    DestinationType,
    PerType,
    TravelCategory,
    ViolationSource,
)
from tripledger.modules.policy.service import (
    create_custom_rule,
    create_grade,
    create_restriction,
    create_rule,
)
from tripledger.modules.travel.models import TravelRequestStatus
from tripledger.modules.travel.service import (
    create_travel_request,
    evaluate_violations,
    explain_violation,
    list_violations,
    submit_travel_request,
    update_travel_request,
)

TODAY = date(2026, 1, 5)


def _new_request(session, employee, **overrides):
    fields = dict(
        user=employee,
        destination_city="Berlin",
        destination_country="Germany",
        start_date=date(2026, 3, 2),
        end_date=date(2026, 3, 5),
        purpose="Customer workshop",
        currency="USD",
        estimates={"accommodation_per_night": "200"},
        today=TODAY,
    )
    fields.update(overrides)
    return create_travel_request(session, **fields)


def test_per_night_accommodation_overage_is_measured_against_the_whole_stay(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        create_rule(
            session,
            actor=admin,
            category=TravelCategory.ACCOMMODATION,
            max_amount=Decimal("150"),
            currency="USD",
            per_type=PerType.PER_DAY,
        )

        request = _new_request(session, employee)
        assert request.nights == 3
        assert request.estimated_total == Decimal("600.00")

        violations = list_violations(session, request_id=request.id, user=employee)
        assert len(violations) == 1
        v = violations[0]
        assert v.source == ViolationSource.CATEGORY_LIMIT
        assert v.category == "accommodation"
        assert v.action_type == ActionType.REQUIRE_APPROVAL
        assert v.requested_amount == Decimal("600.00")
        assert v.policy_limit == Decimal("450.00")
        assert v.overage_amount == Decimal("150.00")
        assert v.overage_percentage == Decimal("33.33")
        assert v.requires_special_approval is True

        session.refresh(request)
        assert request.requires_special_approval is True


def test_estimates_within_limit_produce_no_violation(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        create_rule(
            session,
            actor=admin,
            category=TravelCategory.ACCOMMODATION,
            max_amount=Decimal("200"),
            currency="USD",
            per_type=PerType.PER_DAY,
        )
        request = _new_request(session, employee)

        assert list_violations(session, request_id=request.id, user=employee) == []
        assert request.requires_special_approval is False


def test_small_overage_does_not_require_special_approval(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        create_rule(
            session,
            actor=admin,
            category=TravelCategory.FLIGHTS,
            max_amount=Decimal("1000"),
            currency="USD",
        )
        request = _new_request(session, employee, estimates={"flights": "1100"})

        [v] = list_violations(session, request_id=request.id, user=employee)
        assert v.overage_percentage == Decimal("10.00")
        assert v.requires_special_approval is False


def test_grade_specific_rule_beats_generic_rule(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        grade = create_grade(session, actor=admin, name="Senior", level=3)
        set_grade(session, actor=admin, user=employee, grade_id=grade.id)

        create_rule(
            session,
            actor=admin,
            category=TravelCategory.ACCOMMODATION,
            max_amount=Decimal("100"),
            currency="USD",
            per_type=PerType.PER_DAY,
        )
        create_rule(
            session,
            actor=admin,
            category=TravelCategory.ACCOMMODATION,
            max_amount=Decimal("250"),
            currency="USD",
            per_type=PerType.PER_DAY,
            grade_id=grade.id,
        )

        request = _new_request(session, employee)
        assert list_violations(session, request_id=request.id, user=employee) == []


def test_country_specific_rule_beats_destination_type(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        create_rule(
            session,
            actor=admin,
            category=TravelCategory.ACCOMMODATION,
            max_amount=Decimal("300"),
            currency="USD",
            per_type=PerType.PER_DAY,
            destination_type=DestinationType.INTERNATIONAL,
        )
        create_rule(
            session,
            actor=admin,
            category=TravelCategory.ACCOMMODATION,
            max_amount=Decimal("180"),
            currency="USD",
            per_type=PerType.PER_DAY,
            destination_countries=["Germany"],
        )

        request = _new_request(session, employee)
        [v] = list_violations(session, request_id=request.id, user=employee)
        assert v.policy_limit == Decimal("540.00")


def test_domestic_rule_ignored_for_international_trip(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        create_rule(
            session,
            actor=admin,
            category=TravelCategory.ACCOMMODATION,
            max_amount=Decimal("50"),
            currency="USD",
            per_type=PerType.PER_DAY,
            destination_type=DestinationType.DOMESTIC,
        )
        request = _new_request(session, employee)
        assert list_violations(session, request_id=request.id, user=employee) == []

        domestic = _new_request(
            session, employee, destination_city="Haifa", destination_country="Israel"
        )
        assert len(list_violations(session, request_id=domestic.id, user=employee)) == 1


def test_blocking_restriction_prevents_submission(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        create_restriction(
            session,
            actor=admin,
            name="No casino visits",
            keywords=["Casino"],
            action_type=ActionType.BLOCK,
        )
        request = _new_request(
            session, employee, purpose="Client dinner at the casino", estimates={}
        )

        with pytest.raises(HTTPException) as excinfo:
            submit_travel_request(session, request_id=request.id, user=employee, today=TODAY)
        assert excinfo.value.status_code == 400
        blocking = excinfo.value.detail["violations"]
        assert [b["rule_name"] for b in blocking] == ["No casino visits"]

        session.refresh(request)
        assert request.status == TravelRequestStatus.DRAFT


def test_warning_restriction_needs_no_explanation(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        create_restriction(
            session,
            actor=admin,
            name="Business class",
            keywords=["business class"],
            action_type=ActionType.WARN,
        )
        request = _new_request(
            session,
            employee,
            purpose_details="Prefers business class on the return leg",
            estimates={},
        )
        [v] = list_violations(session, request_id=request.id, user=employee)
        assert v.source == ViolationSource.RESTRICTION

        submitted = submit_travel_request(
            session, request_id=request.id, user=employee, today=TODAY
        )
        assert submitted.status == TravelRequestStatus.PENDING_APPROVAL


def test_require_approval_violation_must_be_explained_before_submit(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        create_rule(
            session,
            actor=admin,
            category=TravelCategory.ACCOMMODATION,
            max_amount=Decimal("150"),
            currency="USD",
            per_type=PerType.PER_DAY,
        )
        request = _new_request(session, employee)

        with pytest.raises(HTTPException) as excinfo:
            submit_travel_request(session, request_id=request.id, user=employee, today=TODAY)
        assert excinfo.value.status_code == 400
        assert "Explain" in excinfo.value.detail["message"]

        [v] = list_violations(session, request_id=request.id, user=employee)
        with pytest.raises(HTTPException) as excinfo:
            explain_violation(session, violation_id=v.id, user=employee, explanation="   ")
        assert excinfo.value.status_code == 400

        explain_violation(
            session,
            violation_id=v.id,
            user=employee,
            explanation="Conference hotel is the only option within walking distance",
        )
        submitted = submit_travel_request(
            session, request_id=request.id, user=employee, today=TODAY
        )
        assert submitted.status == TravelRequestStatus.PENDING_APPROVAL
        assert submitted.submission_count == 1


def test_explanation_survives_reevaluation_and_edits(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        create_rule(
            session,
            actor=admin,
            category=TravelCategory.ACCOMMODATION,
            max_amount=Decimal("150"),
            currency="USD",
            per_type=PerType.PER_DAY,
        )
        request = _new_request(session, employee)
        [v] = list_violations(session, request_id=request.id, user=employee)
        explain_violation(session, violation_id=v.id, user=employee, explanation="Peak season")

        update_travel_request(
            session,
            request_id=request.id,
            user=employee,
            estimates={"accommodation_per_night": "220"},
            today=TODAY,
        )
        [v] = evaluate_violations(session, request_id=request.id, user=employee, today=TODAY)
        assert v.requested_amount == Decimal("660.00")
        assert v.employee_explanation == "Peak season"


def test_custom_rules_for_duration_and_advance_booking(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        create_custom_rule(
            session,
            actor=admin,
            rule_name="Max 3 days",
            condition_json={"type": "max_trip_duration", "max_days": 3},
            action_type=ActionType.WARN,
        )
        create_custom_rule(
            session,
            actor=admin,
            rule_name="Book two weeks ahead",
            condition_json={"type": "advance_booking", "min_days": 14},
            action_type=ActionType.REQUIRE_APPROVAL,
        )

        request = _new_request(session, employee, estimates={}, today=date(2026, 2, 25))
        violations = list_violations(session, request_id=request.id, user=employee)
        names = sorted(v.rule_name for v in violations)
        assert names == ["Book two weeks ahead", "Max 3 days"]
        assert all(v.source == ViolationSource.CUSTOM_RULE for v in violations)


def test_custom_rule_with_unknown_type_is_rejected(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        with pytest.raises(HTTPException) as excinfo:
            create_custom_rule(
                session,
                actor=admin,
                rule_name="Mystery",
                condition_json={"type": "moon_phase"},
            )
        assert excinfo.value.status_code == 400


def test_limit_in_other_currency_uses_stored_rate(team):
    from tripledger.modules.fx.service import upsert_fx_rate

    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        upsert_fx_rate(session, from_currency="USD", to_currency="EUR", rate=Decimal("0.5"))
        create_rule(
            session,
            actor=admin,
            category=TravelCategory.FLIGHTS,
            max_amount=Decimal("400"),
            currency="EUR",
        )
        request = _new_request(session, employee, estimates={"flights": "1000"})

        [v] = list_violations(session, request_id=request.id, user=employee)
        assert v.currency == "EUR"
        assert v.requested_amount == Decimal("500.00")
        assert v.overage_amount == Decimal("100.00")
