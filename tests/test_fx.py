from __future__ import annotations

from datetime import date
from decimal import Decimal

import httpx
import pytest
from fastapi import HTTPException
from sqlalchemy import select

from tripledger.core.config import settings
from tripledger.core.db import SessionLocal
from tripledger.modules.fx import service as fx_service
from tripledger.modules.fx.models import FxRate
from tripledger.modules.identity.models import User
from tripledger.modules.reports.models import ExpenseCategory
from tripledger.modules.reports.service import add_expense, create_report


def test_upsert_replaces_the_pair_and_normalizes_codes():
    with SessionLocal() as session:
        fx_service.upsert_fx_rate(
            session, from_currency="eur", to_currency="usd", rate=Decimal("1.08")
        )
        fx = fx_service.upsert_fx_rate(
            session,
            from_currency="EUR",
            to_currency="USD",
            rate=Decimal("1.10"),
            as_of_date=date(2026, 1, 2),
            source="manual",
        )
        assert (fx.from_currency, fx.to_currency) == ("EUR", "USD")
        assert fx.rate == Decimal("1.10")
        assert len(fx_service.list_fx_rates(session)) == 1


@pytest.mark.parametrize(
    "from_currency,to_currency,rate",
    [("EUR", "EUR", "1"), ("EUR", "XYZ", "1"), ("EUR", "USD", "0")],
)
def test_upsert_rejects_invalid_input(from_currency, to_currency, rate):
    with SessionLocal() as session:
        with pytest.raises(HTTPException) as excinfo:
            fx_service.upsert_fx_rate(
                session,
                from_currency=from_currency,
                to_currency=to_currency,
                rate=Decimal(rate),
            )
        assert excinfo.value.status_code == 400


def test_inverse_rate_is_used_when_only_the_opposite_pair_exists():
    with SessionLocal() as session:
        fx_service.upsert_fx_rate(
            session, from_currency="USD", to_currency="ILS", rate=Decimal("4")
        )
        assert fx_service.get_rate(session, from_currency="ILS", to_currency="USD") == Decimal(
            "0.25"
        )
        converted, rate = fx_service.convert_amount(
            session, amount=Decimal("100"), from_currency="ILS", to_currency="USD"
        )
        assert converted == Decimal("25.00")
        assert rate == Decimal("0.25")


def test_same_currency_needs_no_rate():
    with SessionLocal() as session:
        converted, rate = fx_service.convert_amount(
            session, amount=Decimal("12.345"), from_currency="usd", to_currency="USD"
        )
        assert converted == Decimal("12.35")
        assert rate == Decimal("1")


def test_missing_rate_without_auto_fetch_is_an_error():
    with SessionLocal() as session:
        assert fx_service.get_rate(session, from_currency="GBP", to_currency="USD") is None
        with pytest.raises(HTTPException) as excinfo:
            fx_service.convert_amount(
                session, amount=Decimal("10"), from_currency="GBP", to_currency="USD"
            )
        assert excinfo.value.status_code == 400


def test_auto_fetched_rate_is_stored_with_the_expense(team, monkeypatch):
    calls: list[tuple[str, str]] = []

    def _fake_fetch(*, from_currency, to_currency):
        calls.append((from_currency, to_currency))
        return Decimal("1.25"), date(2026, 1, 1)

    monkeypatch.setattr(settings, "fx_auto_fetch", True)
    monkeypatch.setattr(fx_service, "_fetch_frankfurter_rate", _fake_fetch)

    with SessionLocal() as session:
        employee = session.get(User, team.employee_id)
        report = create_report(session, user=employee, trip_destination="London", currency="USD")
        expense = add_expense(
            session,
            report_id=report.id,
            user=employee,
            category=ExpenseCategory.FOOD,
            expense_date=date(2026, 1, 2),
            amount=Decimal("10.00"),
            currency="GBP",
        )
        assert expense.converted_amount == Decimal("12.50")
        assert expense.fx_rate == Decimal("1.25")

        fx = session.scalar(
            select(FxRate).where(FxRate.from_currency == "GBP", FxRate.to_currency == "USD")
        )
        assert fx is not None
        assert fx.source == "frankfurter.app"
        assert fx.as_of_date == date(2026, 1, 1)

        # Stored now, so a second expense does not hit the network.
        add_expense(
            session,
            report_id=report.id,
            user=employee,
            category=ExpenseCategory.FOOD,
            expense_date=date(2026, 1, 3),
            amount=Decimal("4.00"),
            currency="GBP",
        )
        assert calls == [("GBP", "USD")]


def test_fetch_failure_falls_back_to_no_rate(monkeypatch):
    def _failing_fetch(*, from_currency, to_currency):
        raise httpx.ConnectError("offline")

    monkeypatch.setattr(settings, "fx_auto_fetch", True)
    monkeypatch.setattr(fx_service, "_fetch_frankfurter_rate", _failing_fetch)

    with SessionLocal() as session:
        assert fx_service.get_rate(session, from_currency="JPY", to_currency="USD") is None
