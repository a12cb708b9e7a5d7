from __future__ import annotations

import io
from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException
from PIL import Image

from tripledger.core.db import SessionLocal
from tripledger.core.storage import StorageError, get_storage
from tripledger.modules.fx.service import upsert_fx_rate
from tripledger.modules.identity.models import User
from tripledger.modules.identity.service import create_organization, create_user
from tripledger.modules.reports.models import (
    ExpenseCategory,
    HistoryAction,
    PaymentMethod,
    ReceiptFileType,
    ReportStatus,
)
from tripledger.modules.reports.service import (
    add_expense,
    create_report,
    decide_report,
    decide_report_by_token,
    delete_expense,
    detect_receipt_type,
    get_report_by_token,
    list_history,
    mark_reimbursed,
    submit_report_for_approval,
    update_expense,
    upload_receipt,
)


def _png_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (40, 30), color=(255, 255, 255)).save(buf, format="PNG")
    return buf.getvalue()


def _report_with_expense(session, employee, amount="120.00"):
    report = create_report(
        session,
        user=employee,
        trip_destination="Berlin, Germany",
        trip_purpose="Customer workshop",
        trip_start_date=date(2026, 3, 2),
        trip_end_date=date(2026, 3, 5),
        currency="USD",
    )
    add_expense(
        session,
        report_id=report.id,
        user=employee,
        category=ExpenseCategory.ACCOMMODATION,
        expense_date=date(2026, 3, 2),
        amount=Decimal(amount),
        currency="USD",
        description="Hotel",
    )
    return report


def test_expenses_in_other_currency_are_converted_into_report_total(team):
    with SessionLocal() as session:
        employee = session.get(User, team.employee_id)
        report = _report_with_expense(session, employee)

        with pytest.raises(HTTPException) as excinfo:
            add_expense(
                session,
                report_id=report.id,
                user=employee,
                category=ExpenseCategory.FOOD,
                expense_date=date(2026, 3, 3),
                amount=Decimal("50"),
                currency="EUR",
            )
        assert excinfo.value.status_code == 400
        session.rollback()

        upsert_fx_rate(session, from_currency="EUR", to_currency="USD", rate=Decimal("1.1"))
        dinner = add_expense(
            session,
            report_id=report.id,
            user=employee,
            category=ExpenseCategory.FOOD,
            expense_date=date(2026, 3, 3),
            amount=Decimal("50"),
            currency="EUR",
            payment_method=PaymentMethod.COMPANY_CARD,
        )
        assert dinner.converted_amount == Decimal("55.00")

        session.refresh(report)
        assert report.total_amount == Decimal("175.00")

        update_expense(session, expense_id=dinner.id, user=employee, amount=Decimal("100"))
        session.refresh(report)
        assert report.total_amount == Decimal("230.00")

        delete_expense(session, expense_id=dinner.id, user=employee)
        session.refresh(report)
        assert report.total_amount == Decimal("120.00")


def test_expense_amount_must_be_positive(team):
    with SessionLocal() as session:
        employee = session.get(User, team.employee_id)
        report = _report_with_expense(session, employee)
        with pytest.raises(HTTPException) as excinfo:
            add_expense(
                session,
                report_id=report.id,
                user=employee,
                category=ExpenseCategory.MISCELLANEOUS,
                expense_date=date(2026, 3, 3),
                amount=Decimal("0"),
                currency="USD",
            )
        assert excinfo.value.status_code == 400


def test_submit_requires_expenses_and_a_manager(team):
    with SessionLocal() as session:
        employee = session.get(User, team.employee_id)
        empty = create_report(session, user=employee, trip_destination="Rome", currency="USD")
        with pytest.raises(HTTPException) as excinfo:
            submit_report_for_approval(session, report_id=empty.id, user=employee)
        assert excinfo.value.status_code == 400

        org = create_organization(session, name="Solo Ltd", home_currency="USD")
        loner = create_user(
            session, email="solo@solo.io", password="password123", organization_id=org.id
        )
        report = _report_with_expense(session, loner)
        with pytest.raises(HTTPException) as excinfo:
            submit_report_for_approval(session, report_id=report.id, user=loner)
        assert excinfo.value.status_code == 400
        session.refresh(report)
        assert report.status == ReportStatus.OPEN
        assert report.manager_approval_token is None


def test_manager_approves_through_one_time_link(team):
    with SessionLocal() as session:
        manager = session.get(User, team.manager_id)
        employee = session.get(User, team.employee_id)
        report = _report_with_expense(session, employee)

        report = submit_report_for_approval(session, report_id=report.id, user=employee)
        assert report.status == ReportStatus.PENDING_APPROVAL
        assert report.approver_id == manager.id
        token = report.manager_approval_token
        assert token
        assert get_report_by_token(session, token=token).id == report.id

        with pytest.raises(HTTPException) as excinfo:
            add_expense(
                session,
                report_id=report.id,
                user=employee,
                category=ExpenseCategory.FOOD,
                expense_date=date(2026, 3, 3),
                amount=Decimal("10"),
                currency="USD",
            )
        assert excinfo.value.status_code == 409

        report = decide_report_by_token(session, token=token, approve=True)
        assert report.status == ReportStatus.CLOSED
        assert report.approved_by == manager.id
        assert report.manager_approval_token is None

        with pytest.raises(HTTPException) as excinfo:
            decide_report_by_token(session, token=token, approve=True)
        assert excinfo.value.status_code == 404


def test_rejection_needs_a_reason_and_reopens_the_report(team):
    with SessionLocal() as session:
        manager = session.get(User, team.manager_id)
        employee = session.get(User, team.employee_id)
        report = _report_with_expense(session, employee)
        submit_report_for_approval(session, report_id=report.id, user=employee)

        with pytest.raises(HTTPException) as excinfo:
            decide_report(session, report_id=report.id, user=manager, approve=False)
        assert excinfo.value.status_code == 400

        report = decide_report(
            session,
            report_id=report.id,
            user=manager,
            approve=False,
            rejection_reason="Missing hotel invoice",
        )
        assert report.status == ReportStatus.OPEN
        assert report.rejection_reason == "Missing hotel invoice"

        report = submit_report_for_approval(session, report_id=report.id, user=employee)
        assert report.rejection_reason is None
        report = decide_report(session, report_id=report.id, user=manager, approve=True)
        assert report.status == ReportStatus.CLOSED

        actions = [h.action for h in list_history(session, report_id=report.id, user=employee)]
        assert actions == [
            HistoryAction.CREATED,
            HistoryAction.SUBMITTED,
            HistoryAction.REJECTED,
            HistoryAction.SUBMITTED,
            HistoryAction.APPROVED,
        ]


def test_only_the_assigned_approver_decides(team):
    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        report = _report_with_expense(session, employee)
        submit_report_for_approval(session, report_id=report.id, user=employee)

        with pytest.raises(HTTPException) as excinfo:
            decide_report(session, report_id=report.id, user=admin, approve=True)
        assert excinfo.value.status_code == 403


def test_reimbursement_is_for_accounting_on_closed_reports(team):
    with SessionLocal() as session:
        manager = session.get(User, team.manager_id)
        employee = session.get(User, team.employee_id)
        accounting = session.get(User, team.accounting_id)
        report = _report_with_expense(session, employee)

        with pytest.raises(HTTPException) as excinfo:
            mark_reimbursed(session, report_id=report.id, user=accounting)
        assert excinfo.value.status_code == 409

        submit_report_for_approval(session, report_id=report.id, user=employee)
        decide_report(session, report_id=report.id, user=manager, approve=True)

        with pytest.raises(HTTPException) as excinfo:
            mark_reimbursed(session, report_id=report.id, user=manager)
        assert excinfo.value.status_code == 403

        report = mark_reimbursed(session, report_id=report.id, user=accounting)
        assert report.is_reimbursed is True
        assert report.reimbursed_by == accounting.id


def test_receipt_type_detection_prefers_file_bytes():
    assert (
        detect_receipt_type(filename="scan.jpg", content_type="image/jpeg", body=b"%PDF-1.7\n")
        == ReceiptFileType.PDF
    )
    assert (
        detect_receipt_type(filename="x.bin", content_type=None, body=_png_bytes())
        == ReceiptFileType.IMAGE
    )
    assert (
        detect_receipt_type(filename="x.heic", content_type="image/heic", body=b"\x00\x01")
        == ReceiptFileType.IMAGE
    )
    assert (
        detect_receipt_type(filename="notes.txt", content_type="text/plain", body=b"hello")
        == ReceiptFileType.OTHER
    )


def test_receipt_upload_stores_bytes_and_cleans_up_with_expense(team):
    with SessionLocal() as session:
        employee = session.get(User, team.employee_id)
        report = _report_with_expense(session, employee)
        expense = report.expenses[0]
        body = _png_bytes()

        receipt = upload_receipt(
            session,
            expense_id=expense.id,
            user=employee,
            filename="hotel receipt.png",
            content_type="image/png",
            body=body,
        )
        assert receipt.file_type == ReceiptFileType.IMAGE
        assert receipt.byte_size == len(body)
        assert receipt.storage_key.endswith("hotel_receipt.png")
        assert get_storage().get(key=receipt.storage_key) == body

        key = receipt.storage_key
        delete_expense(session, expense_id=expense.id, user=employee)
        with pytest.raises(StorageError):
            get_storage().get(key=key)
