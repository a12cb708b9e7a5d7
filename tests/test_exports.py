from __future__ import annotations

import base64
import io
from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException
from openpyxl import load_workbook
from PIL import Image
from pypdf import PdfReader
from sqlalchemy import select

from tripledger.core.config import settings
from tripledger.core.db import SessionLocal
from tripledger.core.storage import get_storage
from tripledger.modules.exports.models import ExportRun, ExportStatus
from tripledger.modules.exports.service import (
    accounting_payload,
    accounting_recipients,
    pdf_file_name,
    request_export,
    send_report_to_accounting,
)
from tripledger.modules.identity.models import AccountingType, Organization, User
from tripledger.modules.identity.service import update_organization_settings
from tripledger.modules.reports.models import ExpenseCategory
from tripledger.modules.reports.service import (
    add_expense,
    create_report,
    decide_report,
    submit_report_for_approval,
    upload_receipt,
)


def _png_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (120, 80), color=(240, 240, 240)).save(buf, format="PNG")
    return buf.getvalue()


def _report(session, employee):
    report = create_report(
        session,
        user=employee,
        trip_destination="Berlin, Germany",
        trip_purpose="Customer workshop",
        trip_start_date=date(2026, 3, 2),
        trip_end_date=date(2026, 3, 5),
        currency="USD",
    )
    hotel = add_expense(
        session,
        report_id=report.id,
        user=employee,
        category=ExpenseCategory.ACCOMMODATION,
        expense_date=date(2026, 3, 2),
        amount=Decimal("450"),
        currency="USD",
        description="Hotel Adlon",
    )
    add_expense(
        session,
        report_id=report.id,
        user=employee,
        category=ExpenseCategory.TRANSPORTATION,
        expense_date=date(2026, 3, 3),
        amount=Decimal("32.50"),
        currency="USD",
        description="Taxi",
    )
    upload_receipt(
        session,
        expense_id=hotel.id,
        user=employee,
        filename="hotel.png",
        content_type="image/png",
        body=_png_bytes(),
    )
    return report


def _closed_report(session, team):
    manager = session.get(User, team.manager_id)
    employee = session.get(User, team.employee_id)
    report = _report(session, employee)
    submit_report_for_approval(session, report_id=report.id, user=employee)
    return decide_report(session, report_id=report.id, user=manager, approve=True)


def test_export_builds_summary_workbook_and_supporting_pdf(team):
    with SessionLocal() as session:
        employee = session.get(User, team.employee_id)
        report = _report(session, employee)
        run = request_export(session, report_id=report.id, user=employee)
        run_id = run.id

    with SessionLocal() as session:
        run = session.scalar(select(ExportRun).where(ExportRun.id == run_id))
        assert run
        assert run.status == ExportStatus.COMPLETED
        assert run.error_message is None
        assert run.deliver_to_accounting is False
        summary_key = run.summary_xlsx_key
        supporting_key = run.supporting_pdf_key

    wb = load_workbook(io.BytesIO(get_storage().get(key=summary_key)))
    ws = wb.active
    assert ws["B1"].value == "Eli Employee"
    assert ws["B2"].value == "Berlin, Germany"
    assert ws["B4"].value == "Customer workshop"
    assert ws.cell(row=6, column=1).value == "Date"
    assert ws.cell(row=6, column=7).value == "Amount (USD)"
    assert ws.cell(row=7, column=2).value == "accommodation"
    assert ws.cell(row=7, column=7).value == pytest.approx(450.0)
    assert ws.cell(row=8, column=3).value == "Taxi"
    assert ws.cell(row=9, column=3).value == "Total"
    assert ws.cell(row=9, column=7).value == "=SUM(G7:G8)"

    reader = PdfReader(io.BytesIO(get_storage().get(key=supporting_key)))
    # Summary page followed by the hotel receipt image.
    assert len(reader.pages) == 2
    first_page = " ".join((reader.pages[0].extract_text() or "").split())
    assert "EXPENSE REPORT" in first_page
    assert "Berlin, Germany" in first_page


def test_send_to_accounting_emails_pdf_to_external_accountant(team, monkeypatch):
    import tripledger.modules.notifications.email as email_mod

    with SessionLocal() as session:
        admin = session.get(User, team.org_admin_id)
        employee = session.get(User, team.employee_id)
        org = session.get(Organization, team.organization_id)
        update_organization_settings(
            session,
            organization=org,
            actor=admin,
            accounting_type=AccountingType.EXTERNAL,
            external_accounting_email="Ledger@Bookkeepers.example",
            external_accounting_name="Bookkeepers",
        )
        report = _closed_report(session, team)
        expected_name = pdf_file_name(report)

        sent: list[dict] = []
        monkeypatch.setattr(settings, "email_api_key", "test-key")
        monkeypatch.setattr(email_mod, "_post_email", lambda payload: sent.append(payload))

        run = send_report_to_accounting(session, report_id=report.id, user=employee)
        run_id = run.id

    with SessionLocal() as session:
        run = session.scalar(select(ExportRun).where(ExportRun.id == run_id))
        assert run.status == ExportStatus.COMPLETED
        assert run.deliver_to_accounting is True
        assert run.delivered_to == "ledger@bookkeepers.example"
        assert run.delivered_at is not None
        pdf_bytes = get_storage().get(key=run.supporting_pdf_key)

    assert len(sent) == 1
    payload = sent[0]
    assert payload["to"] == ["ledger@bookkeepers.example"]
    assert "for processing" in payload["subject"]
    [attachment] = payload["attachments"]
    assert attachment["filename"] == expected_name
    assert expected_name.startswith("Expense_Report_Berlin_Germany_")
    assert base64.b64decode(attachment["content"]) == pdf_bytes


def test_internal_accounting_goes_to_accounting_managers(team):
    with SessionLocal() as session:
        org = session.get(Organization, team.organization_id)
        assert accounting_recipients(session, organization=org) == ["books@acme.io"]
        assert accounting_recipients(session, organization=None) == []


def test_send_to_accounting_requires_closed_report(team):
    with SessionLocal() as session:
        employee = session.get(User, team.employee_id)
        report = _report(session, employee)
        with pytest.raises(HTTPException) as excinfo:
            send_report_to_accounting(session, report_id=report.id, user=employee)
        assert excinfo.value.status_code == 409


def test_send_to_accounting_requires_a_recipient(team):
    with SessionLocal() as session:
        employee = session.get(User, team.employee_id)
        accounting = session.get(User, team.accounting_id)
        accounting.is_active = False
        session.add(accounting)
        session.commit()

        report = _closed_report(session, team)
        with pytest.raises(HTTPException) as excinfo:
            send_report_to_accounting(session, report_id=report.id, user=employee)
        assert excinfo.value.status_code == 400

        runs = session.scalars(select(ExportRun).where(ExportRun.report_id == report.id)).all()
        assert runs == []


def test_accounting_payload_shape(team):
    with SessionLocal() as session:
        employee = session.get(User, team.employee_id)
        report = _report(session, employee)
        payload = accounting_payload(
            report=report, accounting_email="books@acme.io", pdf_bytes=b"%PDF-1.4 test"
        )
        assert set(payload) == {"reportId", "accountingEmail", "pdfBase64", "pdfFileName"}
        assert payload["reportId"] == str(report.id)
        assert base64.b64decode(payload["pdfBase64"]) == b"%PDF-1.4 test"
        assert payload["pdfFileName"] == pdf_file_name(report)
