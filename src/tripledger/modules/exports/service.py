from __future__ import annotations

import base64
import io
import re
import time
import uuid
from datetime import UTC, date, datetime
from typing import Any

from fastapi import HTTPException, status
from openpyxl import Workbook
from openpyxl.styles import Font
from PIL import Image, ImageOps
from pypdf import PdfReader, PdfWriter
from sqlalchemy import select
from sqlalchemy.orm import Session

from tripledger.core.db import SessionLocal
from tripledger.core.logging import get_logger, log_event, log_exception, monotonic_ms
from tripledger.core.storage import StorageError, get_storage
from tripledger.modules.exports.models import ExportRun, ExportStatus
from tripledger.modules.identity.models import (
    AccountingType,
    Organization,
    Role,
    User,
    UserRoleAssignment,
)
from tripledger.modules.identity.permissions import get_permissions
from tripledger.modules.notifications.email import send_email
from tripledger.modules.reports.models import Expense, Receipt, ReceiptFileType, Report, ReportStatus
from tripledger.modules.reports.service import get_report_for_user

logger = get_logger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _enqueue(run: ExportRun) -> None:
    from tripledger.worker.tasks import generate_export_task

    async_result = generate_export_task.delay(str(run.id))
    log_event(
        logger,
        "celery.task.enqueued",
        task_name="generate_export",
        celery_task_id=async_result.id,
        report_id=str(run.report_id),
        export_run_id=str(run.id),
    )


def create_export_run(
    session: Session,
    *,
    report_id: uuid.UUID,
    requested_by_user_id: uuid.UUID,
    deliver_to_accounting: bool = False,
) -> ExportRun:
    run = ExportRun(
        report_id=report_id,
        requested_by_user_id=requested_by_user_id,
        status=ExportStatus.QUEUED,
        deliver_to_accounting=deliver_to_accounting,
    )
    session.add(run)
    session.commit()
    session.refresh(run)
    log_event(
        logger,
        "export.run.created",
        report_id=str(run.report_id),
        export_run_id=str(run.id),
        requested_by_user_id=str(run.requested_by_user_id),
        deliver_to_accounting=deliver_to_accounting,
        status=run.status.value,
    )
    return run


def request_export(session: Session, *, report_id: uuid.UUID, user: User) -> ExportRun:
    report = get_report_for_user(session, report_id=report_id, user=user)
    run = create_export_run(session, report_id=report.id, requested_by_user_id=user.id)
    _enqueue(run)
    session.refresh(run)
    return run


def list_export_runs(session: Session, *, report_id: uuid.UUID, user: User) -> list[ExportRun]:
    report = get_report_for_user(session, report_id=report_id, user=user)
    return list(
        session.scalars(
            select(ExportRun)
            .where(ExportRun.report_id == report.id)
            .order_by(ExportRun.created_at.desc())
        )
    )


def get_export_run(session: Session, *, export_run_id: uuid.UUID, user: User) -> ExportRun:
    run = session.get(ExportRun, export_run_id)
    if not run:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Export not found")
    get_report_for_user(session, report_id=run.report_id, user=user)
    return run


# Accounting delivery


def accounting_recipients(session: Session, *, organization: Organization | None) -> list[str]:
    """External accounting address, or the organization's accounting managers."""
    if organization is None:
        return []
    if organization.accounting_type == AccountingType.EXTERNAL:
        email = (organization.external_accounting_email or "").strip()
        return [email] if email else []
    return sorted(
        session.scalars(
            select(User.email)
            .join(UserRoleAssignment, UserRoleAssignment.user_id == User.id)
            .where(
                User.organization_id == organization.id,
                User.is_active.is_(True),
                UserRoleAssignment.role == Role.ACCOUNTING_MANAGER,
            )
        )
    )


def send_report_to_accounting(
    session: Session, *, report_id: uuid.UUID, user: User
) -> ExportRun:
    report = get_report_for_user(session, report_id=report_id, user=user)
    perms = get_permissions(user)
    if report.employee_id != user.id and not (perms.is_admin or perms.can_view_org_reports):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    if report.status != ReportStatus.CLOSED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Only approved reports can be sent to accounting",
        )
    organization = (
        session.get(Organization, report.organization_id) if report.organization_id else None
    )
    if not accounting_recipients(session, organization=organization):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No accounting recipient is configured for this organization",
        )

    run = create_export_run(
        session,
        report_id=report.id,
        requested_by_user_id=user.id,
        deliver_to_accounting=True,
    )
    _enqueue(run)
    session.refresh(run)
    return run


def pdf_file_name(report: Report) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "_", report.trip_destination).strip("_") or "trip"
    return f"Expense_Report_{slug}_{report.id.hex[:8]}.pdf"


def accounting_payload(
    *, report: Report, accounting_email: str, pdf_bytes: bytes
) -> dict[str, str]:
    return {
        "reportId": str(report.id),
        "accountingEmail": accounting_email,
        "pdfBase64": base64.b64encode(pdf_bytes).decode("ascii"),
        "pdfFileName": pdf_file_name(report),
    }


def _deliver_to_accounting(
    session: Session, *, run: ExportRun, report: Report, employee: User | None, pdf_bytes: bytes
) -> None:
    organization = (
        session.get(Organization, report.organization_id) if report.organization_id else None
    )
    recipients = accounting_recipients(session, organization=organization)
    if not recipients:
        raise ValueError("No accounting recipient is configured for this organization")

    delivered: list[str] = []
    for email in recipients:
        payload = accounting_payload(report=report, accounting_email=email, pdf_bytes=pdf_bytes)
        context: dict[str, Any] = {
            "reportId": payload["reportId"],
            "pdfFileName": payload["pdfFileName"],
            "report_title": report.title,
            "accounting_name": (
                organization.external_accounting_name
                if organization.accounting_type == AccountingType.EXTERNAL
                else None
            ),
            "employee_name": employee.display_name if employee else str(report.employee_id),
            "trip_destination": report.trip_destination,
            "trip_start_date": report.trip_start_date,
            "trip_end_date": report.trip_end_date,
            "total_amount": report.total_amount,
            "currency": report.currency,
        }
        sent = send_email(
            template="report_to_accounting",
            to=[payload["accountingEmail"]],
            context=context,
            attachments=[{"filename": payload["pdfFileName"], "content": payload["pdfBase64"]}],
        )
        if sent:
            delivered.append(email)

    run.delivered_to = ", ".join(delivered) or None
    run.delivered_at = datetime.now(UTC) if delivered else None
    log_event(
        logger,
        "export.accounting.delivered",
        export_run_id=str(run.id),
        report_id=str(report.id),
        recipient_count=len(recipients),
        delivered_count=len(delivered),
    )


# Generation


def generate_export(*, export_run_id: str) -> None:
    with SessionLocal() as session:
        run = session.scalar(select(ExportRun).where(ExportRun.id == uuid.UUID(export_run_id)))
        if not run:
            return

        run.status = ExportStatus.RUNNING
        run.error_message = None
        session.add(run)
        session.commit()

        start = time.monotonic()
        log_event(
            logger,
            "export.generate.start",
            export_run_id=str(run.id),
            report_id=str(run.report_id),
        )
        try:
            report = session.scalar(select(Report).where(Report.id == run.report_id))
            if not report:
                raise ValueError("Report not found")

            employee = session.get(User, report.employee_id)
            expenses = list(
                session.scalars(
                    select(Expense)
                    .where(Expense.report_id == report.id)
                    .order_by(Expense.expense_date.asc(), Expense.created_at.asc())
                )
            )
            xlsx_bytes = _build_report_xlsx(report=report, employee=employee, expenses=expenses)
            pdf_bytes = _build_supporting_pdf(report=report, employee=employee, expenses=expenses)

            summary_key = f"reports/{report.id}/exports/{run.id}/summary.xlsx"
            supporting_key = f"reports/{report.id}/exports/{run.id}/supporting.pdf"
            storage = get_storage()
            storage.put(key=summary_key, body=xlsx_bytes, content_type=XLSX_MEDIA_TYPE)
            storage.put(key=supporting_key, body=pdf_bytes, content_type="application/pdf")

            if run.deliver_to_accounting:
                _deliver_to_accounting(
                    session, run=run, report=report, employee=employee, pdf_bytes=pdf_bytes
                )

            run.status = ExportStatus.COMPLETED
            run.summary_xlsx_key = summary_key
            run.supporting_pdf_key = supporting_key
            run.completed_at = datetime.now(UTC)
            session.add(run)
            session.commit()
            log_event(
                logger,
                "export.generate.finish",
                export_run_id=str(run.id),
                report_id=str(run.report_id),
                status=run.status.value,
                summary_key=run.summary_xlsx_key,
                supporting_key=run.supporting_pdf_key,
                duration_ms=monotonic_ms(start),
            )
        except Exception as e:  # noqa: BLE001
            session.rollback()
            run.status = ExportStatus.FAILED
            run.error_message = str(e)
            session.add(run)
            session.commit()
            log_exception(
                logger,
                "export.generate.error",
                export_run_id=str(run.id),
                report_id=str(run.report_id),
                duration_ms=monotonic_ms(start),
            )


def _build_report_xlsx(*, report: Report, employee: User | None, expenses: list[Expense]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Expense Report"
    bold = Font(bold=True)

    employee_label = (employee.display_name if employee else None) or str(report.employee_id)
    ws["A1"] = "Employee"
    ws["B1"] = employee_label
    ws["A2"] = "Destination"
    ws["B2"] = report.trip_destination
    ws["A3"] = "Travel period"
    if report.trip_start_date and report.trip_end_date:
        ws["B3"] = f"{report.trip_start_date} to {report.trip_end_date}"
    ws["A4"] = "Purpose of the trip"
    ws["B4"] = report.trip_purpose or None
    for cell in ("A1", "A2", "A3", "A4"):
        ws[cell].font = bold

    headers = [
        "Date",
        "Category",
        "Description",
        "Amount",
        "Currency",
        "EX rate",
        f"Amount ({report.currency})",
        "Payment method",
        "Status",
        "Manager comment",
    ]
    header_row = 6
    for col, value in enumerate(headers, start=1):
        ws.cell(row=header_row, column=col, value=value).font = bold

    row = header_row + 1
    for expense in expenses:
        ws.cell(row=row, column=1, value=expense.expense_date)
        ws.cell(row=row, column=2, value=expense.category.value)
        ws.cell(row=row, column=3, value=expense.description)
        ws.cell(row=row, column=4, value=float(expense.amount))
        ws.cell(row=row, column=5, value=expense.currency)
        ws.cell(row=row, column=6, value=float(expense.fx_rate))
        ws.cell(row=row, column=7, value=float(expense.converted_amount))
        ws.cell(row=row, column=8, value=expense.payment_method.value)
        ws.cell(row=row, column=9, value=expense.approval_status.value)
        ws.cell(row=row, column=10, value=expense.manager_comment)
        row += 1

    ws.cell(row=row, column=3, value="Total").font = bold
    first_data = header_row + 1
    total_formula = f"=SUM(G{first_data}:G{row - 1})" if expenses else 0
    ws.cell(row=row, column=7, value=total_formula).font = bold

    ws.column_dimensions["B"].width = 18
    ws.column_dimensions["C"].width = 40
    ws.column_dimensions["J"].width = 40

    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()


def _summary_text(*, report: Report, employee: User | None, expenses: list[Expense]) -> str:
    lines = [
        "EXPENSE REPORT",
        "",
        f"Employee:    {(employee.display_name if employee else None) or report.employee_id}",
        f"Destination: {report.trip_destination}",
    ]
    if report.trip_start_date and report.trip_end_date:
        lines.append(f"Period:      {report.trip_start_date} to {report.trip_end_date}")
    if report.trip_purpose:
        lines.append(f"Purpose:     {report.trip_purpose}")
    lines += ["", f"{'Date':<12}{'Category':<16}{'Amount':>14}  {'Converted':>14}  Description"]
    for e in expenses:
        amount = f"{e.amount} {e.currency}"
        converted = f"{e.converted_amount} {report.currency}"
        lines.append(
            f"{e.expense_date.isoformat():<12}{e.category.value:<16}{amount:>14}  "
            f"{converted:>14}  {e.description or ''}"
        )
    lines += ["", f"Total: {report.total_amount} {report.currency}"]
    return "\n".join(lines)


def _build_supporting_pdf(
    *, report: Report, employee: User | None, expenses: list[Expense]
) -> bytes:
    writer = PdfWriter()
    summary = _text_to_pdf(_summary_text(report=report, employee=employee, expenses=expenses))
    writer.append_pages_from_reader(PdfReader(io.BytesIO(summary)))

    storage = get_storage()
    receipts = sorted(
        (r for e in expenses for r in e.receipts),
        key=lambda r: (_expense_date(expenses, r.expense_id), r.created_at),
    )
    for receipt in receipts:
        try:
            body = storage.get(key=receipt.storage_key)
        except StorageError:
            log_exception(
                logger,
                "export.receipt.missing",
                report_id=str(report.id),
                receipt_id=str(receipt.id),
            )
            continue
        reader = _receipt_to_pdf_reader(receipt=receipt, body=body)
        if reader is not None:
            writer.append_pages_from_reader(reader)

    out = io.BytesIO()
    writer.write(out)
    return out.getvalue()


def _expense_date(expenses: list[Expense], expense_id: uuid.UUID) -> date:
    for e in expenses:
        if e.id == expense_id:
            return e.expense_date
    return date.max


def _receipt_to_pdf_reader(*, receipt: Receipt, body: bytes) -> PdfReader | None:
    if receipt.file_type == ReceiptFileType.PDF:
        return PdfReader(io.BytesIO(body))
    if receipt.file_type == ReceiptFileType.IMAGE:
        return PdfReader(io.BytesIO(_image_bytes_to_pdf(body)))
    log_event(
        logger,
        "export.receipt.skipped",
        receipt_id=str(receipt.id),
        filename=receipt.filename,
        reason="unsupported file type",
    )
    return None


def _text_to_pdf(text: str) -> bytes:
    # Minimal text->PDF using the built-in Courier font.
    page_width = 612
    page_height = 792
    margin_x = 54
    margin_top = 72
    margin_bottom = 72
    font_size = 9
    leading = 11

    usable_width = page_width - 2 * margin_x
    char_width = font_size * 0.6
    max_chars = max(int(usable_width / char_width), 40)

    def wrap_line(line: str) -> list[str]:
        line = line.replace("\t", "    ").rstrip("\n")
        if not line:
            return [""]
        out: list[str] = []
        while len(line) > max_chars:
            out.append(line[:max_chars])
            line = line[max_chars:]
        out.append(line)
        return out

    wrapped: list[str] = []
    for ln in (text or "").splitlines():
        wrapped.extend(wrap_line(ln))
    if not wrapped:
        wrapped = [""]

    lines_per_page = max(int((page_height - margin_top - margin_bottom) / leading), 1)
    pages = [wrapped[i : i + lines_per_page] for i in range(0, len(wrapped), lines_per_page)]

    def pdf_escape(s: str) -> str:
        s = s.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
        return "".join(ch if ord(ch) >= 32 else " " for ch in s)

    # 1: catalog, 2: pages, 3: font, then a page/content pair per page
    objects: list[bytes] = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Courier >>",
    ]
    kids: list[str] = []
    for idx, page_lines in enumerate(pages):
        page_obj_num = 4 + idx * 2
        content_obj_num = 5 + idx * 2
        kids.append(f"{page_obj_num} 0 R")

        start_y = page_height - margin_top - font_size
        stream_lines = ["BT", f"/F1 {font_size} Tf", f"{margin_x} {start_y} Td"]
        for ln in page_lines:
            stream_lines.append(f"({pdf_escape(ln)}) Tj")
            stream_lines.append(f"0 -{leading} Td")
        stream_lines.append("ET")
        stream = ("\n".join(stream_lines) + "\n").encode("latin-1", errors="replace")

        objects.append(
            (
                f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 {page_width} {page_height}] "
                f"/Resources << /Font << /F1 3 0 R >> >> /Contents {content_obj_num} 0 R >>"
            ).encode("ascii")
        )
        objects.append(
            b"<< /Length "
            + str(len(stream)).encode("ascii")
            + b" >>\nstream\n"
            + stream
            + b"endstream"
        )
    objects[1] = f"<< /Type /Pages /Kids [{' '.join(kids)}] /Count {len(pages)} >>".encode(
        "ascii"
    )

    out = bytearray(b"%PDF-1.4\n")
    offsets: list[int] = []
    for i, obj in enumerate(objects, start=1):
        offsets.append(len(out))
        out.extend(f"{i} 0 obj\n".encode("ascii"))
        out.extend(obj)
        out.extend(b"\nendobj\n")

    xref_offset = len(out)
    out.extend(f"xref\n0 {len(objects) + 1}\n".encode("ascii"))
    out.extend(b"0000000000 65535 f \n")
    for off in offsets:
        out.extend(f"{off:010d} 00000 n \n".encode("ascii"))
    out.extend(f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\n".encode("ascii"))
    out.extend(f"startxref\n{xref_offset}\n%%EOF\n".encode("ascii"))
    return bytes(out)


def _image_bytes_to_pdf(body: bytes) -> bytes:
    img = Image.open(io.BytesIO(body))
    frames: list[Image.Image] = []
    for idx in range(getattr(img, "n_frames", 1)):
        img.seek(idx)
        frame = ImageOps.exif_transpose(img.copy())
        if frame.mode not in {"RGB", "L"}:
            frame = frame.convert("RGB")
        frames.append(frame)
    if not frames:
        raise ValueError("Image could not be decoded")

    first, rest = frames[0], frames[1:]
    out = io.BytesIO()
    if rest:
        first.save(out, format="PDF", save_all=True, append_images=rest)
    else:
        first.save(out, format="PDF")
    return out.getvalue()
