from __future__ import annotations

import hashlib
import re
import uuid
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from tripledger.core.config import settings
from tripledger.core.currencies import normalize_currency
from tripledger.core.db import lock_for_update
from tripledger.core.logging import get_logger, log_event, log_exception
from tripledger.core.security import generate_approval_token
from tripledger.core.storage import StorageError, get_storage
from tripledger.modules.approvals.service import resolve_direct_approver
from tripledger.modules.fx.service import convert_amount, quantize_money
from tripledger.modules.identity.models import Organization, User
from tripledger.modules.identity.permissions import get_permissions, is_manager_like
from tripledger.modules.notifications.dispatch import EmailMessage, dispatch_emails
from tripledger.modules.notifications.service import notify
from tripledger.modules.reports.models import (
    Expense,
    ExpenseApprovalStatus,
    ExpenseCategory,
    HistoryAction,
    PaymentMethod,
    Receipt,
    ReceiptFileType,
    Report,
    ReportHistory,
    ReportStatus,
)

logger = get_logger(__name__)

EDITABLE_STATUSES = frozenset({ReportStatus.DRAFT, ReportStatus.OPEN})


def home_currency_for(session: Session, user: User) -> str:
    org = session.get(Organization, user.organization_id) if user.organization_id else None
    return (org.home_currency if org and org.home_currency else None) or (
        settings.default_home_currency
    )


def _add_history(
    session: Session,
    *,
    report: Report,
    action: HistoryAction,
    performed_by: uuid.UUID | None,
    notes: str | None = None,
) -> None:
    session.add(
        ReportHistory(report_id=report.id, action=action, performed_by=performed_by, notes=notes)
    )


def stage_report(
    session: Session,
    *,
    user: User,
    trip_destination: str,
    trip_purpose: str | None = None,
    trip_start_date: date | None = None,
    trip_end_date: date | None = None,
    currency: str | None = None,
    notes: str | None = None,
) -> Report:
    """Add an open report and its creation history entry without committing."""
    if not trip_destination or not trip_destination.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="trip_destination is required"
        )
    if trip_start_date and trip_end_date and trip_end_date < trip_start_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="trip_end_date must not be before trip_start_date",
        )
    currency_norm = normalize_currency(currency or home_currency_for(session, user))
    if not currency_norm:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="currency must be a valid ISO-4217 code",
        )
    report = Report(
        employee_id=user.id,
        organization_id=user.organization_id,
        trip_destination=trip_destination.strip(),
        trip_purpose=trip_purpose,
        trip_start_date=trip_start_date,
        trip_end_date=trip_end_date,
        currency=currency_norm,
        total_amount=Decimal("0.00"),
        status=ReportStatus.OPEN,
    )
    session.add(report)
    session.flush()
    _add_history(
        session, report=report, action=HistoryAction.CREATED, performed_by=user.id, notes=notes
    )
    return report


def create_report(session: Session, *, user: User, **fields) -> Report:
    report = stage_report(session, user=user, **fields)
    session.commit()
    session.refresh(report)
    log_event(logger, "reports.report.created", report_id=str(report.id))
    return report


def _can_view(user: User, report: Report) -> bool:
    perms = get_permissions(user)
    if perms.is_admin or report.employee_id == user.id or report.approver_id == user.id:
        return True
    if perms.can_view_org_reports and report.organization_id == user.organization_id:
        return True
    employee = report.employee
    return bool(employee and employee.manager_id == user.id)


def list_reports_for_user(
    session: Session, *, user: User, status_filter: ReportStatus | None = None
) -> list[Report]:
    perms = get_permissions(user)
    q = select(Report).order_by(Report.created_at.desc())
    if status_filter is not None:
        q = q.where(Report.status == status_filter)
    if perms.is_admin:
        return list(session.scalars(q))
    if perms.can_view_org_reports:
        return list(
            session.scalars(
                q.where(
                    or_(
                        Report.organization_id == user.organization_id,
                        Report.employee_id == user.id,
                    )
                )
            )
        )
    if is_manager_like(user):
        team = select(User.id).where(User.manager_id == user.id)
        return list(
            session.scalars(
                q.where(
                    or_(
                        Report.employee_id == user.id,
                        Report.approver_id == user.id,
                        Report.employee_id.in_(team),
                    )
                )
            )
        )
    return list(session.scalars(q.where(Report.employee_id == user.id)))


def get_report_for_user(session: Session, *, report_id: uuid.UUID, user: User) -> Report:
    report = session.scalar(select(Report).where(Report.id == report_id))
    if not report:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Report not found")
    if not _can_view(user, report):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    return report


def _require_editable(report: Report, user: User) -> None:
    if report.employee_id != user.id and not get_permissions(user).is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    if report.status not in EDITABLE_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Report not editable in this status"
        )


def update_report(session: Session, *, report_id: uuid.UUID, user: User, **changes) -> Report:
    report = get_report_for_user(session, report_id=report_id, user=user)
    _require_editable(report, user)

    if "trip_destination" in changes and changes["trip_destination"] is not None:
        if not changes["trip_destination"].strip():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="trip_destination is required"
            )
        report.trip_destination = changes["trip_destination"].strip()
    for field in ("trip_purpose", "trip_start_date", "trip_end_date"):
        if field in changes and changes[field] is not None:
            setattr(report, field, changes[field])
    if report.trip_start_date and report.trip_end_date and (
        report.trip_end_date < report.trip_start_date
    ):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="trip_end_date must not be before trip_start_date",
        )

    _add_history(session, report=report, action=HistoryAction.EDITED, performed_by=user.id)
    session.add(report)
    session.commit()
    session.refresh(report)
    return report


# Expenses


def _positive_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid amount") from e
    if amount <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Amount must be greater than zero"
        )
    return quantize_money(amount)


def _recompute_total(session: Session, report: Report) -> None:
    session.flush()
    total = session.scalar(
        select(func.coalesce(func.sum(Expense.converted_amount), 0)).where(
            Expense.report_id == report.id
        )
    )
    report.total_amount = quantize_money(Decimal(str(total or 0)))
    session.add(report)


def _convert_expense(session: Session, *, expense: Expense, report: Report) -> None:
    converted, rate = convert_amount(
        session,
        amount=expense.amount,
        from_currency=expense.currency,
        to_currency=report.currency,
    )
    expense.converted_amount = converted
    expense.fx_rate = rate


def _get_expense(session: Session, *, expense_id: uuid.UUID, user: User) -> tuple[Expense, Report]:
    expense = session.get(Expense, expense_id)
    if not expense:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Expense not found")
    report = get_report_for_user(session, report_id=expense.report_id, user=user)
    return expense, report


def list_expenses(session: Session, *, report_id: uuid.UUID, user: User) -> list[Expense]:
    report = get_report_for_user(session, report_id=report_id, user=user)
    return list(
        session.scalars(
            select(Expense)
            .where(Expense.report_id == report.id)
            .order_by(Expense.expense_date.asc(), Expense.created_at.asc())
        )
    )


def add_expense(
    session: Session,
    *,
    report_id: uuid.UUID,
    user: User,
    category: ExpenseCategory,
    expense_date: date,
    amount: Decimal,
    currency: str,
    description: str | None = None,
    payment_method: PaymentMethod = PaymentMethod.OUT_OF_POCKET,
) -> Expense:
    report = get_report_for_user(session, report_id=report_id, user=user)
    _require_editable(report, user)
    currency_norm = normalize_currency(currency)
    if not currency_norm:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="currency must be a valid ISO-4217 code"
        )
    expense = Expense(
        report_id=report.id,
        category=category,
        expense_date=expense_date,
        amount=_positive_amount(amount),
        currency=currency_norm,
        description=description,
        payment_method=payment_method,
        approval_status=ExpenseApprovalStatus.PENDING,
    )
    _convert_expense(session, expense=expense, report=report)
    session.add(expense)
    _recompute_total(session, report)
    session.commit()
    session.refresh(expense)
    log_event(
        logger,
        "reports.expense.added",
        report_id=str(report.id),
        expense_id=str(expense.id),
        currency=expense.currency,
    )
    return expense


def update_expense(session: Session, *, expense_id: uuid.UUID, user: User, **changes) -> Expense:
    expense, report = _get_expense(session, expense_id=expense_id, user=user)
    _require_editable(report, user)

    if changes.get("amount") is not None:
        expense.amount = _positive_amount(changes["amount"])
    if changes.get("currency") is not None:
        currency_norm = normalize_currency(changes["currency"])
        if not currency_norm:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="currency must be a valid ISO-4217 code",
            )
        expense.currency = currency_norm
    for field in ("category", "expense_date", "description", "payment_method"):
        if changes.get(field) is not None:
            setattr(expense, field, changes[field])

    _convert_expense(session, expense=expense, report=report)
    session.add(expense)
    _recompute_total(session, report)
    session.commit()
    session.refresh(expense)
    return expense


def _delete_stored(keys: list[str]) -> None:
    storage = get_storage()
    for key in keys:
        try:
            storage.delete(key=key)
        except StorageError:
            log_exception(logger, "reports.receipt.storage_delete_failed", storage_key=key)


def delete_expense(session: Session, *, expense_id: uuid.UUID, user: User) -> None:
    expense, report = _get_expense(session, expense_id=expense_id, user=user)
    _require_editable(report, user)
    keys = [r.storage_key for r in expense.receipts]
    session.delete(expense)
    _recompute_total(session, report)
    session.commit()
    _delete_stored(keys)


def review_expense(
    session: Session,
    *,
    expense_id: uuid.UUID,
    user: User,
    approval_status: ExpenseApprovalStatus,
    manager_comment: str | None = None,
) -> Expense:
    expense, report = _get_expense(session, expense_id=expense_id, user=user)
    if report.approver_id != user.id and not get_permissions(user).is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    if report.status != ReportStatus.PENDING_APPROVAL:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Report is not awaiting approval"
        )
    expense.approval_status = approval_status
    expense.manager_comment = manager_comment
    session.add(expense)
    session.commit()
    session.refresh(expense)
    return expense


# Receipts


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _sanitize_filename(name: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", (name or "").strip()).strip("._")
    return cleaned[:120] or "receipt"


def _looks_like_pdf_bytes(body: bytes) -> bool:
    b = body.lstrip()
    if b.startswith(b"\xef\xbb\xbf"):
        b = b[3:].lstrip()
    return b.startswith(b"%PDF")


def _looks_like_image_bytes(body: bytes) -> bool:
    return (
        body.startswith(b"\x89PNG\r\n\x1a\n")
        or body.startswith(b"\xff\xd8\xff")
        or body.startswith(b"II*\x00")
        or body.startswith(b"MM\x00*")
        or body.startswith(b"BM")
        or body.startswith((b"GIF87a", b"GIF89a"))
        or (len(body) >= 12 and body.startswith(b"RIFF") and body[8:12] == b"WEBP")
    )


def detect_receipt_type(
    *, filename: str, content_type: str | None, body: bytes
) -> ReceiptFileType:
    if _looks_like_pdf_bytes(body):
        return ReceiptFileType.PDF
    if _looks_like_image_bytes(body):
        return ReceiptFileType.IMAGE
    # Bytes were not recognised; fall back to the declared type.
    ct = (content_type or "").lower()
    if ct.startswith("image/"):
        return ReceiptFileType.IMAGE
    return ReceiptFileType.OTHER


def upload_receipt(
    session: Session,
    *,
    expense_id: uuid.UUID,
    user: User,
    filename: str,
    content_type: str | None,
    body: bytes,
) -> Receipt:
    expense, report = _get_expense(session, expense_id=expense_id, user=user)
    _require_editable(report, user)
    if not body:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")

    file_type = detect_receipt_type(filename=filename, content_type=content_type, body=body)
    key = f"reports/{report.id}/receipts/{uuid.uuid4()}-{_sanitize_filename(filename)}"
    stored = get_storage().put(key=key, body=body, content_type=content_type)

    receipt = Receipt(
        expense_id=expense.id,
        uploaded_by_user_id=user.id,
        filename=filename or "receipt",
        content_type=content_type,
        file_type=file_type,
        byte_size=stored.byte_size,
        sha256=_sha256_hex(body),
        storage_key=stored.key,
    )
    session.add(receipt)
    session.commit()
    session.refresh(receipt)
    log_event(
        logger,
        "reports.receipt.uploaded",
        report_id=str(report.id),
        receipt_id=str(receipt.id),
        file_type=file_type.value,
        byte_size=stored.byte_size,
    )
    return receipt


def _get_receipt(session: Session, *, receipt_id: uuid.UUID, user: User) -> tuple[Receipt, Report]:
    receipt = session.get(Receipt, receipt_id)
    if not receipt:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Receipt not found")
    _, report = _get_expense(session, expense_id=receipt.expense_id, user=user)
    return receipt, report


def receipt_url(session: Session, *, receipt_id: uuid.UUID, user: User) -> tuple[str, int]:
    """Return a time-limited URL for the receipt file and its lifetime in seconds."""
    receipt, _ = _get_receipt(session, receipt_id=receipt_id, user=user)
    expires_in = settings.signed_url_expiry_seconds
    return get_storage().signed_url(key=receipt.storage_key, expires_in=expires_in), expires_in


def delete_receipt(session: Session, *, receipt_id: uuid.UUID, user: User) -> None:
    receipt, report = _get_receipt(session, receipt_id=receipt_id, user=user)
    _require_editable(report, user)
    key = receipt.storage_key
    session.delete(receipt)
    session.commit()
    _delete_stored([key])


# Approval


def _approval_url(token: str) -> str:
    return f"{settings.base_url.rstrip('/')}/api/report-approvals/{token}"


def _report_context(report: Report, employee: User) -> dict[str, Any]:
    return {
        "report_title": report.title,
        "requester_name": employee.display_name,
        "trip_destination": report.trip_destination,
        "trip_start_date": report.trip_start_date,
        "trip_end_date": report.trip_end_date,
        "total_amount": report.total_amount,
        "currency": report.currency,
    }


def submit_report_for_approval(session: Session, *, report_id: uuid.UUID, user: User) -> Report:
    report = get_report_for_user(session, report_id=report_id, user=user)
    if report.employee_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    if report.status not in EDITABLE_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Report cannot be submitted from this status"
        )
    expense_count = session.scalar(
        select(func.count()).select_from(Expense).where(Expense.report_id == report.id)
    )
    if not expense_count:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Add at least one expense before submitting",
        )

    approver = resolve_direct_approver(session, requester=user)
    if approver is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No manager is assigned to you; ask an administrator to set your manager",
        )

    now = datetime.now(UTC)
    token = generate_approval_token()
    report.status = ReportStatus.PENDING_APPROVAL
    report.approver_id = approver.id
    report.manager_approval_token = token
    report.manager_approval_requested_at = now
    report.submitted_at = now
    report.rejection_reason = None
    session.add(report)
    _add_history(session, report=report, action=HistoryAction.SUBMITTED, performed_by=user.id)
    notify(
        session,
        user_id=approver.id,
        type="report_approval_request",
        title="Expense report awaiting approval",
        message=f"{user.display_name} submitted a report for {report.trip_destination}",
        report_id=report.id,
    )
    session.commit()
    session.refresh(report)
    log_event(
        logger,
        "reports.submit",
        report_id=str(report.id),
        approver_id=str(approver.id),
        expense_count=int(expense_count),
    )

    context = _report_context(report, user)
    context.update({"expense_count": int(expense_count), "approval_url": _approval_url(token)})
    dispatch_emails(
        [EmailMessage(template="report_approval_request", to=[approver.email], context=context)]
    )
    return report


def _apply_decision(
    session: Session,
    *,
    report: Report,
    approve: bool,
    decided_by: uuid.UUID | None,
    rejection_reason: str | None,
) -> Report:
    if report.status != ReportStatus.PENDING_APPROVAL:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Report is not awaiting approval"
        )
    if not approve and not (rejection_reason or "").strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="A rejection reason is required"
        )

    now = datetime.now(UTC)
    report.manager_approval_token = None
    if approve:
        report.status = ReportStatus.CLOSED
        report.approved_at = now
        report.approved_by = decided_by
        report.rejection_reason = None
        action = HistoryAction.APPROVED
    else:
        report.status = ReportStatus.OPEN
        report.rejection_reason = rejection_reason.strip()
        action = HistoryAction.REJECTED
    session.add(report)
    _add_history(
        session,
        report=report,
        action=action,
        performed_by=decided_by,
        notes=report.rejection_reason,
    )
    decision = "approved" if approve else "rejected"
    notify(
        session,
        user_id=report.employee_id,
        type="report_decision",
        title=f"Expense report {decision}",
        message=f"Your report for {report.trip_destination} was {decision}",
        report_id=report.id,
    )
    session.commit()
    session.refresh(report)
    log_event(logger, "reports.decide", report_id=str(report.id), decision=decision)

    employee = session.get(User, report.employee_id)
    context = _report_context(report, employee)
    context.update({"decision": decision, "rejection_reason": report.rejection_reason})
    dispatch_emails([EmailMessage(template="report_decision", to=[employee.email], context=context)])
    return report


def decide_report(
    session: Session,
    *,
    report_id: uuid.UUID,
    user: User,
    approve: bool,
    rejection_reason: str | None = None,
) -> Report:
    report = session.scalar(lock_for_update(select(Report).where(Report.id == report_id)))
    if not report:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Report not found")
    if report.approver_id != user.id and not get_permissions(user).is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    return _apply_decision(
        session,
        report=report,
        approve=approve,
        decided_by=user.id,
        rejection_reason=rejection_reason,
    )


def get_report_by_token(session: Session, *, token: str) -> Report:
    report = session.scalar(select(Report).where(Report.manager_approval_token == token))
    if not token or not report:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Approval link is invalid or has already been used",
        )
    return report


def decide_report_by_token(
    session: Session, *, token: str, approve: bool, rejection_reason: str | None = None
) -> Report:
    report = session.scalar(
        lock_for_update(select(Report).where(Report.manager_approval_token == token))
    )
    if not token or not report:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Approval link is invalid or has already been used",
        )
    return _apply_decision(
        session,
        report=report,
        approve=approve,
        decided_by=report.approver_id,
        rejection_reason=rejection_reason,
    )


def mark_reimbursed(session: Session, *, report_id: uuid.UUID, user: User) -> Report:
    perms = get_permissions(user)
    if not perms.can_mark_reimbursed:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    report = get_report_for_user(session, report_id=report_id, user=user)
    if report.status != ReportStatus.CLOSED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Only approved reports can be reimbursed"
        )
    if report.is_reimbursed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Report already marked as reimbursed"
        )
    report.is_reimbursed = True
    report.reimbursed_at = datetime.now(UTC)
    report.reimbursed_by = user.id
    session.add(report)
    _add_history(session, report=report, action=HistoryAction.REIMBURSED, performed_by=user.id)
    session.commit()
    session.refresh(report)
    log_event(logger, "reports.reimbursed", report_id=str(report.id))
    return report


def list_history(session: Session, *, report_id: uuid.UUID, user: User) -> list[ReportHistory]:
    report = get_report_for_user(session, report_id=report_id, user=user)
    return list(
        session.scalars(
            select(ReportHistory)
            .where(ReportHistory.report_id == report.id)
            .order_by(ReportHistory.created_at.asc())
        )
    )
