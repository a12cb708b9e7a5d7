from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, File, UploadFile
from sqlalchemy.orm import Session

from tripledger.api.deps import get_current_user
from tripledger.core.db import db_session
from tripledger.core.logging import get_logger, log_event
from tripledger.modules.identity.models import User
from tripledger.modules.reports.models import ReportStatus
from tripledger.modules.reports.schemas import (
    ExpenseCreate,
    ExpenseOut,
    ExpenseReview,
    ExpenseUpdate,
    ReceiptOut,
    ReceiptUrlOut,
    ReportApprovalView,
    ReportCreate,
    ReportDecision,
    ReportHistoryOut,
    ReportOut,
    ReportUpdate,
)
from tripledger.modules.reports.service import (
    add_expense,
    create_report,
    decide_report,
    decide_report_by_token,
    delete_expense,
    delete_receipt,
    get_report_by_token,
    get_report_for_user,
    list_expenses,
    list_history,
    list_reports_for_user,
    mark_reimbursed,
    receipt_url,
    review_expense,
    submit_report_for_approval,
    update_expense,
    update_report,
    upload_receipt,
)

router = APIRouter(tags=["reports"])
logger = get_logger(__name__)


def _out(report) -> ReportOut:
    return ReportOut.model_validate(report, from_attributes=True)


@router.post("/reports", response_model=ReportOut)
def create_report_endpoint(
    payload: ReportCreate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReportOut:
    return _out(create_report(session, user=user, **payload.model_dump()))


@router.get("/reports", response_model=list[ReportOut])
def list_reports_endpoint(
    status: ReportStatus | None = None,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[ReportOut]:
    return [_out(r) for r in list_reports_for_user(session, user=user, status_filter=status)]


@router.get("/reports/{report_id}", response_model=ReportOut)
def get_report_endpoint(
    report_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReportOut:
    return _out(get_report_for_user(session, report_id=report_id, user=user))


@router.patch("/reports/{report_id}", response_model=ReportOut)
def update_report_endpoint(
    report_id: uuid.UUID,
    payload: ReportUpdate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReportOut:
    report = update_report(
        session, report_id=report_id, user=user, **payload.model_dump(exclude_unset=True)
    )
    return _out(report)


@router.post("/reports/{report_id}/submit", response_model=ReportOut)
def submit_report_endpoint(
    report_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReportOut:
    return _out(submit_report_for_approval(session, report_id=report_id, user=user))


@router.post("/reports/{report_id}/decide", response_model=ReportOut)
def decide_report_endpoint(
    report_id: uuid.UUID,
    payload: ReportDecision,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReportOut:
    report = decide_report(
        session,
        report_id=report_id,
        user=user,
        approve=payload.approve,
        rejection_reason=payload.rejection_reason,
    )
    return _out(report)


@router.post("/reports/{report_id}/reimbursed", response_model=ReportOut)
def mark_reimbursed_endpoint(
    report_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReportOut:
    return _out(mark_reimbursed(session, report_id=report_id, user=user))


@router.get("/reports/{report_id}/history", response_model=list[ReportHistoryOut])
def list_history_endpoint(
    report_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[ReportHistoryOut]:
    return [
        ReportHistoryOut.model_validate(h, from_attributes=True)
        for h in list_history(session, report_id=report_id, user=user)
    ]


# Expenses


@router.get("/reports/{report_id}/expenses", response_model=list[ExpenseOut])
def list_expenses_endpoint(
    report_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[ExpenseOut]:
    return [
        ExpenseOut.model_validate(e, from_attributes=True)
        for e in list_expenses(session, report_id=report_id, user=user)
    ]


@router.post("/reports/{report_id}/expenses", response_model=ExpenseOut)
def add_expense_endpoint(
    report_id: uuid.UUID,
    payload: ExpenseCreate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ExpenseOut:
    expense = add_expense(session, report_id=report_id, user=user, **payload.model_dump())
    return ExpenseOut.model_validate(expense, from_attributes=True)


@router.patch("/expenses/{expense_id}", response_model=ExpenseOut)
def update_expense_endpoint(
    expense_id: uuid.UUID,
    payload: ExpenseUpdate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ExpenseOut:
    expense = update_expense(
        session, expense_id=expense_id, user=user, **payload.model_dump(exclude_unset=True)
    )
    return ExpenseOut.model_validate(expense, from_attributes=True)


@router.delete("/expenses/{expense_id}")
def delete_expense_endpoint(
    expense_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> dict[str, str]:
    delete_expense(session, expense_id=expense_id, user=user)
    return {"status": "ok"}


@router.post("/expenses/{expense_id}/review", response_model=ExpenseOut)
def review_expense_endpoint(
    expense_id: uuid.UUID,
    payload: ExpenseReview,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ExpenseOut:
    expense = review_expense(
        session,
        expense_id=expense_id,
        user=user,
        approval_status=payload.approval_status,
        manager_comment=payload.manager_comment,
    )
    return ExpenseOut.model_validate(expense, from_attributes=True)


# Receipts


@router.post("/expenses/{expense_id}/receipts", response_model=ReceiptOut)
async def upload_receipt_endpoint(
    expense_id: uuid.UUID,
    upload: UploadFile = File(...),
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReceiptOut:
    body = await upload.read()
    log_event(
        logger,
        "upload.received",
        expense_id=str(expense_id),
        filename=upload.filename or "receipt.bin",
        content_type=upload.content_type,
        byte_size=len(body),
    )
    receipt = upload_receipt(
        session,
        expense_id=expense_id,
        user=user,
        filename=upload.filename or "receipt.bin",
        content_type=upload.content_type,
        body=body,
    )
    return ReceiptOut.model_validate(receipt, from_attributes=True)


@router.get("/receipts/{receipt_id}/url", response_model=ReceiptUrlOut)
def receipt_url_endpoint(
    receipt_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReceiptUrlOut:
    url, expires_in = receipt_url(session, receipt_id=receipt_id, user=user)
    return ReceiptUrlOut(url=url, expires_in=expires_in)


@router.delete("/receipts/{receipt_id}")
def delete_receipt_endpoint(
    receipt_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> dict[str, str]:
    delete_receipt(session, receipt_id=receipt_id, user=user)
    return {"status": "ok"}


# Public approval link sent to the approver by email; the token is the credential.


@router.get("/report-approvals/{token}", response_model=ReportApprovalView)
def view_report_by_token(token: str, session: Session = Depends(db_session)) -> ReportApprovalView:
    report = get_report_by_token(session, token=token)
    return ReportApprovalView(
        report=_out(report),
        employee_name=report.employee.display_name,
        expenses=[ExpenseOut.model_validate(e, from_attributes=True) for e in report.expenses],
    )


@router.post("/report-approvals/{token}", response_model=ReportOut)
def decide_report_by_token_endpoint(
    token: str,
    payload: ReportDecision,
    session: Session = Depends(db_session),
) -> ReportOut:
    report = decide_report_by_token(
        session,
        token=token,
        approve=payload.approve,
        rejection_reason=payload.rejection_reason,
    )
    return _out(report)
