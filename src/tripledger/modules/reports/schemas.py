from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel

from tripledger.modules.reports.models import (
    ExpenseApprovalStatus,
    ExpenseCategory,
    HistoryAction,
    PaymentMethod,
    ReceiptFileType,
    ReportStatus,
)


class ReportCreate(BaseModel):
    trip_destination: str
    trip_purpose: str | None = None
    trip_start_date: date | None = None
    trip_end_date: date | None = None
    currency: str | None = None


class ReportUpdate(BaseModel):
    trip_destination: str | None = None
    trip_purpose: str | None = None
    trip_start_date: date | None = None
    trip_end_date: date | None = None


class ReportOut(BaseModel):
    id: uuid.UUID
    employee_id: uuid.UUID
    organization_id: uuid.UUID | None
    approver_id: uuid.UUID | None
    title: str
    trip_destination: str
    trip_purpose: str | None
    trip_start_date: date | None
    trip_end_date: date | None
    currency: str
    total_amount: Decimal
    status: ReportStatus
    submitted_at: datetime | None
    manager_approval_requested_at: datetime | None
    approved_at: datetime | None
    approved_by: uuid.UUID | None
    rejection_reason: str | None
    is_reimbursed: bool
    reimbursed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class ReceiptOut(BaseModel):
    id: uuid.UUID
    expense_id: uuid.UUID
    filename: str
    content_type: str | None
    file_type: ReceiptFileType
    byte_size: int
    sha256: str
    created_at: datetime


class ReceiptUrlOut(BaseModel):
    url: str
    expires_in: int


class ExpenseCreate(BaseModel):
    category: ExpenseCategory
    expense_date: date
    amount: Decimal
    currency: str
    description: str | None = None
    payment_method: PaymentMethod = PaymentMethod.OUT_OF_POCKET


class ExpenseUpdate(BaseModel):
    category: ExpenseCategory | None = None
    expense_date: date | None = None
    amount: Decimal | None = None
    currency: str | None = None
    description: str | None = None
    payment_method: PaymentMethod | None = None


class ExpenseReview(BaseModel):
    approval_status: ExpenseApprovalStatus
    manager_comment: str | None = None


class ExpenseOut(BaseModel):
    id: uuid.UUID
    report_id: uuid.UUID
    category: ExpenseCategory
    description: str | None
    expense_date: date
    amount: Decimal
    currency: str
    converted_amount: Decimal
    fx_rate: Decimal
    payment_method: PaymentMethod
    approval_status: ExpenseApprovalStatus
    manager_comment: str | None
    receipts: list[ReceiptOut]


class ReportDecision(BaseModel):
    approve: bool
    rejection_reason: str | None = None


class ReportHistoryOut(BaseModel):
    id: uuid.UUID
    report_id: uuid.UUID
    action: HistoryAction
    performed_by: uuid.UUID | None
    notes: str | None
    created_at: datetime


class ReportApprovalView(BaseModel):
    report: ReportOut
    employee_name: str
    expenses: list[ExpenseOut]
