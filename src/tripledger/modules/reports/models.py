from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tripledger.core.models import Base, Money, Timestamped, UUIDPrimaryKey, utcnow


class ReportStatus(str, enum.Enum):
    DRAFT = "draft"
    OPEN = "open"
    PENDING_APPROVAL = "pending_approval"
    CLOSED = "closed"


class ExpenseCategory(str, enum.Enum):
    FLIGHTS = "flights"
    ACCOMMODATION = "accommodation"
    FOOD = "food"
    TRANSPORTATION = "transportation"
    MISCELLANEOUS = "miscellaneous"


class ExpenseApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PaymentMethod(str, enum.Enum):
    COMPANY_CARD = "company_card"
    OUT_OF_POCKET = "out_of_pocket"


class ReceiptFileType(str, enum.Enum):
    IMAGE = "image"
    PDF = "pdf"
    OTHER = "other"


class HistoryAction(str, enum.Enum):
    CREATED = "created"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    EDITED = "edited"
    REIMBURSED = "reimbursed"


class Report(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "reports_report"

    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), index=True
    )
    organization_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_organization.id"), nullable=True, index=True
    )
    approver_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), nullable=True, index=True
    )

    trip_destination: Mapped[str] = mapped_column(String(200))
    trip_purpose: Mapped[str | None] = mapped_column(Text, nullable=True)
    trip_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    trip_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    currency: Mapped[str] = mapped_column(String(3))
    total_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))

    status: Mapped[ReportStatus] = mapped_column(Enum(ReportStatus, native_enum=False), index=True)
    manager_approval_token: Mapped[str | None] = mapped_column(
        String(128), nullable=True, unique=True
    )
    manager_approval_requested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), nullable=True
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_reimbursed: Mapped[bool] = mapped_column(Boolean, default=False)
    reimbursed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reimbursed_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), nullable=True
    )

    employee = relationship("User", foreign_keys=[employee_id])
    approver = relationship("User", foreign_keys=[approver_id])
    expenses = relationship(
        "Expense",
        back_populates="report",
        cascade="all, delete-orphan",
        order_by="Expense.expense_date",
    )

    @property
    def title(self) -> str:
        if self.trip_start_date:
            return f"{self.trip_destination} ({self.trip_start_date.isoformat()})"
        return self.trip_destination


class Expense(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "reports_expense"

    report_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("reports_report.id"), index=True
    )
    category: Mapped[ExpenseCategory] = mapped_column(Enum(ExpenseCategory, native_enum=False))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    expense_date: Mapped[date] = mapped_column(Date)

    amount: Mapped[Decimal] = mapped_column(Money)
    currency: Mapped[str] = mapped_column(String(3))
    converted_amount: Mapped[Decimal] = mapped_column(Money)
    fx_rate: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal("1"))

    payment_method: Mapped[PaymentMethod] = mapped_column(
        Enum(PaymentMethod, native_enum=False), default=PaymentMethod.OUT_OF_POCKET
    )
    approval_status: Mapped[ExpenseApprovalStatus] = mapped_column(
        Enum(ExpenseApprovalStatus, native_enum=False), default=ExpenseApprovalStatus.PENDING
    )
    manager_comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    report = relationship("Report", back_populates="expenses")
    receipts = relationship(
        "Receipt", back_populates="expense", cascade="all, delete-orphan", lazy="selectin"
    )


class Receipt(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "reports_receipt"

    expense_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("reports_expense.id"), index=True
    )
    uploaded_by_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id")
    )
    filename: Mapped[str] = mapped_column(String(300))
    content_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    file_type: Mapped[ReceiptFileType] = mapped_column(Enum(ReceiptFileType, native_enum=False))
    byte_size: Mapped[int] = mapped_column(Integer)
    sha256: Mapped[str] = mapped_column(String(64))
    storage_key: Mapped[str] = mapped_column(String(500))

    expense = relationship("Expense", back_populates="receipts")


class ReportHistory(UUIDPrimaryKey, Base):
    __tablename__ = "reports_history"

    report_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("reports_report.id"), index=True
    )
    action: Mapped[HistoryAction] = mapped_column(Enum(HistoryAction, native_enum=False))
    performed_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
