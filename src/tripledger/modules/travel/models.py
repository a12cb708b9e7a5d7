from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tripledger.core.models import Base, Money, Timestamped, UUIDPrimaryKey
from tripledger.modules.policy.models import ActionType, ViolationSource


class TravelRequestStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    PARTIALLY_APPROVED = "partially_approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"


class Decision(str, enum.Enum):
    APPROVE = "approve"
    APPROVE_WITH_CHANGES = "approve_with_changes"
    REJECT = "reject"


# Per-category fields, shared by the estimate and approved amount columns.
AMOUNT_FIELDS = (
    "flights",
    "accommodation_per_night",
    "meals_per_day",
    "transport",
    "other",
)


class TravelRequest(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "travel_request"

    requester_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), index=True
    )
    organization_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_organization.id"), nullable=True, index=True
    )
    chain_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("approvals_chain.id"), nullable=True
    )

    destination_city: Mapped[str] = mapped_column(String(200))
    destination_country: Mapped[str] = mapped_column(String(100))
    start_date: Mapped[date] = mapped_column(Date)
    end_date: Mapped[date] = mapped_column(Date)
    purpose: Mapped[str] = mapped_column(String(200))
    purpose_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    employee_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    currency: Mapped[str] = mapped_column(String(3))
    estimated_flights: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    estimated_accommodation_per_night: Mapped[Decimal] = mapped_column(
        Money, default=Decimal("0")
    )
    estimated_meals_per_day: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    estimated_transport: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    estimated_other: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    estimated_total: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))

    approved_flights: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    approved_accommodation_per_night: Mapped[Decimal | None] = mapped_column(
        Money, nullable=True
    )
    approved_meals_per_day: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    approved_transport: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    approved_other: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    approved_total: Mapped[Decimal | None] = mapped_column(Money, nullable=True)

    status: Mapped[TravelRequestStatus] = mapped_column(
        Enum(TravelRequestStatus, native_enum=False), index=True
    )
    current_approval_level: Mapped[int] = mapped_column(Integer, default=0)
    submission_count: Mapped[int] = mapped_column(Integer, default=0)
    requires_special_approval: Mapped[bool] = mapped_column(Boolean, default=False)

    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    final_decision_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    requester = relationship("User")

    @property
    def nights(self) -> int:
        return max(0, (self.end_date - self.start_date).days)

    @property
    def days(self) -> int:
        return self.nights + 1


class TravelRequestApproval(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "travel_request_approval"
    __table_args__ = (
        UniqueConstraint(
            "travel_request_id",
            "submission_round",
            "approval_level",
            name="uq_travel_approval_round_level",
        ),
    )

    travel_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("travel_request.id"), index=True
    )
    submission_round: Mapped[int] = mapped_column(Integer, default=1)
    approval_level: Mapped[int] = mapped_column(Integer)
    level_type: Mapped[str] = mapped_column(String(50))
    approver_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), nullable=True, index=True
    )

    status: Mapped[ApprovalStatus] = mapped_column(
        Enum(ApprovalStatus, native_enum=False), index=True
    )
    decision: Mapped[Decision | None] = mapped_column(
        Enum(Decision, native_enum=False), nullable=True
    )
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    custom_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    skip_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    approver = relationship("User")


class TravelRequestViolation(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "travel_request_violation"

    travel_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("travel_request.id"), index=True
    )
    source: Mapped[ViolationSource] = mapped_column(Enum(ViolationSource, native_enum=False))
    rule_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    rule_name: Mapped[str] = mapped_column(String(200))
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    action_type: Mapped[ActionType] = mapped_column(Enum(ActionType, native_enum=False))
    message: Mapped[str] = mapped_column(Text)

    requested_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    policy_limit: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    overage_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    overage_percentage: Mapped[Decimal | None] = mapped_column(Numeric(9, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)

    requires_special_approval: Mapped[bool] = mapped_column(Boolean, default=False)
    employee_explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    explained_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def needs_explanation(self) -> bool:
        return self.action_type == ActionType.REQUIRE_APPROVAL

    @property
    def is_blocking(self) -> bool:
        return self.action_type == ActionType.BLOCK


class ApprovedTravel(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "travel_approved_travel"

    travel_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("travel_request.id"), unique=True
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), index=True
    )
    organization_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_organization.id"), nullable=True
    )
    approval_number: Mapped[str] = mapped_column(String(20), unique=True)

    destination_city: Mapped[str] = mapped_column(String(200))
    destination_country: Mapped[str] = mapped_column(String(100))
    start_date: Mapped[date] = mapped_column(Date)
    end_date: Mapped[date] = mapped_column(Date)
    purpose: Mapped[str] = mapped_column(String(200))
    currency: Mapped[str] = mapped_column(String(3))
    approved_budget: Mapped[dict] = mapped_column(JSON, default=dict)

    valid_from: Mapped[date] = mapped_column(Date)
    valid_until: Mapped[date] = mapped_column(Date)

    is_used: Mapped[bool] = mapped_column(Boolean, default=False)
    expense_report_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("reports_report.id"), nullable=True
    )

    travel_request = relationship("TravelRequest")
