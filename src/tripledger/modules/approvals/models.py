from __future__ import annotations

import enum
import uuid
from decimal import Decimal

from sqlalchemy import Boolean, Enum, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tripledger.core.models import Base, Money, Timestamped, UUIDPrimaryKey


class LevelType(str, enum.Enum):
    DIRECT_MANAGER = "direct_manager"
    SECOND_LINE_MANAGER = "second_line_manager"
    ORG_ADMIN = "org_admin"
    ACCOUNTING_MANAGER = "accounting_manager"
    SPECIFIC_USER = "specific_user"


class ApprovalChain(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "approvals_chain"

    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_organization.id"), index=True
    )
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)

    levels = relationship(
        "ApprovalChainLevel",
        order_by="ApprovalChainLevel.level_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class ApprovalChainLevel(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "approvals_chain_level"
    __table_args__ = (
        UniqueConstraint("chain_id", "level_order", name="uq_approvals_chain_level_order"),
    )

    chain_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("approvals_chain.id"), index=True
    )
    level_order: Mapped[int] = mapped_column(Integer)
    level_type: Mapped[LevelType] = mapped_column(Enum(LevelType, native_enum=False))
    specific_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), nullable=True
    )
    is_required: Mapped[bool] = mapped_column(Boolean, default=True)
    can_skip_if_approved_amount_under: Mapped[Decimal | None] = mapped_column(
        Money, nullable=True
    )
    custom_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class GradeChainAssignment(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "approvals_grade_assignment"

    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_organization.id"), index=True
    )
    grade_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("policy_employee_grade.id"), nullable=True
    )
    chain_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("approvals_chain.id"), index=True
    )
    min_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    max_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)

    chain = relationship("ApprovalChain")
