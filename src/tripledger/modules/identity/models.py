from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tripledger.core.models import Base, Timestamped, UUIDPrimaryKey


class Role(str, enum.Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"
    ACCOUNTING_MANAGER = "accounting_manager"
    ORG_ADMIN = "org_admin"


class AccountingType(str, enum.Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"


class Organization(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "identity_organization"

    name: Mapped[str] = mapped_column(String(200), unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    home_country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    home_currency: Mapped[str] = mapped_column(String(3), default="ILS")

    accounting_type: Mapped[AccountingType] = mapped_column(
        Enum(AccountingType, native_enum=False), default=AccountingType.INTERNAL
    )
    external_accounting_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    external_accounting_name: Mapped[str | None] = mapped_column(String(200), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class User(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "identity_user"

    email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    full_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    username: Mapped[str | None] = mapped_column(String(100), nullable=True)
    department: Mapped[str | None] = mapped_column(String(200), nullable=True)
    employee_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    password_hash: Mapped[str] = mapped_column(String(200))

    organization_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_organization.id"), nullable=True, index=True
    )
    manager_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), nullable=True, index=True
    )
    grade_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("policy_employee_grade.id"), nullable=True
    )

    is_manager: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    organization = relationship("Organization")
    manager = relationship("User", remote_side="User.id")
    role_assignments = relationship(
        "UserRoleAssignment", lazy="selectin", cascade="all, delete-orphan"
    )

    @property
    def roles(self) -> set[Role]:
        return {a.role for a in self.role_assignments}

    @property
    def display_name(self) -> str:
        return self.full_name or self.email


class UserRoleAssignment(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "identity_user_role"
    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_identity_user_role"),)

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), index=True
    )
    role: Mapped[Role] = mapped_column(Enum(Role, native_enum=False), index=True)


class InvitationCode(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "identity_invitation_code"

    code: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_organization.id"), index=True
    )
    role: Mapped[Role] = mapped_column(Enum(Role, native_enum=False))
    manager_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), nullable=True
    )
    grade_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("policy_employee_grade.id"), nullable=True
    )
    created_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), nullable=True
    )
    invited_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    max_uses: Mapped[int] = mapped_column(Integer, default=1)
    use_count: Mapped[int] = mapped_column(Integer, default=0)
    is_used: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    used_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), nullable=True
    )

    organization = relationship("Organization")
