from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, EmailStr, field_validator

from tripledger.modules.identity.models import AccountingType, Role


class UserOut(BaseModel):
    id: uuid.UUID
    email: EmailStr
    full_name: str | None
    username: str | None
    department: str | None
    employee_number: str | None
    organization_id: uuid.UUID | None
    manager_id: uuid.UUID | None
    grade_id: uuid.UUID | None
    is_manager: bool
    is_active: bool
    roles: list[Role]

    @field_validator("roles", mode="before")
    @classmethod
    def _sorted_roles(cls, value):
        return sorted(value, key=lambda r: r.value if isinstance(r, Role) else str(r))


class UserCreate(BaseModel):
    email: EmailStr
    full_name: str | None = None
    password: str
    roles: list[Role] = [Role.USER]
    organization_id: uuid.UUID | None = None
    manager_id: uuid.UUID | None = None
    grade_id: uuid.UUID | None = None
    is_manager: bool = False
    department: str | None = None
    employee_number: str | None = None


class ProfileUpdate(BaseModel):
    full_name: str | None = None
    username: str | None = None
    department: str | None = None
    employee_number: str | None = None


class RoleChange(BaseModel):
    role: Role


class ManagerChange(BaseModel):
    manager_id: uuid.UUID | None = None


class GradeChange(BaseModel):
    grade_id: uuid.UUID | None = None


class ActiveChange(BaseModel):
    is_active: bool


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class OrganizationCreate(BaseModel):
    name: str
    description: str | None = None
    home_country: str | None = None
    home_currency: str | None = None
    accounting_type: AccountingType = AccountingType.INTERNAL
    external_accounting_email: EmailStr | None = None
    external_accounting_name: str | None = None


class OrganizationUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    home_country: str | None = None
    home_currency: str | None = None
    accounting_type: AccountingType | None = None
    external_accounting_email: EmailStr | None = None
    external_accounting_name: str | None = None
    is_active: bool | None = None


class OrganizationOut(BaseModel):
    id: uuid.UUID
    name: str
    description: str | None
    home_country: str | None
    home_currency: str
    accounting_type: AccountingType
    external_accounting_email: str | None
    external_accounting_name: str | None
    is_active: bool
    created_at: datetime


class InvitationCreate(BaseModel):
    role: Role = Role.USER
    organization_id: uuid.UUID | None = None
    manager_id: uuid.UUID | None = None
    grade_id: uuid.UUID | None = None
    expires_in_days: int | None = None
    max_uses: int | None = None
    invited_email: EmailStr | None = None


class InvitationOut(BaseModel):
    id: uuid.UUID
    code: str
    organization_id: uuid.UUID
    role: Role
    manager_id: uuid.UUID | None
    grade_id: uuid.UUID | None
    invited_email: str | None
    expires_at: datetime
    max_uses: int
    use_count: int
    is_used: bool
    is_active: bool
    used_at: datetime | None
    used_by_user_id: uuid.UUID | None
    created_at: datetime


class InvitationCheckOut(BaseModel):
    code: str
    organization_id: uuid.UUID
    organization_name: str
    role: Role
    expires_at: datetime


class InvitationRedeem(BaseModel):
    code: str
    email: EmailStr
    password: str
    full_name: str | None = None
    department: str | None = None
    employee_number: str | None = None
