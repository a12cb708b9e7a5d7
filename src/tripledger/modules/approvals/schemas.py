from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from tripledger.modules.approvals.models import LevelType


class LevelIn(BaseModel):
    level_type: LevelType
    specific_user_id: uuid.UUID | None = None
    is_required: bool = True
    can_skip_if_approved_amount_under: Decimal | None = None
    custom_message: str | None = None


class LevelCreate(LevelIn):
    position: int | None = None


class LevelUpdate(BaseModel):
    level_type: LevelType | None = None
    specific_user_id: uuid.UUID | None = None
    is_required: bool | None = None
    can_skip_if_approved_amount_under: Decimal | None = None
    custom_message: str | None = None


class LevelOut(BaseModel):
    id: uuid.UUID
    chain_id: uuid.UUID
    level_order: int
    level_type: LevelType
    specific_user_id: uuid.UUID | None
    is_required: bool
    can_skip_if_approved_amount_under: Decimal | None
    custom_message: str | None


class ChainCreate(BaseModel):
    name: str
    description: str | None = None
    is_default: bool = False
    levels: list[LevelIn] = []
    organization_id: uuid.UUID | None = None


class ChainUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    is_active: bool | None = None
    is_default: bool | None = None


class ChainOut(BaseModel):
    id: uuid.UUID
    organization_id: uuid.UUID
    name: str
    description: str | None
    is_active: bool
    is_default: bool
    levels: list[LevelOut]
    created_at: datetime


class AssignmentCreate(BaseModel):
    chain_id: uuid.UUID
    grade_id: uuid.UUID | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None


class AssignmentOut(BaseModel):
    id: uuid.UUID
    organization_id: uuid.UUID
    grade_id: uuid.UUID | None
    chain_id: uuid.UUID
    min_amount: Decimal | None
    max_amount: Decimal | None
