from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from tripledger.modules.audit.models import AuditAction, AuditEntityType
from tripledger.modules.policy.models import ActionType, DestinationType, PerType, TravelCategory


class GradeCreate(BaseModel):
    name: str
    level: int = 1
    description: str | None = None
    organization_id: uuid.UUID | None = None


class GradeUpdate(BaseModel):
    name: str | None = None
    level: int | None = None
    description: str | None = None
    is_active: bool | None = None


class GradeOut(BaseModel):
    id: uuid.UUID
    organization_id: uuid.UUID
    name: str
    level: int
    description: str | None
    is_active: bool


class RuleCreate(BaseModel):
    category: TravelCategory
    max_amount: Decimal
    currency: str
    per_type: PerType = PerType.PER_TRIP
    destination_type: DestinationType = DestinationType.ALL
    destination_countries: list[str] = []
    grade_id: uuid.UUID | None = None
    notes: str | None = None
    organization_id: uuid.UUID | None = None


class RuleUpdate(BaseModel):
    category: TravelCategory | None = None
    max_amount: Decimal | None = None
    currency: str | None = None
    per_type: PerType | None = None
    destination_type: DestinationType | None = None
    destination_countries: list[str] | None = None
    grade_id: uuid.UUID | None = None
    notes: str | None = None
    is_active: bool | None = None


class RuleOut(BaseModel):
    id: uuid.UUID
    organization_id: uuid.UUID
    grade_id: uuid.UUID | None
    category: TravelCategory
    max_amount: Decimal
    currency: str
    destination_type: DestinationType
    destination_countries: list[str]
    per_type: PerType
    notes: str | None
    is_active: bool


class RestrictionCreate(BaseModel):
    name: str
    keywords: list[str]
    action_type: ActionType = ActionType.WARN
    category: TravelCategory | None = None
    description: str | None = None
    organization_id: uuid.UUID | None = None


class RestrictionUpdate(BaseModel):
    name: str | None = None
    keywords: list[str] | None = None
    action_type: ActionType | None = None
    category: TravelCategory | None = None
    description: str | None = None
    is_active: bool | None = None


class RestrictionOut(BaseModel):
    id: uuid.UUID
    organization_id: uuid.UUID
    name: str
    description: str | None
    category: TravelCategory | None
    keywords: list[str]
    action_type: ActionType
    is_active: bool


class CustomRuleCreate(BaseModel):
    rule_name: str
    condition_json: dict[str, Any]
    action_type: ActionType = ActionType.WARN
    applies_to_grades: list[uuid.UUID] = []
    priority: int = 0
    description: str | None = None
    organization_id: uuid.UUID | None = None


class CustomRuleUpdate(BaseModel):
    rule_name: str | None = None
    condition_json: dict[str, Any] | None = None
    action_type: ActionType | None = None
    applies_to_grades: list[uuid.UUID] | None = None
    priority: int | None = None
    description: str | None = None
    is_active: bool | None = None


class CustomRuleOut(BaseModel):
    id: uuid.UUID
    organization_id: uuid.UUID
    rule_name: str
    description: str | None
    condition_json: dict[str, Any]
    action_type: ActionType
    applies_to_grades: list[str]
    priority: int
    is_active: bool


class MyPolicyOut(BaseModel):
    grade: GradeOut | None
    rules: list[RuleOut]
    restrictions: list[RestrictionOut]
    custom_rules: list[CustomRuleOut]


class AuditEntryOut(BaseModel):
    id: uuid.UUID
    organization_id: uuid.UUID
    user_id: uuid.UUID | None
    action: AuditAction
    entity_type: AuditEntityType
    entity_id: uuid.UUID | None
    entity_name: str | None
    old_values: dict[str, Any] | None
    new_values: dict[str, Any] | None
    created_at: datetime
