from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from tripledger.modules.policy.models import ActionType, ViolationSource
from tripledger.modules.travel.models import ApprovalStatus, Decision, TravelRequestStatus


class Amounts(BaseModel):
    flights: Decimal | None = None
    accommodation_per_night: Decimal | None = None
    meals_per_day: Decimal | None = None
    transport: Decimal | None = None
    other: Decimal | None = None


class TravelRequestCreate(BaseModel):
    destination_city: str
    destination_country: str
    start_date: date
    end_date: date
    purpose: str
    purpose_details: str | None = None
    employee_notes: str | None = None
    currency: str | None = None
    estimates: Amounts | None = None


class TravelRequestUpdate(BaseModel):
    destination_city: str | None = None
    destination_country: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    purpose: str | None = None
    purpose_details: str | None = None
    employee_notes: str | None = None
    currency: str | None = None
    estimates: Amounts | None = None


class TravelRequestOut(BaseModel):
    id: uuid.UUID
    requester_id: uuid.UUID
    organization_id: uuid.UUID | None
    chain_id: uuid.UUID | None
    destination_city: str
    destination_country: str
    start_date: date
    end_date: date
    nights: int
    days: int
    purpose: str
    purpose_details: str | None
    employee_notes: str | None
    currency: str
    estimated_flights: Decimal
    estimated_accommodation_per_night: Decimal
    estimated_meals_per_day: Decimal
    estimated_transport: Decimal
    estimated_other: Decimal
    estimated_total: Decimal
    approved_flights: Decimal | None
    approved_accommodation_per_night: Decimal | None
    approved_meals_per_day: Decimal | None
    approved_transport: Decimal | None
    approved_other: Decimal | None
    approved_total: Decimal | None
    status: TravelRequestStatus
    current_approval_level: int
    submission_count: int
    requires_special_approval: bool
    submitted_at: datetime | None
    final_decision_at: datetime | None
    created_at: datetime
    updated_at: datetime


class ViolationOut(BaseModel):
    id: uuid.UUID
    travel_request_id: uuid.UUID
    source: ViolationSource
    rule_id: uuid.UUID | None
    rule_name: str
    category: str | None
    action_type: ActionType
    message: str
    requested_amount: Decimal | None
    policy_limit: Decimal | None
    overage_amount: Decimal | None
    overage_percentage: Decimal | None
    currency: str | None
    requires_special_approval: bool
    employee_explanation: str | None
    explained_at: datetime | None


class ViolationExplain(BaseModel):
    explanation: str


class ApprovalOut(BaseModel):
    id: uuid.UUID
    travel_request_id: uuid.UUID
    submission_round: int
    approval_level: int
    level_type: str
    approver_id: uuid.UUID | None
    status: ApprovalStatus
    decision: Decision | None
    comments: str | None
    custom_message: str | None
    skip_reason: str | None
    decided_at: datetime | None


class DecisionIn(BaseModel):
    decision: Decision
    comments: str | None = None
    approved_amounts: Amounts | None = None


class ApprovedTravelOut(BaseModel):
    id: uuid.UUID
    travel_request_id: uuid.UUID
    employee_id: uuid.UUID
    organization_id: uuid.UUID | None
    approval_number: str
    destination_city: str
    destination_country: str
    start_date: date
    end_date: date
    purpose: str
    currency: str
    approved_budget: dict[str, Any]
    valid_from: date
    valid_until: date
    is_used: bool
    expense_report_id: uuid.UUID | None
    created_at: datetime
