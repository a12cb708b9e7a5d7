from __future__ import annotations

import enum
import uuid
from decimal import Decimal

from sqlalchemy import JSON, Boolean, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tripledger.core.models import Base, Money, Timestamped, UUIDPrimaryKey


class TravelCategory(str, enum.Enum):
    FLIGHTS = "flights"
    ACCOMMODATION = "accommodation"
    MEALS = "meals"
    TRANSPORT = "transport"
    OTHER = "other"


class DestinationType(str, enum.Enum):
    DOMESTIC = "domestic"
    INTERNATIONAL = "international"
    ALL = "all"


class PerType(str, enum.Enum):
    PER_DAY = "per_day"
    PER_TRIP = "per_trip"
    PER_ITEM = "per_item"


class ActionType(str, enum.Enum):
    BLOCK = "block"
    WARN = "warn"
    REQUIRE_APPROVAL = "require_approval"


class CustomRuleType(str, enum.Enum):
    MAX_TRIP_DURATION = "max_trip_duration"
    MAX_TOTAL_BUDGET = "max_total_budget"
    ADVANCE_BOOKING = "advance_booking"
    WEEKEND_TRAVEL = "weekend_travel"


class EmployeeGrade(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "policy_employee_grade"

    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_organization.id"), index=True
    )
    name: Mapped[str] = mapped_column(String(100))
    level: Mapped[int] = mapped_column(Integer, default=1)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class TravelPolicyRule(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "policy_travel_rule"

    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_organization.id"), index=True
    )
    grade_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("policy_employee_grade.id"), nullable=True
    )
    category: Mapped[TravelCategory] = mapped_column(
        Enum(TravelCategory, native_enum=False), index=True
    )
    max_amount: Mapped[Decimal] = mapped_column(Money)
    currency: Mapped[str] = mapped_column(String(3))
    destination_type: Mapped[DestinationType] = mapped_column(
        Enum(DestinationType, native_enum=False), default=DestinationType.ALL
    )
    destination_countries: Mapped[list] = mapped_column(JSON, default=list)
    per_type: Mapped[PerType] = mapped_column(
        Enum(PerType, native_enum=False), default=PerType.PER_TRIP
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    grade = relationship("EmployeeGrade")


class TravelPolicyRestriction(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "policy_restriction"

    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_organization.id"), index=True
    )
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[TravelCategory | None] = mapped_column(
        Enum(TravelCategory, native_enum=False), nullable=True
    )
    keywords: Mapped[list] = mapped_column(JSON, default=list)
    action_type: Mapped[ActionType] = mapped_column(
        Enum(ActionType, native_enum=False), default=ActionType.WARN
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class CustomTravelRule(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "policy_custom_rule"

    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_organization.id"), index=True
    )
    rule_name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    condition_json: Mapped[dict] = mapped_column(JSON, default=dict)
    action_type: Mapped[ActionType] = mapped_column(
        Enum(ActionType, native_enum=False), default=ActionType.WARN
    )
    # Grade ids as strings; empty means every grade.
    applies_to_grades: Mapped[list] = mapped_column(JSON, default=list)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class ViolationSource(str, enum.Enum):
    CATEGORY_LIMIT = "category_limit"
    RESTRICTION = "restriction"
    CUSTOM_RULE = "custom_rule"
