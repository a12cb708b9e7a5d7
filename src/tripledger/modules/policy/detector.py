"""Violation detection for travel requests.

Compares a request's per-category estimates with the organization's policy
configuration and returns findings. Nothing here writes to the database
except FX rates fetched on demand; the travel service persists the findings
as violation rows.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from tripledger.core.logging import get_logger, log_event
from tripledger.modules.fx.service import get_rate, quantize_money
from tripledger.modules.identity.models import Organization, User
from tripledger.modules.policy.models import (
    ActionType,
    CustomRuleType,
    CustomTravelRule,
    DestinationType,
    PerType,
    TravelCategory,
    TravelPolicyRestriction,
    TravelPolicyRule,
    ViolationSource,
)

if TYPE_CHECKING:
    from tripledger.modules.travel.models import TravelRequest

logger = get_logger(__name__)

SPECIAL_APPROVAL_THRESHOLD_PCT = Decimal("15")


@dataclass(frozen=True)
class Finding:
    source: ViolationSource
    rule_id: uuid.UUID | None
    rule_name: str
    category: str | None
    action_type: ActionType
    message: str
    requested_amount: Decimal | None = None
    policy_limit: Decimal | None = None
    overage_amount: Decimal | None = None
    overage_percentage: Decimal | None = None
    currency: str | None = None
    requires_special_approval: bool = False

    @property
    def key(self) -> tuple[str, str | None, str | None]:
        return (self.source.value, str(self.rule_id) if self.rule_id else None, self.category)

    @property
    def needs_explanation(self) -> bool:
        return self.action_type == ActionType.REQUIRE_APPROVAL


def overage_percentage(requested: Decimal, limit: Decimal) -> Decimal:
    if limit <= 0:
        return Decimal("100.00")
    return ((requested - limit) / limit * 100).quantize(Decimal("0.01"))


def is_domestic(request: TravelRequest, organization: Organization | None) -> bool:
    home = (organization.home_country or "").strip().lower() if organization else ""
    return bool(home) and request.destination_country.strip().lower() == home


def _category_amount(
    request: TravelRequest, category: TravelCategory
) -> tuple[Decimal, int]:
    """Return the base estimate and how many units (nights/days) it repeats over."""
    if category == TravelCategory.FLIGHTS:
        return Decimal(request.estimated_flights or 0), 1
    if category == TravelCategory.ACCOMMODATION:
        return Decimal(request.estimated_accommodation_per_night or 0), request.nights
    if category == TravelCategory.MEALS:
        return Decimal(request.estimated_meals_per_day or 0), request.days
    if category == TravelCategory.TRANSPORT:
        return Decimal(request.estimated_transport or 0), 1
    return Decimal(request.estimated_other or 0), 1


def _limit_units(request: TravelRequest, category: TravelCategory) -> int:
    return request.nights if category == TravelCategory.ACCOMMODATION else request.days


def _rule_rank(
    rule: TravelPolicyRule, *, grade_id: uuid.UUID | None, country: str, domestic: bool
) -> tuple[int, int] | None:
    """Rank an applicable rule, or None when it does not apply to this trip."""
    countries = {c.strip().lower() for c in rule.destination_countries or []}
    if countries:
        if country not in countries:
            return None
        destination_rank = 2
    elif rule.destination_type == DestinationType.ALL:
        destination_rank = 0
    elif (rule.destination_type == DestinationType.DOMESTIC) == domestic:
        destination_rank = 1
    else:
        return None

    if rule.grade_id is not None and rule.grade_id != grade_id:
        return None
    grade_rank = 1 if rule.grade_id is not None else 0
    return grade_rank, destination_rank


def select_rule(
    rules: list[TravelPolicyRule],
    *,
    category: TravelCategory,
    grade_id: uuid.UUID | None,
    country: str,
    domestic: bool,
) -> TravelPolicyRule | None:
    best: tuple[tuple[int, int], Decimal, TravelPolicyRule] | None = None
    for rule in rules:
        if rule.category != category:
            continue
        rank = _rule_rank(rule, grade_id=grade_id, country=country, domestic=domestic)
        if rank is None:
            continue
        # Higher rank wins; among equals the strictest limit wins.
        if (
            best is None
            or rank > best[0]
            or (rank == best[0] and Decimal(rule.max_amount) < best[1])
        ):
            best = (rank, Decimal(rule.max_amount), rule)
    return best[2] if best else None


def _convert(
    session: Session, amount: Decimal, *, from_currency: str, to_currency: str
) -> Decimal | None:
    rate = get_rate(session, from_currency=from_currency, to_currency=to_currency)
    if rate is None:
        return None
    return quantize_money(amount * rate)


def _category_findings(
    session: Session,
    *,
    request: TravelRequest,
    requester: User,
    organization: Organization | None,
) -> list[Finding]:
    rules = list(
        session.scalars(
            select(TravelPolicyRule).where(
                TravelPolicyRule.organization_id == request.organization_id,
                TravelPolicyRule.is_active.is_(True),
                or_(
                    TravelPolicyRule.grade_id.is_(None),
                    TravelPolicyRule.grade_id == requester.grade_id,
                ),
            )
        )
    )
    if not rules:
        return []

    domestic = is_domestic(request, organization)
    country = request.destination_country.strip().lower()
    findings: list[Finding] = []
    for category in TravelCategory:
        rule = select_rule(
            rules,
            category=category,
            grade_id=requester.grade_id,
            country=country,
            domestic=domestic,
        )
        if rule is None:
            continue

        base, units = _category_amount(request, category)
        if base <= 0 or units <= 0:
            continue
        limit = Decimal(rule.max_amount)
        if rule.per_type == PerType.PER_DAY:
            requested = base * units
            limit = limit * _limit_units(request, category)
        elif rule.per_type == PerType.PER_TRIP:
            requested = base * units
        else:
            requested = base

        if request.currency != rule.currency:
            converted = _convert(
                session, requested, from_currency=request.currency, to_currency=rule.currency
            )
            if converted is None:
                log_event(
                    logger,
                    "policy.violation.fx_missing",
                    travel_request_id=str(request.id),
                    category=category.value,
                    from_currency=request.currency,
                    to_currency=rule.currency,
                )
                continue
            requested = converted

        requested = quantize_money(requested)
        limit = quantize_money(limit)
        if requested <= limit:
            continue

        pct = overage_percentage(requested, limit)
        findings.append(
            Finding(
                source=ViolationSource.CATEGORY_LIMIT,
                rule_id=rule.id,
                rule_name=f"{category.value} limit",
                category=category.value,
                action_type=ActionType.REQUIRE_APPROVAL,
                message=(
                    f"Requested {category.value} {requested} {rule.currency} exceeds the "
                    f"policy limit of {limit} {rule.currency} by {pct}%"
                ),
                requested_amount=requested,
                policy_limit=limit,
                overage_amount=requested - limit,
                overage_percentage=pct,
                currency=rule.currency,
                requires_special_approval=pct > SPECIAL_APPROVAL_THRESHOLD_PCT,
            )
        )
    return findings


def _restriction_findings(session: Session, *, request: TravelRequest) -> list[Finding]:
    restrictions = list(
        session.scalars(
            select(TravelPolicyRestriction).where(
                TravelPolicyRestriction.organization_id == request.organization_id,
                TravelPolicyRestriction.is_active.is_(True),
            )
        )
    )
    haystack = " ".join(
        part
        for part in (
            request.purpose,
            request.purpose_details,
            request.employee_notes,
            request.destination_city,
        )
        if part
    ).lower()

    findings: list[Finding] = []
    for r in restrictions:
        hits = sorted(k for k in r.keywords or [] if k and k.lower() in haystack)
        if not hits:
            continue
        findings.append(
            Finding(
                source=ViolationSource.RESTRICTION,
                rule_id=r.id,
                rule_name=r.name,
                category=r.category.value if r.category else None,
                action_type=r.action_type,
                message=f"Restricted item '{r.name}' matched: {', '.join(hits)}",
                requires_special_approval=r.action_type == ActionType.REQUIRE_APPROVAL,
            )
        )
    return findings


def _custom_rule_findings(
    session: Session, *, request: TravelRequest, requester: User, today: date
) -> list[Finding]:
    rules = list(
        session.scalars(
            select(CustomTravelRule)
            .where(
                CustomTravelRule.organization_id == request.organization_id,
                CustomTravelRule.is_active.is_(True),
            )
            .order_by(CustomTravelRule.priority.desc())
        )
    )
    findings: list[Finding] = []
    for rule in rules:
        grades = rule.applies_to_grades or []
        if grades and (requester.grade_id is None or str(requester.grade_id) not in grades):
            continue
        cond = rule.condition_json or {}
        try:
            rule_type = CustomRuleType(cond.get("type"))
        except ValueError:
            log_event(logger, "policy.custom_rule.invalid", rule_id=str(rule.id))
            continue

        message: str | None = None
        requested = limit = None
        currency = None
        if rule_type == CustomRuleType.MAX_TRIP_DURATION:
            max_days = int(cond.get("max_days", 0))
            if request.days > max_days:
                message = f"Trip lasts {request.days} days; the maximum is {max_days}"
        elif rule_type == CustomRuleType.MAX_TOTAL_BUDGET:
            limit = Decimal(str(cond.get("max_amount", "0")))
            currency = cond.get("currency") or request.currency
            total = Decimal(request.estimated_total or 0)
            if currency != request.currency:
                converted = _convert(
                    session, total, from_currency=request.currency, to_currency=currency
                )
                if converted is None:
                    log_event(
                        logger,
                        "policy.violation.fx_missing",
                        travel_request_id=str(request.id),
                        rule_id=str(rule.id),
                        from_currency=request.currency,
                        to_currency=currency,
                    )
                    continue
                total = converted
            if total > limit:
                requested = total
                message = f"Estimated total {total} {currency} exceeds the budget of {limit}"
        elif rule_type == CustomRuleType.ADVANCE_BOOKING:
            min_days = int(cond.get("min_days", 0))
            lead = (request.start_date - today).days
            if lead < min_days:
                message = f"Trip booked {lead} days ahead; at least {min_days} are required"
        elif rule_type == CustomRuleType.WEEKEND_TRAVEL:
            if request.start_date.weekday() >= 5 or request.end_date.weekday() >= 5:
                message = "Trip starts or ends on a weekend"

        if message is None:
            continue
        overage = requested - limit if requested is not None and limit is not None else None
        findings.append(
            Finding(
                source=ViolationSource.CUSTOM_RULE,
                rule_id=rule.id,
                rule_name=rule.rule_name,
                category=None,
                action_type=rule.action_type,
                message=message,
                requested_amount=requested,
                policy_limit=limit if requested is not None else None,
                overage_amount=overage,
                overage_percentage=(
                    overage_percentage(requested, limit) if overage is not None else None
                ),
                currency=currency if requested is not None else None,
                requires_special_approval=rule.action_type == ActionType.REQUIRE_APPROVAL,
            )
        )
    return findings


def detect_violations(
    session: Session,
    *,
    request: TravelRequest,
    requester: User,
    today: date | None = None,
) -> list[Finding]:
    organization = (
        session.get(Organization, request.organization_id) if request.organization_id else None
    )
    findings = _category_findings(
        session, request=request, requester=requester, organization=organization
    )
    findings += _restriction_findings(session, request=request)
    findings += _custom_rule_findings(
        session, request=request, requester=requester, today=today or date.today()
    )
    log_event(
        logger,
        "policy.violations.detected",
        travel_request_id=str(request.id) if request.id else None,
        finding_count=len(findings),
    )
    return findings
