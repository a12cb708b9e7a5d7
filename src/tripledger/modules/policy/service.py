from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from tripledger.core.currencies import normalize_currency
from tripledger.core.logging import get_logger, log_event
from tripledger.core.models import Base, column_snapshot
from tripledger.modules.audit.models import AuditAction, AuditEntityType
from tripledger.modules.audit.service import append_audit_entry
from tripledger.modules.identity.models import User
from tripledger.modules.identity.permissions import get_permissions
from tripledger.modules.policy.models import (
    ActionType,
    CustomRuleType,
    CustomTravelRule,
    DestinationType,
    EmployeeGrade,
    PerType,
    TravelCategory,
    TravelPolicyRestriction,
    TravelPolicyRule,
)

logger = get_logger(__name__)

_ENTITY_TYPES: dict[type[Base], AuditEntityType] = {
    EmployeeGrade: AuditEntityType.EMPLOYEE_GRADE,
    TravelPolicyRule: AuditEntityType.TRAVEL_RULE,
    TravelPolicyRestriction: AuditEntityType.RESTRICTION,
    CustomTravelRule: AuditEntityType.CUSTOM_RULE,
}

_NOT_FOUND = {
    EmployeeGrade: "Grade not found",
    TravelPolicyRule: "Policy rule not found",
    TravelPolicyRestriction: "Restriction not found",
    CustomTravelRule: "Custom rule not found",
}


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def resolve_policy_org(actor: User, organization_id: uuid.UUID | None) -> uuid.UUID:
    perms = get_permissions(actor)
    if not perms.can_manage_policy:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    org_id = organization_id or actor.organization_id
    if org_id is None:
        raise _bad_request("organization_id is required")
    if not perms.is_admin and org_id != actor.organization_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    return org_id


def _entity_name(obj: Base) -> str | None:
    if isinstance(obj, EmployeeGrade | TravelPolicyRestriction):
        return obj.name
    if isinstance(obj, CustomTravelRule):
        return obj.rule_name
    if isinstance(obj, TravelPolicyRule):
        return f"{obj.category.value} {obj.max_amount} {obj.currency} {obj.per_type.value}"
    return None


def _get_entity(session: Session, model: type[Base], *, entity_id: uuid.UUID, actor: User):
    obj = session.get(model, entity_id)
    if obj is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_NOT_FOUND[model])
    resolve_policy_org(actor, obj.organization_id)
    return obj


def _create(session: Session, *, actor: User, obj: Base) -> Base:
    session.add(obj)
    session.flush()
    append_audit_entry(
        session,
        organization_id=obj.organization_id,
        user_id=actor.id,
        action=AuditAction.CREATE,
        entity_type=_ENTITY_TYPES[type(obj)],
        entity_id=obj.id,
        entity_name=_entity_name(obj),
        old_values=None,
        new_values=column_snapshot(obj),
    )
    session.commit()
    session.refresh(obj)
    return obj


def _update(session: Session, *, actor: User, obj: Base, changes: dict[str, Any]) -> Base:
    old_values = column_snapshot(obj)
    for field, value in changes.items():
        setattr(obj, field, value)
    session.flush()
    new_values = column_snapshot(obj)
    if new_values == old_values:
        session.commit()
        return obj

    changed = {k for k in new_values if new_values[k] != old_values.get(k)}
    if changed == {"is_active"}:
        action = AuditAction.ACTIVATE if obj.is_active else AuditAction.DEACTIVATE
    else:
        action = AuditAction.UPDATE
    append_audit_entry(
        session,
        organization_id=obj.organization_id,
        user_id=actor.id,
        action=action,
        entity_type=_ENTITY_TYPES[type(obj)],
        entity_id=obj.id,
        entity_name=_entity_name(obj),
        old_values=old_values,
        new_values=new_values,
    )
    session.commit()
    session.refresh(obj)
    return obj


def _delete(session: Session, *, actor: User, obj: Base) -> None:
    append_audit_entry(
        session,
        organization_id=obj.organization_id,
        user_id=actor.id,
        action=AuditAction.DELETE,
        entity_type=_ENTITY_TYPES[type(obj)],
        entity_id=obj.id,
        entity_name=_entity_name(obj),
        old_values=column_snapshot(obj),
        new_values=None,
    )
    session.delete(obj)
    session.commit()


def _clean(changes: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in changes.items() if v is not None}


# Employee grades


def list_grades(
    session: Session, *, organization_id: uuid.UUID, include_inactive: bool = True
) -> list[EmployeeGrade]:
    q = select(EmployeeGrade).where(EmployeeGrade.organization_id == organization_id)
    if not include_inactive:
        q = q.where(EmployeeGrade.is_active.is_(True))
    return list(session.scalars(q.order_by(EmployeeGrade.level.asc(), EmployeeGrade.name.asc())))


def create_grade(
    session: Session,
    *,
    actor: User,
    name: str,
    level: int = 1,
    description: str | None = None,
    organization_id: uuid.UUID | None = None,
) -> EmployeeGrade:
    org_id = resolve_policy_org(actor, organization_id)
    if not name.strip():
        raise _bad_request("Grade name is required")
    grade = EmployeeGrade(
        organization_id=org_id,
        name=name.strip(),
        level=level,
        description=description,
        is_active=True,
    )
    return _create(session, actor=actor, obj=grade)


def update_grade(
    session: Session, *, actor: User, grade_id: uuid.UUID, **changes
) -> EmployeeGrade:
    grade = _get_entity(session, EmployeeGrade, entity_id=grade_id, actor=actor)
    changes = _clean(changes)
    if "name" in changes:
        changes["name"] = changes["name"].strip()
        if not changes["name"]:
            raise _bad_request("Grade name is required")
    return _update(session, actor=actor, obj=grade, changes=changes)


def delete_grade(session: Session, *, actor: User, grade_id: uuid.UUID) -> None:
    grade = _get_entity(session, EmployeeGrade, entity_id=grade_id, actor=actor)
    in_use = session.scalar(select(User.id).where(User.grade_id == grade.id).limit(1)) or (
        session.scalar(
            select(TravelPolicyRule.id).where(TravelPolicyRule.grade_id == grade.id).limit(1)
        )
    )
    if in_use:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Grade is still assigned to employees or policy rules",
        )
    _delete(session, actor=actor, obj=grade)


# Category limit rules


def _validate_rule_fields(
    session: Session,
    *,
    organization_id: uuid.UUID,
    max_amount: Decimal | None = None,
    currency: str | None = None,
    grade_id: uuid.UUID | None = None,
    destination_countries: list[str] | None = None,
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if max_amount is not None:
        if max_amount < 0:
            raise _bad_request("max_amount must be zero or positive")
        out["max_amount"] = Decimal(max_amount).quantize(Decimal("0.01"))
    if currency is not None:
        cur = normalize_currency(currency)
        if not cur:
            raise _bad_request("currency must be a supported ISO-4217 code")
        out["currency"] = cur
    if grade_id is not None:
        grade = session.get(EmployeeGrade, grade_id)
        if not grade or grade.organization_id != organization_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Grade not found")
        out["grade_id"] = grade_id
    if destination_countries is not None:
        out["destination_countries"] = sorted(
            {c.strip() for c in destination_countries if c and c.strip()}
        )
    return out


def list_rules(
    session: Session, *, organization_id: uuid.UUID, include_inactive: bool = True
) -> list[TravelPolicyRule]:
    q = select(TravelPolicyRule).where(TravelPolicyRule.organization_id == organization_id)
    if not include_inactive:
        q = q.where(TravelPolicyRule.is_active.is_(True))
    return list(session.scalars(q.order_by(TravelPolicyRule.category.asc())))


def create_rule(
    session: Session,
    *,
    actor: User,
    category: TravelCategory,
    max_amount: Decimal,
    currency: str,
    per_type: PerType = PerType.PER_TRIP,
    destination_type: DestinationType = DestinationType.ALL,
    destination_countries: list[str] | None = None,
    grade_id: uuid.UUID | None = None,
    notes: str | None = None,
    organization_id: uuid.UUID | None = None,
) -> TravelPolicyRule:
    org_id = resolve_policy_org(actor, organization_id)
    fields = _validate_rule_fields(
        session,
        organization_id=org_id,
        max_amount=max_amount,
        currency=currency,
        grade_id=grade_id,
        destination_countries=destination_countries or [],
    )
    rule = TravelPolicyRule(
        organization_id=org_id,
        category=category,
        per_type=per_type,
        destination_type=destination_type,
        notes=notes,
        is_active=True,
        **fields,
    )
    return _create(session, actor=actor, obj=rule)


def update_rule(
    session: Session, *, actor: User, rule_id: uuid.UUID, **changes
) -> TravelPolicyRule:
    rule = _get_entity(session, TravelPolicyRule, entity_id=rule_id, actor=actor)
    changes = _clean(changes)
    validated = _validate_rule_fields(
        session,
        organization_id=rule.organization_id,
        max_amount=changes.pop("max_amount", None),
        currency=changes.pop("currency", None),
        grade_id=changes.pop("grade_id", None),
        destination_countries=changes.pop("destination_countries", None),
    )
    changes.update(validated)
    return _update(session, actor=actor, obj=rule, changes=changes)


def delete_rule(session: Session, *, actor: User, rule_id: uuid.UUID) -> None:
    rule = _get_entity(session, TravelPolicyRule, entity_id=rule_id, actor=actor)
    _delete(session, actor=actor, obj=rule)


# Restrictions


def _clean_keywords(keywords: list[str]) -> list[str]:
    cleaned = sorted({k.strip().lower() for k in keywords if k and k.strip()})
    if not cleaned:
        raise _bad_request("At least one keyword is required")
    return cleaned


def list_restrictions(
    session: Session, *, organization_id: uuid.UUID, include_inactive: bool = True
) -> list[TravelPolicyRestriction]:
    q = select(TravelPolicyRestriction).where(
        TravelPolicyRestriction.organization_id == organization_id
    )
    if not include_inactive:
        q = q.where(TravelPolicyRestriction.is_active.is_(True))
    return list(session.scalars(q.order_by(TravelPolicyRestriction.name.asc())))


def create_restriction(
    session: Session,
    *,
    actor: User,
    name: str,
    keywords: list[str],
    action_type: ActionType = ActionType.WARN,
    category: TravelCategory | None = None,
    description: str | None = None,
    organization_id: uuid.UUID | None = None,
) -> TravelPolicyRestriction:
    org_id = resolve_policy_org(actor, organization_id)
    if not name.strip():
        raise _bad_request("Restriction name is required")
    restriction = TravelPolicyRestriction(
        organization_id=org_id,
        name=name.strip(),
        description=description,
        category=category,
        keywords=_clean_keywords(keywords),
        action_type=action_type,
        is_active=True,
    )
    return _create(session, actor=actor, obj=restriction)


def update_restriction(
    session: Session, *, actor: User, restriction_id: uuid.UUID, **changes
) -> TravelPolicyRestriction:
    restriction = _get_entity(
        session, TravelPolicyRestriction, entity_id=restriction_id, actor=actor
    )
    changes = _clean(changes)
    if "keywords" in changes:
        changes["keywords"] = _clean_keywords(changes["keywords"])
    return _update(session, actor=actor, obj=restriction, changes=changes)


def delete_restriction(session: Session, *, actor: User, restriction_id: uuid.UUID) -> None:
    restriction = _get_entity(
        session, TravelPolicyRestriction, entity_id=restriction_id, actor=actor
    )
    _delete(session, actor=actor, obj=restriction)


# Custom rules

_CONDITION_KEYS: dict[CustomRuleType, tuple[str, ...]] = {
    CustomRuleType.MAX_TRIP_DURATION: ("max_days",),
    CustomRuleType.MAX_TOTAL_BUDGET: ("max_amount",),
    CustomRuleType.ADVANCE_BOOKING: ("min_days",),
    CustomRuleType.WEEKEND_TRAVEL: (),
}


def validate_condition(condition: dict[str, Any]) -> dict[str, Any]:
    raw_type = condition.get("type")
    try:
        rule_type = CustomRuleType(raw_type)
    except ValueError as e:
        raise _bad_request(f"Unknown custom rule type: {raw_type}") from e

    out: dict[str, Any] = {"type": rule_type.value}
    for key in _CONDITION_KEYS[rule_type]:
        value = condition.get(key)
        try:
            number = Decimal(str(value))
        except (ArithmeticError, ValueError) as e:
            raise _bad_request(f"{key} must be a number") from e
        if not number.is_finite() or number < 0:
            raise _bad_request(f"{key} must be zero or positive")
        out[key] = str(number) if key == "max_amount" else int(number)
    if rule_type == CustomRuleType.MAX_TOTAL_BUDGET and condition.get("currency"):
        cur = normalize_currency(condition["currency"])
        if not cur:
            raise _bad_request("currency must be a supported ISO-4217 code")
        out["currency"] = cur
    return out


def list_custom_rules(
    session: Session, *, organization_id: uuid.UUID, include_inactive: bool = True
) -> list[CustomTravelRule]:
    q = select(CustomTravelRule).where(CustomTravelRule.organization_id == organization_id)
    if not include_inactive:
        q = q.where(CustomTravelRule.is_active.is_(True))
    return list(
        session.scalars(
            q.order_by(CustomTravelRule.priority.desc(), CustomTravelRule.rule_name.asc())
        )
    )


def create_custom_rule(
    session: Session,
    *,
    actor: User,
    rule_name: str,
    condition_json: dict[str, Any],
    action_type: ActionType = ActionType.WARN,
    applies_to_grades: list[uuid.UUID] | None = None,
    priority: int = 0,
    description: str | None = None,
    organization_id: uuid.UUID | None = None,
) -> CustomTravelRule:
    org_id = resolve_policy_org(actor, organization_id)
    if not rule_name.strip():
        raise _bad_request("Rule name is required")
    rule = CustomTravelRule(
        organization_id=org_id,
        rule_name=rule_name.strip(),
        description=description,
        condition_json=validate_condition(condition_json),
        action_type=action_type,
        applies_to_grades=sorted({str(g) for g in applies_to_grades or []}),
        priority=priority,
        is_active=True,
    )
    return _create(session, actor=actor, obj=rule)


def update_custom_rule(
    session: Session, *, actor: User, rule_id: uuid.UUID, **changes
) -> CustomTravelRule:
    rule = _get_entity(session, CustomTravelRule, entity_id=rule_id, actor=actor)
    changes = _clean(changes)
    if "condition_json" in changes:
        changes["condition_json"] = validate_condition(changes["condition_json"])
    if "applies_to_grades" in changes:
        changes["applies_to_grades"] = sorted({str(g) for g in changes["applies_to_grades"]})
    return _update(session, actor=actor, obj=rule, changes=changes)


def delete_custom_rule(session: Session, *, actor: User, rule_id: uuid.UUID) -> None:
    rule = _get_entity(session, CustomTravelRule, entity_id=rule_id, actor=actor)
    _delete(session, actor=actor, obj=rule)


def my_policy(session: Session, *, user: User) -> dict[str, Any]:
    """Active limits, restrictions and custom rules that apply to one employee."""
    if user.organization_id is None:
        return {"grade": None, "rules": [], "restrictions": [], "custom_rules": []}

    grade = session.get(EmployeeGrade, user.grade_id) if user.grade_id else None
    rules = list(
        session.scalars(
            select(TravelPolicyRule)
            .where(
                TravelPolicyRule.organization_id == user.organization_id,
                TravelPolicyRule.is_active.is_(True),
                or_(
                    TravelPolicyRule.grade_id.is_(None),
                    TravelPolicyRule.grade_id == user.grade_id,
                ),
            )
            .order_by(TravelPolicyRule.category.asc())
        )
    )
    custom_rules = [
        r
        for r in list_custom_rules(
            session, organization_id=user.organization_id, include_inactive=False
        )
        if not r.applies_to_grades or (user.grade_id and str(user.grade_id) in r.applies_to_grades)
    ]
    log_event(logger, "policy.my_policy", rule_count=len(rules))
    return {
        "grade": grade,
        "rules": rules,
        "restrictions": list_restrictions(
            session, organization_id=user.organization_id, include_inactive=False
        ),
        "custom_rules": custom_rules,
    }
