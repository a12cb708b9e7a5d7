from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tripledger.api.deps import get_current_user
from tripledger.core.db import db_session
from tripledger.modules.audit.models import AuditAction, AuditEntityType
from tripledger.modules.audit.service import list_audit_log
from tripledger.modules.identity.models import User
from tripledger.modules.policy.schemas import (
    AuditEntryOut,
    CustomRuleCreate,
    CustomRuleOut,
    CustomRuleUpdate,
    GradeCreate,
    GradeOut,
    GradeUpdate,
    MyPolicyOut,
    RestrictionCreate,
    RestrictionOut,
    RestrictionUpdate,
    RuleCreate,
    RuleOut,
    RuleUpdate,
)
from tripledger.modules.policy.service import (
    create_custom_rule,
    create_grade,
    create_restriction,
    create_rule,
    delete_custom_rule,
    delete_grade,
    delete_restriction,
    delete_rule,
    list_custom_rules,
    list_grades,
    list_restrictions,
    list_rules,
    my_policy,
    resolve_policy_org,
    update_custom_rule,
    update_grade,
    update_restriction,
    update_rule,
)

router = APIRouter(prefix="/policy", tags=["policy"])


@router.get("/mine", response_model=MyPolicyOut)
def my_policy_endpoint(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> MyPolicyOut:
    return MyPolicyOut.model_validate(my_policy(session, user=user), from_attributes=True)


# Grades


@router.get("/grades", response_model=list[GradeOut])
def list_grades_endpoint(
    organization_id: uuid.UUID | None = None,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[GradeOut]:
    org_id = resolve_policy_org(user, organization_id)
    return [
        GradeOut.model_validate(g, from_attributes=True)
        for g in list_grades(session, organization_id=org_id)
    ]


@router.post("/grades", response_model=GradeOut)
def create_grade_endpoint(
    payload: GradeCreate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> GradeOut:
    grade = create_grade(session, actor=user, **payload.model_dump())
    return GradeOut.model_validate(grade, from_attributes=True)


@router.patch("/grades/{grade_id}", response_model=GradeOut)
def update_grade_endpoint(
    grade_id: uuid.UUID,
    payload: GradeUpdate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> GradeOut:
    grade = update_grade(
        session, actor=user, grade_id=grade_id, **payload.model_dump(exclude_unset=True)
    )
    return GradeOut.model_validate(grade, from_attributes=True)


@router.delete("/grades/{grade_id}")
def delete_grade_endpoint(
    grade_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> dict[str, str]:
    delete_grade(session, actor=user, grade_id=grade_id)
    return {"status": "ok"}


# Category limits


@router.get("/rules", response_model=list[RuleOut])
def list_rules_endpoint(
    organization_id: uuid.UUID | None = None,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[RuleOut]:
    org_id = resolve_policy_org(user, organization_id)
    return [
        RuleOut.model_validate(r, from_attributes=True)
        for r in list_rules(session, organization_id=org_id)
    ]


@router.post("/rules", response_model=RuleOut)
def create_rule_endpoint(
    payload: RuleCreate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> RuleOut:
    rule = create_rule(session, actor=user, **payload.model_dump())
    return RuleOut.model_validate(rule, from_attributes=True)


@router.patch("/rules/{rule_id}", response_model=RuleOut)
def update_rule_endpoint(
    rule_id: uuid.UUID,
    payload: RuleUpdate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> RuleOut:
    rule = update_rule(
        session, actor=user, rule_id=rule_id, **payload.model_dump(exclude_unset=True)
    )
    return RuleOut.model_validate(rule, from_attributes=True)


@router.delete("/rules/{rule_id}")
def delete_rule_endpoint(
    rule_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> dict[str, str]:
    delete_rule(session, actor=user, rule_id=rule_id)
    return {"status": "ok"}


# Restrictions


@router.get("/restrictions", response_model=list[RestrictionOut])
def list_restrictions_endpoint(
    organization_id: uuid.UUID | None = None,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[RestrictionOut]:
    org_id = resolve_policy_org(user, organization_id)
    return [
        RestrictionOut.model_validate(r, from_attributes=True)
        for r in list_restrictions(session, organization_id=org_id)
    ]


@router.post("/restrictions", response_model=RestrictionOut)
def create_restriction_endpoint(
    payload: RestrictionCreate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> RestrictionOut:
    restriction = create_restriction(session, actor=user, **payload.model_dump())
    return RestrictionOut.model_validate(restriction, from_attributes=True)


@router.patch("/restrictions/{restriction_id}", response_model=RestrictionOut)
def update_restriction_endpoint(
    restriction_id: uuid.UUID,
    payload: RestrictionUpdate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> RestrictionOut:
    restriction = update_restriction(
        session,
        actor=user,
        restriction_id=restriction_id,
        **payload.model_dump(exclude_unset=True),
    )
    return RestrictionOut.model_validate(restriction, from_attributes=True)


@router.delete("/restrictions/{restriction_id}")
def delete_restriction_endpoint(
    restriction_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> dict[str, str]:
    delete_restriction(session, actor=user, restriction_id=restriction_id)
    return {"status": "ok"}


# Custom rules


@router.get("/custom-rules", response_model=list[CustomRuleOut])
def list_custom_rules_endpoint(
    organization_id: uuid.UUID | None = None,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[CustomRuleOut]:
    org_id = resolve_policy_org(user, organization_id)
    return [
        CustomRuleOut.model_validate(r, from_attributes=True)
        for r in list_custom_rules(session, organization_id=org_id)
    ]


@router.post("/custom-rules", response_model=CustomRuleOut)
def create_custom_rule_endpoint(
    payload: CustomRuleCreate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> CustomRuleOut:
    rule = create_custom_rule(session, actor=user, **payload.model_dump())
    return CustomRuleOut.model_validate(rule, from_attributes=True)


@router.patch("/custom-rules/{rule_id}", response_model=CustomRuleOut)
def update_custom_rule_endpoint(
    rule_id: uuid.UUID,
    payload: CustomRuleUpdate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> CustomRuleOut:
    rule = update_custom_rule(
        session, actor=user, rule_id=rule_id, **payload.model_dump(exclude_unset=True)
    )
    return CustomRuleOut.model_validate(rule, from_attributes=True)


@router.delete("/custom-rules/{rule_id}")
def delete_custom_rule_endpoint(
    rule_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> dict[str, str]:
    delete_custom_rule(session, actor=user, rule_id=rule_id)
    return {"status": "ok"}


@router.get("/audit-log", response_model=list[AuditEntryOut])
def audit_log_endpoint(
    organization_id: uuid.UUID | None = None,
    entity_type: AuditEntityType | None = None,
    action: AuditAction | None = None,
    user_id: uuid.UUID | None = None,
    search: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[AuditEntryOut]:
    entries = list_audit_log(
        session,
        actor=user,
        organization_id=organization_id,
        entity_type=entity_type,
        action=action,
        user_id=user_id,
        search=search,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    return [AuditEntryOut.model_validate(e, from_attributes=True) for e in entries]
