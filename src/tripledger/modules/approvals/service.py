from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from tripledger.core.logging import get_logger, log_event
from tripledger.modules.approvals.models import (
    ApprovalChain,
    ApprovalChainLevel,
    GradeChainAssignment,
    LevelType,
)
from tripledger.modules.identity.models import Role, User, UserRoleAssignment
from tripledger.modules.identity.permissions import is_manager_like
from tripledger.modules.policy.service import resolve_policy_org

if TYPE_CHECKING:
    from tripledger.modules.travel.models import TravelRequest, TravelRequestViolation

logger = get_logger(__name__)


@dataclass(frozen=True)
class ChainStep:
    level: int
    level_type: LevelType
    specific_user_id: uuid.UUID | None = None
    is_required: bool = True
    can_skip_if_approved_amount_under: Decimal | None = None
    custom_message: str | None = None


@dataclass(frozen=True)
class ResolvedChain:
    chain_id: uuid.UUID | None
    source: str
    steps: list[ChainStep]


# Approver resolution


def _first_with_role(
    session: Session, *, organization_id: uuid.UUID | None, role: Role, exclude: uuid.UUID
) -> User | None:
    if organization_id is None:
        return None
    return session.scalar(
        select(User)
        .join(UserRoleAssignment, UserRoleAssignment.user_id == User.id)
        .where(
            User.organization_id == organization_id,
            User.is_active.is_(True),
            User.id != exclude,
            UserRoleAssignment.role == role,
        )
        .order_by(User.email.asc())
        .limit(1)
    )


def _active(session: Session, user_id: uuid.UUID | None) -> User | None:
    if user_id is None:
        return None
    user = session.get(User, user_id)
    return user if user and user.is_active else None


def resolve_direct_approver(session: Session, *, requester: User) -> User | None:
    """The requester's manager; managers without one go to an org admin."""
    manager = _active(session, requester.manager_id)
    if manager is not None and manager.id != requester.id:
        return manager
    if is_manager_like(requester):
        return _first_with_role(
            session,
            organization_id=requester.organization_id,
            role=Role.ORG_ADMIN,
            exclude=requester.id,
        )
    return None


def resolve_level_approver(session: Session, *, step: ChainStep, requester: User) -> User | None:
    approver: User | None = None
    if step.level_type == LevelType.DIRECT_MANAGER:
        approver = resolve_direct_approver(session, requester=requester)
    elif step.level_type == LevelType.SECOND_LINE_MANAGER:
        manager = _active(session, requester.manager_id)
        approver = _active(session, manager.manager_id) if manager else None
    elif step.level_type == LevelType.ORG_ADMIN:
        approver = _first_with_role(
            session,
            organization_id=requester.organization_id,
            role=Role.ORG_ADMIN,
            exclude=requester.id,
        )
    elif step.level_type == LevelType.ACCOUNTING_MANAGER:
        approver = _first_with_role(
            session,
            organization_id=requester.organization_id,
            role=Role.ACCOUNTING_MANAGER,
            exclude=requester.id,
        )
    elif step.level_type == LevelType.SPECIFIC_USER:
        approver = _active(session, step.specific_user_id)
        if approver is not None and approver.organization_id != requester.organization_id:
            approver = None

    if approver is not None and approver.id == requester.id:
        approver = None
    if approver is None and step.is_required and step.level_type != LevelType.ORG_ADMIN:
        approver = _first_with_role(
            session,
            organization_id=requester.organization_id,
            role=Role.ORG_ADMIN,
            exclude=requester.id,
        )
    return approver


# Chain resolution


def _steps_from_chain(chain: ApprovalChain) -> list[ChainStep]:
    return [
        ChainStep(
            level=lvl.level_order,
            level_type=lvl.level_type,
            specific_user_id=lvl.specific_user_id,
            is_required=lvl.is_required,
            can_skip_if_approved_amount_under=lvl.can_skip_if_approved_amount_under,
            custom_message=lvl.custom_message,
        )
        for lvl in sorted(chain.levels, key=lambda x: x.level_order)
    ]


def fallback_required_levels(violations: Iterable[TravelRequestViolation]) -> int:
    max_pct = Decimal("0")
    special = False
    for v in violations:
        if v.overage_percentage is not None:
            max_pct = max(max_pct, Decimal(v.overage_percentage))
        special = special or bool(v.requires_special_approval)
    if max_pct > 30:
        return 3
    if max_pct > 15 or special:
        return 2
    return 1


def fallback_steps(violations: Iterable[TravelRequestViolation]) -> list[ChainStep]:
    levels = fallback_required_levels(violations)
    steps = [ChainStep(level=1, level_type=LevelType.DIRECT_MANAGER)]
    if levels >= 2:
        steps.append(
            ChainStep(level=2, level_type=LevelType.SECOND_LINE_MANAGER, is_required=False)
        )
    if levels >= 3:
        steps.append(ChainStep(level=3, level_type=LevelType.ORG_ADMIN, is_required=False))
    return steps


def _amount_in_range(assignment: GradeChainAssignment, amount: Decimal) -> bool:
    if assignment.min_amount is not None and amount < Decimal(assignment.min_amount):
        return False
    if assignment.max_amount is not None and amount > Decimal(assignment.max_amount):
        return False
    return True


def resolve_chain(
    session: Session,
    *,
    request: TravelRequest,
    requester: User,
    violations: Iterable[TravelRequestViolation],
) -> ResolvedChain:
    """Grade assignment first, then the organization default, then the built-in chain."""
    amount = Decimal(request.estimated_total or 0)
    assignments = list(
        session.scalars(
            select(GradeChainAssignment)
            .join(ApprovalChain, ApprovalChain.id == GradeChainAssignment.chain_id)
            .where(
                GradeChainAssignment.organization_id == request.organization_id,
                ApprovalChain.is_active.is_(True),
            )
            .order_by(GradeChainAssignment.created_at.asc())
        )
    )
    matching = [
        a
        for a in assignments
        if (a.grade_id is None or a.grade_id == requester.grade_id) and _amount_in_range(a, amount)
    ]
    matching.sort(key=lambda a: 0 if a.grade_id is not None else 1)
    for assignment in matching:
        chain = session.get(ApprovalChain, assignment.chain_id)
        if chain and chain.levels:
            return ResolvedChain(
                chain_id=chain.id, source="grade_assignment", steps=_steps_from_chain(chain)
            )

    default = session.scalar(
        select(ApprovalChain).where(
            ApprovalChain.organization_id == request.organization_id,
            ApprovalChain.is_active.is_(True),
            ApprovalChain.is_default.is_(True),
        )
    )
    if default and default.levels:
        return ResolvedChain(chain_id=default.id, source="default", steps=_steps_from_chain(default))

    return ResolvedChain(chain_id=None, source="fallback", steps=fallback_steps(violations))


def chain_steps_for_request(
    session: Session, *, request: TravelRequest, violations: Iterable[TravelRequestViolation]
) -> list[ChainStep]:
    """Steps of the chain a submitted request was routed through."""
    if request.chain_id is not None:
        chain = session.get(ApprovalChain, request.chain_id)
        if chain and chain.levels:
            return _steps_from_chain(chain)
    return fallback_steps(violations)


# Chain configuration


def list_chains(session: Session, *, organization_id: uuid.UUID) -> list[ApprovalChain]:
    return list(
        session.scalars(
            select(ApprovalChain)
            .where(ApprovalChain.organization_id == organization_id)
            .order_by(ApprovalChain.is_default.desc(), ApprovalChain.name.asc())
        )
    )


def get_chain(session: Session, *, chain_id: uuid.UUID, actor: User) -> ApprovalChain:
    chain = session.get(ApprovalChain, chain_id)
    if not chain:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chain not found")
    resolve_policy_org(actor, chain.organization_id)
    return chain


def _clear_other_defaults(session: Session, *, chain: ApprovalChain) -> None:
    for other in session.scalars(
        select(ApprovalChain).where(
            ApprovalChain.organization_id == chain.organization_id,
            ApprovalChain.id != chain.id,
            ApprovalChain.is_default.is_(True),
        )
    ):
        other.is_default = False
        session.add(other)


def _validate_level(
    session: Session,
    *,
    organization_id: uuid.UUID,
    level_type: LevelType,
    specific_user_id: uuid.UUID | None,
    can_skip_if_approved_amount_under: Decimal | None,
) -> None:
    if level_type == LevelType.SPECIFIC_USER:
        user = session.get(User, specific_user_id) if specific_user_id else None
        if user is None or user.organization_id != organization_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="specific_user levels need a user from the same organization",
            )
    if can_skip_if_approved_amount_under is not None and can_skip_if_approved_amount_under < 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Skip threshold must not be negative"
        )


def create_chain(
    session: Session,
    *,
    actor: User,
    name: str,
    description: str | None = None,
    is_default: bool = False,
    levels: list[dict[str, Any]] | None = None,
    organization_id: uuid.UUID | None = None,
) -> ApprovalChain:
    org_id = resolve_policy_org(actor, organization_id)
    if not name.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Name is required")
    chain = ApprovalChain(
        organization_id=org_id,
        name=name.strip(),
        description=description,
        is_active=True,
        is_default=is_default,
    )
    for idx, entry in enumerate(levels or [], start=1):
        level_type = LevelType(entry["level_type"])
        threshold = entry.get("can_skip_if_approved_amount_under")
        _validate_level(
            session,
            organization_id=org_id,
            level_type=level_type,
            specific_user_id=entry.get("specific_user_id"),
            can_skip_if_approved_amount_under=threshold,
        )
        chain.levels.append(
            ApprovalChainLevel(
                level_order=idx,
                level_type=level_type,
                specific_user_id=entry.get("specific_user_id"),
                is_required=entry.get("is_required", True),
                can_skip_if_approved_amount_under=threshold,
                custom_message=entry.get("custom_message"),
            )
        )
    session.add(chain)
    session.flush()
    if is_default:
        _clear_other_defaults(session, chain=chain)
    session.commit()
    session.refresh(chain)
    log_event(
        logger,
        "approvals.chain.created",
        chain_id=str(chain.id),
        level_count=len(chain.levels),
        is_default=chain.is_default,
    )
    return chain


def update_chain(
    session: Session,
    *,
    actor: User,
    chain_id: uuid.UUID,
    name: str | None = None,
    description: str | None = None,
    is_active: bool | None = None,
    is_default: bool | None = None,
) -> ApprovalChain:
    chain = get_chain(session, chain_id=chain_id, actor=actor)
    if name is not None and name.strip():
        chain.name = name.strip()
    if description is not None:
        chain.description = description
    if is_active is not None:
        chain.is_active = is_active
    if is_default is not None:
        chain.is_default = is_default
        if is_default:
            _clear_other_defaults(session, chain=chain)
    session.add(chain)
    session.commit()
    session.refresh(chain)
    return chain


def _require_no_pending_requests(session: Session, *, chain: ApprovalChain) -> None:
    """Pending requests read their remaining levels from the chain by level_order."""
    from tripledger.modules.travel.models import TravelRequest, TravelRequestStatus

    in_flight = session.scalar(
        select(TravelRequest.id)
        .where(
            TravelRequest.chain_id == chain.id,
            TravelRequest.status == TravelRequestStatus.PENDING_APPROVAL,
        )
        .limit(1)
    )
    if in_flight:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Chain is in use by requests awaiting approval",
        )


def delete_chain(session: Session, *, actor: User, chain_id: uuid.UUID) -> None:
    chain = get_chain(session, chain_id=chain_id, actor=actor)
    _require_no_pending_requests(session, chain=chain)
    for assignment in session.scalars(
        select(GradeChainAssignment).where(GradeChainAssignment.chain_id == chain.id)
    ):
        session.delete(assignment)
    session.delete(chain)
    session.commit()
    log_event(logger, "approvals.chain.deleted", chain_id=str(chain_id))


def _renumber(session: Session, levels: list[ApprovalChainLevel]) -> None:
    # Two passes keep the (chain_id, level_order) constraint satisfied mid-flush.
    for idx, lvl in enumerate(levels, start=1):
        lvl.level_order = -idx
    session.flush()
    for idx, lvl in enumerate(levels, start=1):
        lvl.level_order = idx
    session.flush()


def add_level(
    session: Session,
    *,
    actor: User,
    chain_id: uuid.UUID,
    level_type: LevelType,
    specific_user_id: uuid.UUID | None = None,
    is_required: bool = True,
    can_skip_if_approved_amount_under: Decimal | None = None,
    custom_message: str | None = None,
    position: int | None = None,
) -> ApprovalChain:
    chain = get_chain(session, chain_id=chain_id, actor=actor)
    _require_no_pending_requests(session, chain=chain)
    _validate_level(
        session,
        organization_id=chain.organization_id,
        level_type=level_type,
        specific_user_id=specific_user_id,
        can_skip_if_approved_amount_under=can_skip_if_approved_amount_under,
    )
    levels = sorted(chain.levels, key=lambda x: x.level_order)
    new_level = ApprovalChainLevel(
        chain_id=chain.id,
        level_order=len(levels) + 1,
        level_type=level_type,
        specific_user_id=specific_user_id,
        is_required=is_required,
        can_skip_if_approved_amount_under=can_skip_if_approved_amount_under,
        custom_message=custom_message,
    )
    session.add(new_level)
    session.flush()
    if position is not None and 1 <= position <= len(levels):
        levels.insert(position - 1, new_level)
        _renumber(session, levels)
    session.commit()
    session.refresh(chain)
    return chain


def _get_level(session: Session, *, level_id: uuid.UUID, actor: User) -> ApprovalChainLevel:
    level = session.get(ApprovalChainLevel, level_id)
    if not level:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Level not found")
    get_chain(session, chain_id=level.chain_id, actor=actor)
    return level


def update_level(
    session: Session, *, actor: User, level_id: uuid.UUID, **changes
) -> ApprovalChainLevel:
    level = _get_level(session, level_id=level_id, actor=actor)
    chain = session.get(ApprovalChain, level.chain_id)
    level_type = changes.get("level_type") or level.level_type
    specific_user_id = changes.get("specific_user_id", level.specific_user_id)
    threshold = changes.get(
        "can_skip_if_approved_amount_under", level.can_skip_if_approved_amount_under
    )
    _validate_level(
        session,
        organization_id=chain.organization_id,
        level_type=LevelType(level_type),
        specific_user_id=specific_user_id,
        can_skip_if_approved_amount_under=threshold,
    )
    for field in (
        "level_type",
        "specific_user_id",
        "is_required",
        "can_skip_if_approved_amount_under",
        "custom_message",
    ):
        if field in changes:
            setattr(level, field, changes[field])
    session.add(level)
    session.commit()
    session.refresh(level)
    return level


def remove_level(session: Session, *, actor: User, level_id: uuid.UUID) -> ApprovalChain:
    level = _get_level(session, level_id=level_id, actor=actor)
    chain = session.get(ApprovalChain, level.chain_id)
    _require_no_pending_requests(session, chain=chain)
    remaining = [lvl for lvl in sorted(chain.levels, key=lambda x: x.level_order) if lvl is not level]
    chain.levels.remove(level)
    session.flush()
    _renumber(session, remaining)
    session.commit()
    session.refresh(chain)
    return chain


# Grade assignments


def list_assignments(
    session: Session, *, organization_id: uuid.UUID
) -> list[GradeChainAssignment]:
    return list(
        session.scalars(
            select(GradeChainAssignment)
            .where(GradeChainAssignment.organization_id == organization_id)
            .order_by(GradeChainAssignment.created_at.asc())
        )
    )


def create_assignment(
    session: Session,
    *,
    actor: User,
    chain_id: uuid.UUID,
    grade_id: uuid.UUID | None = None,
    min_amount: Decimal | None = None,
    max_amount: Decimal | None = None,
) -> GradeChainAssignment:
    from tripledger.modules.policy.models import EmployeeGrade

    chain = get_chain(session, chain_id=chain_id, actor=actor)
    if grade_id is not None:
        grade = session.get(EmployeeGrade, grade_id)
        if not grade or grade.organization_id != chain.organization_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Grade not found")
    if min_amount is not None and max_amount is not None and min_amount > max_amount:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="min_amount must not exceed max_amount",
        )
    assignment = GradeChainAssignment(
        organization_id=chain.organization_id,
        chain_id=chain.id,
        grade_id=grade_id,
        min_amount=min_amount,
        max_amount=max_amount,
    )
    session.add(assignment)
    session.commit()
    session.refresh(assignment)
    return assignment


def delete_assignment(session: Session, *, actor: User, assignment_id: uuid.UUID) -> None:
    assignment = session.get(GradeChainAssignment, assignment_id)
    if not assignment:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Assignment not found")
    resolve_policy_org(actor, assignment.organization_id)
    session.delete(assignment)
    session.commit()
