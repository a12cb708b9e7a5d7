"""Travel request lifecycle.

A request moves ``draft -> pending_approval -> approved | partially_approved |
rejected``; a pending request may be cancelled, and rejected or cancelled
requests return to draft for resubmission. Each transition below commits
exactly once, and emails are queued only after that commit.

Approval rows are numbered by ``submission_round`` (the request's
``submission_count`` at the time) so earlier rounds stay as history. While a
request is pending, exactly one row of the current round is ``pending`` and
its ``approval_level`` equals ``current_approval_level``.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from tripledger.core.currencies import normalize_currency
from tripledger.core.db import lock_for_update
from tripledger.core.logging import get_logger, log_event
from tripledger.modules.approvals.models import LevelType
from tripledger.modules.approvals.service import (
    ChainStep,
    chain_steps_for_request,
    resolve_chain,
    resolve_direct_approver,
    resolve_level_approver,
)
from tripledger.modules.fx.service import quantize_money
from tripledger.modules.identity.models import User
from tripledger.modules.identity.permissions import get_permissions, is_manager_like
from tripledger.modules.notifications.dispatch import EmailMessage, dispatch_emails
from tripledger.modules.notifications.models import Notification
from tripledger.modules.notifications.service import notify
from tripledger.modules.policy.detector import detect_violations
from tripledger.modules.reports.models import Report
from tripledger.modules.reports.service import home_currency_for, stage_report
from tripledger.modules.travel.models import (
    AMOUNT_FIELDS,
    ApprovalStatus,
    ApprovedTravel,
    Decision,
    TravelRequest,
    TravelRequestApproval,
    TravelRequestStatus,
    TravelRequestViolation,
)

logger = get_logger(__name__)

_DETAIL_FIELDS = (
    "destination_city",
    "destination_country",
    "start_date",
    "end_date",
    "purpose",
    "purpose_details",
    "employee_notes",
)


def _money(value: Any, *, field: str) -> Decimal:
    try:
        amount = Decimal(str(value if value is not None else 0))
    except (InvalidOperation, ValueError) as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid amount for {field}"
        ) from e
    if amount < 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"{field} must not be negative"
        )
    return quantize_money(amount)


def _amounts_total(amounts: dict[str, Decimal], *, nights: int, days: int) -> Decimal:
    return quantize_money(
        amounts["flights"]
        + amounts["accommodation_per_night"] * nights
        + amounts["meals_per_day"] * days
        + amounts["transport"]
        + amounts["other"]
    )


def _estimates(request: TravelRequest) -> dict[str, Decimal]:
    return {f: Decimal(getattr(request, f"estimated_{f}") or 0) for f in AMOUNT_FIELDS}


def _approved(request: TravelRequest) -> dict[str, Decimal]:
    return {
        f: Decimal(
            getattr(request, f"approved_{f}")
            if getattr(request, f"approved_{f}") is not None
            else getattr(request, f"estimated_{f}") or 0
        )
        for f in AMOUNT_FIELDS
    }


def _validate_dates(request: TravelRequest) -> None:
    if request.end_date < request.start_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="end_date must not be before start_date",
        )


def _apply_estimates(request: TravelRequest, estimates: dict[str, Any]) -> None:
    unknown = set(estimates) - set(AMOUNT_FIELDS)
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown amount fields: {', '.join(sorted(unknown))}",
        )
    for f, value in estimates.items():
        setattr(request, f"estimated_{f}", _money(value, field=f))
    request.estimated_total = _amounts_total(
        _estimates(request), nights=request.nights, days=request.days
    )


def _clear_approved(request: TravelRequest) -> None:
    for f in AMOUNT_FIELDS:
        setattr(request, f"approved_{f}", None)
    request.approved_total = None


# Violations


def _stage_violations(
    session: Session, *, request: TravelRequest, requester: User, today: date | None = None
) -> list[TravelRequestViolation]:
    """Replace the request's violation rows with fresh findings.

    Explanations carry over to findings with the same source, rule and category.
    """
    existing = list(
        session.scalars(
            select(TravelRequestViolation).where(
                TravelRequestViolation.travel_request_id == request.id
            )
        )
    )
    explanations: dict[tuple, tuple[str, datetime | None]] = {}
    for v in existing:
        if v.employee_explanation:
            key = (v.source.value, str(v.rule_id) if v.rule_id else None, v.category)
            explanations[key] = (v.employee_explanation, v.explained_at)
        session.delete(v)
    session.flush()

    rows: list[TravelRequestViolation] = []
    for finding in detect_violations(session, request=request, requester=requester, today=today):
        explanation, explained_at = explanations.get(finding.key, (None, None))
        row = TravelRequestViolation(
            travel_request_id=request.id,
            source=finding.source,
            rule_id=finding.rule_id,
            rule_name=finding.rule_name,
            category=finding.category,
            action_type=finding.action_type,
            message=finding.message,
            requested_amount=finding.requested_amount,
            policy_limit=finding.policy_limit,
            overage_amount=finding.overage_amount,
            overage_percentage=finding.overage_percentage,
            currency=finding.currency,
            requires_special_approval=finding.requires_special_approval,
            employee_explanation=explanation,
            explained_at=explained_at,
        )
        session.add(row)
        rows.append(row)
    session.flush()
    request.requires_special_approval = any(r.requires_special_approval for r in rows)
    session.add(request)
    return rows


def list_violations(
    session: Session, *, request_id: uuid.UUID, user: User
) -> list[TravelRequestViolation]:
    request = get_travel_request_for_user(session, request_id=request_id, user=user)
    return list(
        session.scalars(
            select(TravelRequestViolation)
            .where(TravelRequestViolation.travel_request_id == request.id)
            .order_by(TravelRequestViolation.created_at.asc())
        )
    )


def evaluate_violations(
    session: Session, *, request_id: uuid.UUID, user: User, today: date | None = None
) -> list[TravelRequestViolation]:
    request = get_travel_request_for_user(session, request_id=request_id, user=user)
    if request.requester_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    if request.status != TravelRequestStatus.DRAFT:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Violations are only re-evaluated while the request is a draft",
        )
    requester = session.get(User, request.requester_id)
    rows = _stage_violations(session, request=request, requester=requester, today=today)
    session.commit()
    log_event(
        logger,
        "travel.violations.evaluated",
        travel_request_id=str(request.id),
        violation_count=len(rows),
    )
    return list_violations(session, request_id=request.id, user=user)


def explain_violation(
    session: Session, *, violation_id: uuid.UUID, user: User, explanation: str
) -> TravelRequestViolation:
    violation = session.get(TravelRequestViolation, violation_id)
    if not violation:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Violation not found")
    request = session.get(TravelRequest, violation.travel_request_id)
    if request.requester_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    if request.status != TravelRequestStatus.DRAFT:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Explanations can only be edited while the request is a draft",
        )
    text = (explanation or "").strip()
    if not text:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Explanation must not be empty"
        )
    violation.employee_explanation = text
    violation.explained_at = datetime.now(UTC)
    session.add(violation)
    session.commit()
    session.refresh(violation)
    return violation


# Drafts


def create_travel_request(
    session: Session,
    *,
    user: User,
    destination_city: str,
    destination_country: str,
    start_date: date,
    end_date: date,
    purpose: str,
    currency: str | None = None,
    purpose_details: str | None = None,
    employee_notes: str | None = None,
    estimates: dict[str, Any] | None = None,
    today: date | None = None,
) -> TravelRequest:
    if not destination_city.strip() or not destination_country.strip() or not purpose.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Destination and purpose are required",
        )
    currency_norm = normalize_currency(currency or home_currency_for(session, user))
    if not currency_norm:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="currency must be a valid ISO-4217 code"
        )
    request = TravelRequest(
        requester_id=user.id,
        organization_id=user.organization_id,
        destination_city=destination_city.strip(),
        destination_country=destination_country.strip(),
        start_date=start_date,
        end_date=end_date,
        purpose=purpose.strip(),
        purpose_details=purpose_details,
        employee_notes=employee_notes,
        currency=currency_norm,
        status=TravelRequestStatus.DRAFT,
        current_approval_level=0,
        submission_count=0,
    )
    _validate_dates(request)
    _apply_estimates(request, {f: (estimates or {}).get(f, 0) for f in AMOUNT_FIELDS})
    session.add(request)
    session.flush()
    rows = _stage_violations(session, request=request, requester=user, today=today)
    session.commit()
    session.refresh(request)
    log_event(
        logger,
        "travel.request.created",
        travel_request_id=str(request.id),
        estimated_total=str(request.estimated_total),
        violation_count=len(rows),
    )
    return request


def _can_view(session: Session, user: User, request: TravelRequest) -> bool:
    perms = get_permissions(user)
    if perms.is_admin or request.requester_id == user.id:
        return True
    if perms.can_view_org_reports and request.organization_id == user.organization_id:
        return True
    requester = request.requester
    if requester is not None and requester.manager_id == user.id:
        return True
    return bool(
        session.scalar(
            select(TravelRequestApproval.id)
            .where(
                TravelRequestApproval.travel_request_id == request.id,
                TravelRequestApproval.approver_id == user.id,
            )
            .limit(1)
        )
    )


def get_travel_request_for_user(
    session: Session, *, request_id: uuid.UUID, user: User
) -> TravelRequest:
    request = session.scalar(select(TravelRequest).where(TravelRequest.id == request_id))
    if not request:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Travel request not found")
    if not _can_view(session, user, request):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    return request


def list_travel_requests(
    session: Session, *, user: User, status_filter: TravelRequestStatus | None = None
) -> list[TravelRequest]:
    perms = get_permissions(user)
    q = select(TravelRequest).order_by(TravelRequest.created_at.desc())
    if status_filter is not None:
        q = q.where(TravelRequest.status == status_filter)
    if perms.is_admin:
        return list(session.scalars(q))
    if perms.can_view_org_reports:
        return list(
            session.scalars(
                q.where(
                    or_(
                        TravelRequest.organization_id == user.organization_id,
                        TravelRequest.requester_id == user.id,
                    )
                )
            )
        )
    if is_manager_like(user):
        team = select(User.id).where(User.manager_id == user.id)
        routed = select(TravelRequestApproval.travel_request_id).where(
            TravelRequestApproval.approver_id == user.id
        )
        return list(
            session.scalars(
                q.where(
                    or_(
                        TravelRequest.requester_id == user.id,
                        TravelRequest.requester_id.in_(team),
                        TravelRequest.id.in_(routed),
                    )
                )
            )
        )
    return list(session.scalars(q.where(TravelRequest.requester_id == user.id)))


def _require_own_draft(request: TravelRequest, user: User) -> None:
    if request.requester_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    if request.status != TravelRequestStatus.DRAFT:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Only draft requests can be changed"
        )


def update_travel_request(
    session: Session,
    *,
    request_id: uuid.UUID,
    user: User,
    today: date | None = None,
    **changes,
) -> TravelRequest:
    request = get_travel_request_for_user(session, request_id=request_id, user=user)
    _require_own_draft(request, user)

    for field in _DETAIL_FIELDS:
        value = changes.get(field)
        if value is None:
            continue
        if isinstance(value, str) and field in {"destination_city", "destination_country", "purpose"}:
            value = value.strip()
            if not value:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST, detail=f"{field} must not be empty"
                )
        setattr(request, field, value)
    if changes.get("currency") is not None:
        currency_norm = normalize_currency(changes["currency"])
        if not currency_norm:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="currency must be a valid ISO-4217 code",
            )
        request.currency = currency_norm
    _validate_dates(request)
    # Dates drive nights/days, so the total is recomputed on every edit.
    _apply_estimates(request, changes.get("estimates") or {})

    session.add(request)
    rows = _stage_violations(session, request=request, requester=user, today=today)
    session.commit()
    session.refresh(request)
    log_event(
        logger,
        "travel.request.updated",
        travel_request_id=str(request.id),
        violation_count=len(rows),
    )
    return request


def delete_travel_request(session: Session, *, request_id: uuid.UUID, user: User) -> None:
    request = get_travel_request_for_user(session, request_id=request_id, user=user)
    _require_own_draft(request, user)
    session.execute(
        update(Notification)
        .where(Notification.travel_request_id == request.id)
        .values(travel_request_id=None)
    )
    session.execute(
        delete(TravelRequestViolation).where(TravelRequestViolation.travel_request_id == request.id)
    )
    session.execute(
        delete(TravelRequestApproval).where(TravelRequestApproval.travel_request_id == request.id)
    )
    session.delete(request)
    session.commit()
    log_event(logger, "travel.request.deleted", travel_request_id=str(request_id))


# Submit


def _violation_detail(v: TravelRequestViolation) -> dict[str, Any]:
    return {
        "id": str(v.id),
        "source": v.source.value,
        "rule_name": v.rule_name,
        "category": v.category,
        "action_type": v.action_type.value,
        "message": v.message,
    }


def _request_context(request: TravelRequest, requester: User) -> dict[str, Any]:
    return {
        "requester_name": requester.display_name,
        "destination": f"{request.destination_city}, {request.destination_country}",
        "start_date": request.start_date,
        "end_date": request.end_date,
        "estimated_total": request.estimated_total,
        "currency": request.currency,
    }


def _approval_request_email(
    request: TravelRequest,
    requester: User,
    *,
    approver: User,
    step: ChainStep,
    violations: list[TravelRequestViolation],
) -> EmailMessage:
    context = _request_context(request, requester)
    context.update(
        {
            "approval_level": step.level,
            "custom_message": step.custom_message,
            "violation_count": len(violations),
            "requires_special_approval": request.requires_special_approval,
        }
    )
    return EmailMessage(template="travel_approval_request", to=[approver.email], context=context)


def _stage_pending_approval(
    session: Session,
    *,
    request: TravelRequest,
    requester: User,
    step: ChainStep,
    approver: User,
) -> TravelRequestApproval:
    approval = TravelRequestApproval(
        travel_request_id=request.id,
        submission_round=request.submission_count,
        approval_level=step.level,
        level_type=step.level_type.value,
        approver_id=approver.id,
        status=ApprovalStatus.PENDING,
        custom_message=step.custom_message,
    )
    session.add(approval)
    request.current_approval_level = step.level
    notify(
        session,
        user_id=approver.id,
        type="travel_approval_request",
        title="Travel request awaiting approval",
        message=(
            f"{requester.display_name} requested travel to {request.destination_city} "
            f"(level {step.level})"
        ),
        travel_request_id=request.id,
    )
    return approval


def _first_level_approver(session: Session, *, step: ChainStep, requester: User) -> User | None:
    """Approver for the opening level; employees must have a manager of their own."""
    direct = resolve_direct_approver(session, requester=requester)
    if direct is None and not is_manager_like(requester):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You have no manager assigned; ask an administrator to set your manager",
        )
    if step.level_type == LevelType.DIRECT_MANAGER:
        return direct
    return resolve_level_approver(session, step=step, requester=requester)


def submit_travel_request(
    session: Session, *, request_id: uuid.UUID, user: User, today: date | None = None
) -> TravelRequest:
    request = session.scalar(
        lock_for_update(select(TravelRequest).where(TravelRequest.id == request_id))
    )
    if not request:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Travel request not found")
    _require_own_draft(request, user)

    try:
        violations = _stage_violations(session, request=request, requester=user, today=today)
        blocking = [v for v in violations if v.is_blocking]
        if blocking:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "message": "Request violates a blocking travel policy and cannot be submitted.",
                    "violations": [_violation_detail(v) for v in blocking],
                },
            )
        unexplained = [
            v for v in violations if v.needs_explanation and not v.employee_explanation
        ]
        if unexplained:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "message": "Explain every policy violation before submitting.",
                    "violations": [_violation_detail(v) for v in unexplained],
                },
            )

        chain = resolve_chain(session, request=request, requester=user, violations=violations)
        first = chain.steps[0]
        approver = _first_level_approver(session, step=first, requester=user)
        if approver is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="No approver is available; ask an administrator to set your manager",
            )
    except HTTPException:
        session.rollback()
        raise

    now = datetime.now(UTC)
    request.status = TravelRequestStatus.PENDING_APPROVAL
    request.chain_id = chain.chain_id
    request.submission_count = (request.submission_count or 0) + 1
    request.submitted_at = now
    request.final_decision_at = None
    _clear_approved(request)
    _stage_pending_approval(session, request=request, requester=user, step=first, approver=approver)
    session.add(request)
    session.commit()
    session.refresh(request)
    log_event(
        logger,
        "travel.submit",
        travel_request_id=str(request.id),
        chain_source=chain.source,
        chain_id=str(chain.chain_id) if chain.chain_id else None,
        level_count=len(chain.steps),
        approver_id=str(approver.id),
        submission_round=request.submission_count,
    )
    dispatch_emails(
        [
            _approval_request_email(
                request, user, approver=approver, step=first, violations=violations
            )
        ]
    )
    return request


# Decide


def _approval_number(session: Session, *, year: int) -> str:
    prefix = f"TA-{year}-"
    last = session.scalar(
        select(ApprovedTravel.approval_number)
        .where(ApprovedTravel.approval_number.like(f"{prefix}%"))
        .order_by(ApprovedTravel.approval_number.desc())
        .limit(1)
    )
    seq = int(last.rsplit("-", 1)[1]) + 1 if last else 1
    return f"{prefix}{seq:05d}"


def approved_budget(request: TravelRequest) -> dict[str, str]:
    amounts = _approved(request)
    return {
        "flights": str(quantize_money(amounts["flights"])),
        "accommodation_per_night": str(quantize_money(amounts["accommodation_per_night"])),
        "accommodation_total": str(
            quantize_money(amounts["accommodation_per_night"] * request.nights)
        ),
        "meals_per_day": str(quantize_money(amounts["meals_per_day"])),
        "meals_total": str(quantize_money(amounts["meals_per_day"] * request.days)),
        "transport": str(quantize_money(amounts["transport"])),
        "other": str(quantize_money(amounts["other"])),
        "total": str(_amounts_total(amounts, nights=request.nights, days=request.days)),
    }


def _apply_approved_amounts(
    request: TravelRequest, decision: Decision, amounts: dict[str, Any] | None
) -> None:
    current = _approved(request)
    if decision == Decision.APPROVE_WITH_CHANGES:
        if not amounts:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="approve_with_changes needs the modified amounts",
            )
        unknown = set(amounts) - set(AMOUNT_FIELDS)
        if unknown:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown amount fields: {', '.join(sorted(unknown))}",
            )
        for f, value in amounts.items():
            if value is not None:
                current[f] = _money(value, field=f)
    for f in AMOUNT_FIELDS:
        setattr(request, f"approved_{f}", quantize_money(current[f]))
    request.approved_total = _amounts_total(current, nights=request.nights, days=request.days)


def _finalize(
    session: Session, *, request: TravelRequest, now: datetime
) -> ApprovedTravel:
    unchanged = all(
        Decimal(getattr(request, f"approved_{f}")) == Decimal(getattr(request, f"estimated_{f}"))
        for f in AMOUNT_FIELDS
    )
    request.status = (
        TravelRequestStatus.APPROVED if unchanged else TravelRequestStatus.PARTIALLY_APPROVED
    )
    request.final_decision_at = now
    approved = ApprovedTravel(
        travel_request_id=request.id,
        employee_id=request.requester_id,
        organization_id=request.organization_id,
        approval_number=_approval_number(session, year=now.year),
        destination_city=request.destination_city,
        destination_country=request.destination_country,
        start_date=request.start_date,
        end_date=request.end_date,
        purpose=request.purpose,
        currency=request.currency,
        approved_budget=approved_budget(request),
        valid_from=request.start_date,
        valid_until=request.end_date,
        is_used=False,
    )
    session.add(approved)
    return approved


def _skip_reason(step: ChainStep, total: Decimal) -> str | None:
    threshold = step.can_skip_if_approved_amount_under
    if threshold is not None and total < Decimal(threshold):
        limit = quantize_money(Decimal(threshold))
        return f"Approved total {total} is under the level threshold of {limit}"
    return None


def decide_travel_request(
    session: Session,
    *,
    request_id: uuid.UUID,
    user: User,
    decision: Decision,
    comments: str | None = None,
    approved_amounts: dict[str, Any] | None = None,
) -> TravelRequest:
    request = session.scalar(
        lock_for_update(select(TravelRequest).where(TravelRequest.id == request_id))
    )
    if not request:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Travel request not found")
    if request.status != TravelRequestStatus.PENDING_APPROVAL:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Travel request is not awaiting approval"
        )
    approval = session.scalar(
        lock_for_update(
            select(TravelRequestApproval).where(
                TravelRequestApproval.travel_request_id == request.id,
                TravelRequestApproval.submission_round == request.submission_count,
                TravelRequestApproval.approval_level == request.current_approval_level,
            )
        )
    )
    if approval is None or approval.status != ApprovalStatus.PENDING:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Approval is no longer pending"
        )
    if approval.approver_id != user.id and not get_permissions(user).is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")

    requester = session.get(User, request.requester_id)
    now = datetime.now(UTC)
    approval.decision = decision
    approval.comments = comments
    approval.decided_at = now
    emails: list[EmailMessage] = []
    approved_travel: ApprovedTravel | None = None
    next_approver: User | None = None

    if decision == Decision.REJECT:
        approval.status = ApprovalStatus.REJECTED
        request.status = TravelRequestStatus.REJECTED
        request.final_decision_at = now
    else:
        approval.status = ApprovalStatus.APPROVED
        _apply_approved_amounts(request, decision, approved_amounts)
        violations = list(
            session.scalars(
                select(TravelRequestViolation).where(
                    TravelRequestViolation.travel_request_id == request.id
                )
            )
        )
        total = Decimal(request.approved_total)
        remaining = [
            s
            for s in chain_steps_for_request(session, request=request, violations=violations)
            if s.level > approval.approval_level
        ]
        for step in remaining:
            reason = _skip_reason(step, total)
            approver = None
            if reason is None:
                approver = resolve_level_approver(session, step=step, requester=requester)
                if approver is None:
                    reason = f"No {step.level_type.value} approver is available"
            if reason is not None:
                session.add(
                    TravelRequestApproval(
                        travel_request_id=request.id,
                        submission_round=request.submission_count,
                        approval_level=step.level,
                        level_type=step.level_type.value,
                        approver_id=None,
                        status=ApprovalStatus.SKIPPED,
                        skip_reason=reason,
                        decided_at=now,
                    )
                )
                request.current_approval_level = step.level
                context = _request_context(request, requester)
                context.update(
                    {
                        "skipped_level": step.level,
                        "skipped_level_type": step.level_type.value,
                        "skip_reason": reason,
                    }
                )
                emails.append(
                    EmailMessage(template="approval_skipped", to=[requester.email], context=context)
                )
                log_event(
                    logger,
                    "travel.approval.skipped",
                    travel_request_id=str(request.id),
                    approval_level=step.level,
                    reason=reason,
                )
                continue

            _stage_pending_approval(
                session, request=request, requester=requester, step=step, approver=approver
            )
            emails.append(
                _approval_request_email(
                    request, requester, approver=approver, step=step, violations=violations
                )
            )
            next_approver = approver
            break
        else:
            approved_travel = _finalize(session, request=request, now=now)

    if request.status != TravelRequestStatus.PENDING_APPROVAL:
        outcome = request.status.value.replace("_", " ")
        notify(
            session,
            user_id=request.requester_id,
            type="travel_decision",
            title=f"Travel request {outcome}",
            message=f"Your travel request to {request.destination_city} was {outcome}",
            travel_request_id=request.id,
        )
        context = _request_context(request, requester)
        context.update(
            {
                "decision": outcome,
                "comments": comments,
                "approval_number": approved_travel.approval_number if approved_travel else None,
                "approved_budget": approved_travel.approved_budget if approved_travel else None,
            }
        )
        emails.append(
            EmailMessage(template="travel_decision", to=[requester.email], context=context)
        )

    session.add_all([request, approval])
    session.commit()
    session.refresh(request)
    log_event(
        logger,
        "travel.decide",
        travel_request_id=str(request.id),
        approval_level=approval.approval_level,
        decision=decision.value,
        status=request.status.value,
        next_approver_id=str(next_approver.id) if next_approver else None,
        approval_number=approved_travel.approval_number if approved_travel else None,
    )
    dispatch_emails(emails)
    return request


# Cancel / resubmit


def cancel_travel_request(session: Session, *, request_id: uuid.UUID, user: User) -> TravelRequest:
    request = session.scalar(
        lock_for_update(select(TravelRequest).where(TravelRequest.id == request_id))
    )
    if not request:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Travel request not found")
    if request.requester_id != user.id and not get_permissions(user).is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    if request.status != TravelRequestStatus.PENDING_APPROVAL:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Only pending requests can be cancelled"
        )
    session.execute(
        delete(TravelRequestApproval).where(
            TravelRequestApproval.travel_request_id == request.id,
            TravelRequestApproval.status == ApprovalStatus.PENDING,
        )
    )
    request.status = TravelRequestStatus.CANCELLED
    request.final_decision_at = datetime.now(UTC)
    session.add(request)
    session.commit()
    session.refresh(request)
    log_event(logger, "travel.cancel", travel_request_id=str(request.id))
    return request


def resubmit_travel_request(
    session: Session, *, request_id: uuid.UUID, user: User
) -> TravelRequest:
    request = get_travel_request_for_user(session, request_id=request_id, user=user)
    if request.requester_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    if request.status not in {TravelRequestStatus.REJECTED, TravelRequestStatus.CANCELLED}:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Only rejected or cancelled requests can be resubmitted",
        )
    request.status = TravelRequestStatus.DRAFT
    request.submitted_at = None
    request.final_decision_at = None
    request.current_approval_level = 0
    _clear_approved(request)
    session.add(request)
    session.commit()
    session.refresh(request)
    log_event(logger, "travel.resubmit", travel_request_id=str(request.id))
    return request


# Approver views


def list_pending_approvals(session: Session, *, user: User) -> list[TravelRequest]:
    return list(
        session.scalars(
            select(TravelRequest)
            .join(
                TravelRequestApproval,
                TravelRequestApproval.travel_request_id == TravelRequest.id,
            )
            .where(
                TravelRequest.status == TravelRequestStatus.PENDING_APPROVAL,
                TravelRequestApproval.approver_id == user.id,
                TravelRequestApproval.status == ApprovalStatus.PENDING,
                TravelRequestApproval.submission_round == TravelRequest.submission_count,
                TravelRequestApproval.approval_level == TravelRequest.current_approval_level,
            )
            .order_by(TravelRequest.submitted_at.asc())
        )
    )


def list_my_decisions(session: Session, *, user: User) -> list[TravelRequestApproval]:
    return list(
        session.scalars(
            select(TravelRequestApproval)
            .where(
                TravelRequestApproval.approver_id == user.id,
                TravelRequestApproval.status.in_([ApprovalStatus.APPROVED, ApprovalStatus.REJECTED]),
            )
            .order_by(TravelRequestApproval.decided_at.desc())
        )
    )


def list_approvals(
    session: Session, *, request_id: uuid.UUID, user: User
) -> list[TravelRequestApproval]:
    request = get_travel_request_for_user(session, request_id=request_id, user=user)
    return list(
        session.scalars(
            select(TravelRequestApproval)
            .where(TravelRequestApproval.travel_request_id == request.id)
            .order_by(
                TravelRequestApproval.submission_round.asc(),
                TravelRequestApproval.approval_level.asc(),
            )
        )
    )


# Approved travel


def list_approved_travels(session: Session, *, user: User) -> list[ApprovedTravel]:
    perms = get_permissions(user)
    q = select(ApprovedTravel).order_by(ApprovedTravel.created_at.desc())
    if perms.is_admin:
        return list(session.scalars(q))
    if perms.can_view_org_reports:
        return list(session.scalars(q.where(ApprovedTravel.organization_id == user.organization_id)))
    return list(session.scalars(q.where(ApprovedTravel.employee_id == user.id)))


def get_approved_travel(
    session: Session, *, approved_travel_id: uuid.UUID, user: User
) -> ApprovedTravel:
    approved = session.get(ApprovedTravel, approved_travel_id)
    if not approved:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Approved travel not found")
    perms = get_permissions(user)
    if approved.employee_id == user.id or perms.is_admin:
        return approved
    if perms.can_view_org_reports and approved.organization_id == user.organization_id:
        return approved
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")


def convert_to_report(
    session: Session, *, approved_travel_id: uuid.UUID, user: User
) -> Report:
    approved = session.scalar(
        lock_for_update(select(ApprovedTravel).where(ApprovedTravel.id == approved_travel_id))
    )
    if not approved:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Approved travel not found")
    if approved.employee_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    if approved.is_used or approved.expense_report_id is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Approved travel was already converted into a report",
        )

    report = stage_report(
        session,
        user=user,
        trip_destination=f"{approved.destination_city}, {approved.destination_country}",
        trip_purpose=approved.purpose,
        trip_start_date=approved.start_date,
        trip_end_date=approved.end_date,
        notes=f"Created from travel approval {approved.approval_number}",
    )
    approved.expense_report_id = report.id
    approved.is_used = True
    session.add(approved)
    session.commit()
    session.refresh(report)
    log_event(
        logger,
        "travel.converted_to_report",
        approved_travel_id=str(approved.id),
        report_id=str(report.id),
    )
    return report
