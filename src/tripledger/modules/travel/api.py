from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tripledger.api.deps import get_current_user
from tripledger.core.db import db_session
from tripledger.modules.identity.models import User
from tripledger.modules.reports.schemas import ReportOut
from tripledger.modules.travel.models import TravelRequestStatus
from tripledger.modules.travel.schemas import (
    ApprovalOut,
    ApprovedTravelOut,
    DecisionIn,
    TravelRequestCreate,
    TravelRequestOut,
    TravelRequestUpdate,
    ViolationExplain,
    ViolationOut,
)
from tripledger.modules.travel.service import (
    cancel_travel_request,
    convert_to_report,
    create_travel_request,
    decide_travel_request,
    delete_travel_request,
    evaluate_violations,
    explain_violation,
    get_approved_travel,
    get_travel_request_for_user,
    list_approvals,
    list_approved_travels,
    list_my_decisions,
    list_pending_approvals,
    list_travel_requests,
    list_violations,
    resubmit_travel_request,
    submit_travel_request,
    update_travel_request,
)

router = APIRouter(tags=["travel"])


def _out(request) -> TravelRequestOut:
    return TravelRequestOut.model_validate(request, from_attributes=True)


@router.post("/travel-requests", response_model=TravelRequestOut)
def create_travel_request_endpoint(
    payload: TravelRequestCreate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> TravelRequestOut:
    fields = payload.model_dump(exclude={"estimates"})
    estimates = payload.estimates.model_dump(exclude_none=True) if payload.estimates else None
    return _out(create_travel_request(session, user=user, estimates=estimates, **fields))


@router.get("/travel-requests", response_model=list[TravelRequestOut])
def list_travel_requests_endpoint(
    status: TravelRequestStatus | None = None,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[TravelRequestOut]:
    return [_out(r) for r in list_travel_requests(session, user=user, status_filter=status)]


@router.get("/travel-requests/pending-approvals", response_model=list[TravelRequestOut])
def pending_approvals_endpoint(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[TravelRequestOut]:
    return [_out(r) for r in list_pending_approvals(session, user=user)]


@router.get("/travel-requests/my-decisions", response_model=list[ApprovalOut])
def my_decisions_endpoint(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[ApprovalOut]:
    return [
        ApprovalOut.model_validate(a, from_attributes=True)
        for a in list_my_decisions(session, user=user)
    ]


@router.get("/travel-requests/{request_id}", response_model=TravelRequestOut)
def get_travel_request_endpoint(
    request_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> TravelRequestOut:
    return _out(get_travel_request_for_user(session, request_id=request_id, user=user))


@router.patch("/travel-requests/{request_id}", response_model=TravelRequestOut)
def update_travel_request_endpoint(
    request_id: uuid.UUID,
    payload: TravelRequestUpdate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> TravelRequestOut:
    changes = payload.model_dump(exclude_unset=True, exclude={"estimates"})
    if payload.estimates is not None:
        changes["estimates"] = payload.estimates.model_dump(exclude_none=True)
    return _out(update_travel_request(session, request_id=request_id, user=user, **changes))


@router.delete("/travel-requests/{request_id}")
def delete_travel_request_endpoint(
    request_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> dict[str, str]:
    delete_travel_request(session, request_id=request_id, user=user)
    return {"status": "ok"}


@router.get("/travel-requests/{request_id}/violations", response_model=list[ViolationOut])
def list_violations_endpoint(
    request_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[ViolationOut]:
    return [
        ViolationOut.model_validate(v, from_attributes=True)
        for v in list_violations(session, request_id=request_id, user=user)
    ]


@router.post("/travel-requests/{request_id}/violations/evaluate", response_model=list[ViolationOut])
def evaluate_violations_endpoint(
    request_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[ViolationOut]:
    return [
        ViolationOut.model_validate(v, from_attributes=True)
        for v in evaluate_violations(session, request_id=request_id, user=user)
    ]


@router.put("/travel-violations/{violation_id}/explanation", response_model=ViolationOut)
def explain_violation_endpoint(
    violation_id: uuid.UUID,
    payload: ViolationExplain,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ViolationOut:
    violation = explain_violation(
        session, violation_id=violation_id, user=user, explanation=payload.explanation
    )
    return ViolationOut.model_validate(violation, from_attributes=True)


@router.post("/travel-requests/{request_id}/submit", response_model=TravelRequestOut)
def submit_travel_request_endpoint(
    request_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> TravelRequestOut:
    return _out(submit_travel_request(session, request_id=request_id, user=user))


@router.post("/travel-requests/{request_id}/decide", response_model=TravelRequestOut)
def decide_travel_request_endpoint(
    request_id: uuid.UUID,
    payload: DecisionIn,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> TravelRequestOut:
    amounts = (
        payload.approved_amounts.model_dump(exclude_none=True)
        if payload.approved_amounts
        else None
    )
    request = decide_travel_request(
        session,
        request_id=request_id,
        user=user,
        decision=payload.decision,
        comments=payload.comments,
        approved_amounts=amounts,
    )
    return _out(request)


@router.post("/travel-requests/{request_id}/cancel", response_model=TravelRequestOut)
def cancel_travel_request_endpoint(
    request_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> TravelRequestOut:
    return _out(cancel_travel_request(session, request_id=request_id, user=user))


@router.post("/travel-requests/{request_id}/resubmit", response_model=TravelRequestOut)
def resubmit_travel_request_endpoint(
    request_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> TravelRequestOut:
    return _out(resubmit_travel_request(session, request_id=request_id, user=user))


@router.get("/travel-requests/{request_id}/approvals", response_model=list[ApprovalOut])
def list_approvals_endpoint(
    request_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[ApprovalOut]:
    return [
        ApprovalOut.model_validate(a, from_attributes=True)
        for a in list_approvals(session, request_id=request_id, user=user)
    ]


@router.get("/approved-travels", response_model=list[ApprovedTravelOut])
def list_approved_travels_endpoint(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[ApprovedTravelOut]:
    return [
        ApprovedTravelOut.model_validate(a, from_attributes=True)
        for a in list_approved_travels(session, user=user)
    ]


@router.get("/approved-travels/{approved_travel_id}", response_model=ApprovedTravelOut)
def get_approved_travel_endpoint(
    approved_travel_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ApprovedTravelOut:
    approved = get_approved_travel(session, approved_travel_id=approved_travel_id, user=user)
    return ApprovedTravelOut.model_validate(approved, from_attributes=True)


@router.post("/approved-travels/{approved_travel_id}/convert", response_model=ReportOut)
def convert_to_report_endpoint(
    approved_travel_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReportOut:
    report = convert_to_report(session, approved_travel_id=approved_travel_id, user=user)
    return ReportOut.model_validate(report, from_attributes=True)
