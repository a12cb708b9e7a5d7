from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tripledger.api.deps import get_current_user
from tripledger.core.db import db_session
from tripledger.modules.approvals.schemas import (
    AssignmentCreate,
    AssignmentOut,
    ChainCreate,
    ChainOut,
    ChainUpdate,
    LevelCreate,
    LevelOut,
    LevelUpdate,
)
from tripledger.modules.approvals.service import (
    add_level,
    create_assignment,
    create_chain,
    delete_assignment,
    delete_chain,
    get_chain,
    list_assignments,
    list_chains,
    remove_level,
    update_chain,
    update_level,
)
from tripledger.modules.identity.models import User
from tripledger.modules.policy.service import resolve_policy_org

router = APIRouter(prefix="/approval-chains", tags=["approvals"])


def _chain_out(chain) -> ChainOut:
    return ChainOut.model_validate(chain, from_attributes=True)


@router.get("", response_model=list[ChainOut])
def list_chains_endpoint(
    organization_id: uuid.UUID | None = None,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[ChainOut]:
    org_id = resolve_policy_org(user, organization_id)
    return [_chain_out(c) for c in list_chains(session, organization_id=org_id)]


@router.post("", response_model=ChainOut)
def create_chain_endpoint(
    payload: ChainCreate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ChainOut:
    chain = create_chain(
        session,
        actor=user,
        name=payload.name,
        description=payload.description,
        is_default=payload.is_default,
        levels=[lvl.model_dump() for lvl in payload.levels],
        organization_id=payload.organization_id,
    )
    return _chain_out(chain)


@router.get("/assignments", response_model=list[AssignmentOut])
def list_assignments_endpoint(
    organization_id: uuid.UUID | None = None,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[AssignmentOut]:
    org_id = resolve_policy_org(user, organization_id)
    return [
        AssignmentOut.model_validate(a, from_attributes=True)
        for a in list_assignments(session, organization_id=org_id)
    ]


@router.post("/assignments", response_model=AssignmentOut)
def create_assignment_endpoint(
    payload: AssignmentCreate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> AssignmentOut:
    assignment = create_assignment(session, actor=user, **payload.model_dump())
    return AssignmentOut.model_validate(assignment, from_attributes=True)


@router.delete("/assignments/{assignment_id}")
def delete_assignment_endpoint(
    assignment_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> dict[str, str]:
    delete_assignment(session, actor=user, assignment_id=assignment_id)
    return {"status": "ok"}


@router.get("/{chain_id}", response_model=ChainOut)
def get_chain_endpoint(
    chain_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ChainOut:
    return _chain_out(get_chain(session, chain_id=chain_id, actor=user))


@router.patch("/{chain_id}", response_model=ChainOut)
def update_chain_endpoint(
    chain_id: uuid.UUID,
    payload: ChainUpdate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ChainOut:
    chain = update_chain(
        session, actor=user, chain_id=chain_id, **payload.model_dump(exclude_unset=True)
    )
    return _chain_out(chain)


@router.delete("/{chain_id}")
def delete_chain_endpoint(
    chain_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> dict[str, str]:
    delete_chain(session, actor=user, chain_id=chain_id)
    return {"status": "ok"}


@router.post("/{chain_id}/levels", response_model=ChainOut)
def add_level_endpoint(
    chain_id: uuid.UUID,
    payload: LevelCreate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ChainOut:
    return _chain_out(add_level(session, actor=user, chain_id=chain_id, **payload.model_dump()))


@router.patch("/levels/{level_id}", response_model=LevelOut)
def update_level_endpoint(
    level_id: uuid.UUID,
    payload: LevelUpdate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> LevelOut:
    level = update_level(
        session, actor=user, level_id=level_id, **payload.model_dump(exclude_unset=True)
    )
    return LevelOut.model_validate(level, from_attributes=True)


@router.delete("/levels/{level_id}", response_model=ChainOut)
def remove_level_endpoint(
    level_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ChainOut:
    return _chain_out(remove_level(session, actor=user, level_id=level_id))
