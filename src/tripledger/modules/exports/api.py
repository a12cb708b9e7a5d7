from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from tripledger.api.deps import get_current_user
from tripledger.core.db import db_session
from tripledger.core.storage import get_storage
from tripledger.modules.exports.schemas import ExportRunOut
from tripledger.modules.exports.service import (
    XLSX_MEDIA_TYPE,
    get_export_run,
    list_export_runs,
    pdf_file_name,
    request_export,
    send_report_to_accounting,
)
from tripledger.modules.identity.models import User

router = APIRouter(tags=["exports"])


@router.post("/reports/{report_id}/exports", response_model=ExportRunOut)
def create_export(
    report_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ExportRunOut:
    run = request_export(session, report_id=report_id, user=user)
    return ExportRunOut.model_validate(run, from_attributes=True)


@router.get("/reports/{report_id}/exports", response_model=list[ExportRunOut])
def list_exports(
    report_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[ExportRunOut]:
    runs = list_export_runs(session, report_id=report_id, user=user)
    return [ExportRunOut.model_validate(r, from_attributes=True) for r in runs]


@router.post("/reports/{report_id}/send-to-accounting", response_model=ExportRunOut)
def send_to_accounting(
    report_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ExportRunOut:
    run = send_report_to_accounting(session, report_id=report_id, user=user)
    return ExportRunOut.model_validate(run, from_attributes=True)


@router.get("/exports/{export_run_id}", response_model=ExportRunOut)
def get_export(
    export_run_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ExportRunOut:
    run = get_export_run(session, export_run_id=export_run_id, user=user)
    return ExportRunOut.model_validate(run, from_attributes=True)


@router.get("/exports/{export_run_id}/download/summary")
def download_summary(
    export_run_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> Response:
    run = get_export_run(session, export_run_id=export_run_id, user=user)
    if not run.summary_xlsx_key:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Export not ready")
    body = get_storage().get(key=run.summary_xlsx_key)
    return Response(
        content=body,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="Expense_Summary.xlsx"'},
    )


@router.get("/exports/{export_run_id}/download/supporting")
def download_supporting(
    export_run_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> Response:
    run = get_export_run(session, export_run_id=export_run_id, user=user)
    if not run.supporting_pdf_key:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Export not ready")
    body = get_storage().get(key=run.supporting_pdf_key)
    return Response(
        content=body,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{pdf_file_name(run.report)}"'},
    )
