from __future__ import annotations

import mimetypes

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import JSONResponse, Response

from tripledger.core.security import decode_file_token
from tripledger.core.storage import StorageError, diagnose_storage, get_storage
from tripledger.modules.approvals.api import router as approvals_router
from tripledger.modules.exports.api import router as exports_router
from tripledger.modules.fx.api import router as fx_router
from tripledger.modules.identity.api import router as identity_router
from tripledger.modules.notifications.api import router as notifications_router
from tripledger.modules.policy.api import router as policy_router
from tripledger.modules.reports.api import router as reports_router
from tripledger.modules.travel.api import router as travel_router

router = APIRouter()

router.include_router(identity_router, prefix="/api")
router.include_router(policy_router, prefix="/api")
router.include_router(approvals_router, prefix="/api")
router.include_router(travel_router, prefix="/api")
router.include_router(reports_router, prefix="/api")
router.include_router(exports_router, prefix="/api")
router.include_router(fx_router, prefix="/api")
router.include_router(notifications_router, prefix="/api")


@router.get("/api/files")
def download_file(token: str) -> Response:
    """Serve a locally stored object behind a short-lived signed token."""
    key = decode_file_token(token)
    if not key:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired link")
    try:
        body = get_storage().get(key=key)
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found") from e
    media_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return Response(content=body, media_type=media_type)


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz/storage")
def healthz_storage() -> JSONResponse:
    result = diagnose_storage()
    status_code = 200 if result.get("ok") else 503
    return JSONResponse(status_code=status_code, content=result)
