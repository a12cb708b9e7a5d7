from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel

from tripledger.modules.exports.models import ExportStatus


class ExportRunOut(BaseModel):
    id: uuid.UUID
    report_id: uuid.UUID
    requested_by_user_id: uuid.UUID
    status: ExportStatus
    error_message: str | None
    summary_xlsx_key: str | None
    supporting_pdf_key: str | None
    deliver_to_accounting: bool
    delivered_to: str | None
    delivered_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
