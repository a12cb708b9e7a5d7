from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel


class NotificationOut(BaseModel):
    id: uuid.UUID
    type: str
    title: str
    message: str
    report_id: uuid.UUID | None
    travel_request_id: uuid.UUID | None
    is_read: bool
    read_at: datetime | None
    created_at: datetime
