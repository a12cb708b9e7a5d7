from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tripledger.core.models import Base, Timestamped, UUIDPrimaryKey


class ExportStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExportRun(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "exports_export_run"

    report_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("reports_report.id"), index=True
    )
    requested_by_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id")
    )
    status: Mapped[ExportStatus] = mapped_column(Enum(ExportStatus, native_enum=False), index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    summary_xlsx_key: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    supporting_pdf_key: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    # Set when the run should also email the PDF to the organization's accounting.
    deliver_to_accounting: Mapped[bool] = mapped_column(Boolean, default=False)
    delivered_to: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    report = relationship("Report")
    requested_by = relationship("User")
