from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from tripledger.core.logging import get_logger, log_event
from tripledger.core.models import jsonable

logger = get_logger(__name__)


@dataclass
class EmailMessage:
    template: str
    to: list[str]
    context: dict[str, Any] = field(default_factory=dict)
    attachments: list[dict[str, str]] = field(default_factory=list)


def dispatch_emails(messages: Iterable[EmailMessage]) -> None:
    """Queue emails for delivery. Call only after the business transaction committed."""
    from tripledger.worker.tasks import send_email_task

    for message in messages:
        recipients = sorted({r for r in message.to if r})
        if not recipients:
            log_event(logger, "email.dispatch.no_recipients", template=message.template)
            continue
        async_result = send_email_task.delay(
            message.template,
            recipients,
            jsonable(message.context),
            message.attachments,
        )
        log_event(
            logger,
            "celery.task.enqueued",
            task_name="send_email",
            celery_task_id=async_result.id,
            template=message.template,
        )
