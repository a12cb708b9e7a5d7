from __future__ import annotations

# Ensure all models are registered before any task runs
# isort: off
import tripledger.models  # noqa: F401
# isort: on

import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from tripledger.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_task_context,
    set_task_context,
)
from tripledger.worker.celery_app import celery_app

logger = get_logger(__name__)


@contextmanager
def _task_run(request: Any, task_name: str, **fields: Any) -> Iterator[dict[str, Any]]:
    """Log start/finish/error for one task execution.

    The yielded dict collects extra fields for the finish line.
    """
    task_id = getattr(request, "id", None)
    tokens = set_task_context(task_id)
    start = time.monotonic()
    result_fields: dict[str, Any] = {}
    log_event(logger, "celery.task.start", task_name=task_name, **fields)
    try:
        yield result_fields
    except Exception:
        log_exception(
            logger,
            "celery.task.error",
            task_name=task_name,
            duration_ms=monotonic_ms(start),
            **fields,
        )
        raise
    else:
        log_event(
            logger,
            "celery.task.finish",
            task_name=task_name,
            duration_ms=monotonic_ms(start),
            **fields,
            **result_fields,
        )
    finally:
        reset_task_context(tokens)


@celery_app.task(name="send_email", bind=True)
def send_email_task(
    self,
    template: str,
    to: list[str],
    context: dict[str, Any],
    attachments: list[dict[str, str]] | None = None,
) -> bool:
    from tripledger.modules.notifications.email import send_email

    with _task_run(self.request, "send_email", template=template) as result:
        sent = send_email(template=template, to=to, context=context, attachments=attachments)
        result["sent"] = sent
    return sent


@celery_app.task(name="generate_export", bind=True)
def generate_export_task(self, export_run_id: str) -> None:
    from tripledger.modules.exports.service import generate_export

    with _task_run(self.request, "generate_export", export_run_id=export_run_id):
        generate_export(export_run_id=export_run_id)
