from __future__ import annotations

import time
from pathlib import Path
from typing import Any

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from tripledger.core.config import settings
from tripledger.core.logging import get_logger, log_event, log_exception, monotonic_ms

logger = get_logger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)

# template name -> subject line (formatted with the template context)
SUBJECTS: dict[str, str] = {
    "travel_approval_request": "Travel request to {destination} awaits your approval",
    "travel_decision": "Your travel request to {destination} was {decision}",
    "approval_skipped": "Approval level {skipped_level} skipped for travel to {destination}",
    "report_approval_request": "Expense report from {requester_name} awaits your approval",
    "report_decision": "Your expense report was {decision}",
    "invitation": "You have been invited to join {organization_name}",
    "report_to_accounting": "Expense report {report_title} for processing",
}


def render_email(template: str, context: dict[str, Any]) -> tuple[str, str]:
    if template not in SUBJECTS:
        raise ValueError(f"Unknown email template: {template}")
    subject = SUBJECTS[template].format_map(_SafeDict(context))
    html = _env.get_template(f"{template}.html").render(**context)
    return subject, html


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return ""


def _post_email(payload: dict[str, Any]) -> None:
    resp = httpx.post(
        settings.email_api_url,
        json=payload,
        headers={"Authorization": f"Bearer {settings.email_api_key}"},
        timeout=20,
    )
    resp.raise_for_status()


def send_email(
    *,
    template: str,
    to: list[str],
    context: dict[str, Any],
    attachments: list[dict[str, str]] | None = None,
) -> bool:
    """Render and deliver one email. Delivery problems are logged, never raised."""
    subject, html = render_email(template, context)
    if not settings.email_api_key:
        log_event(logger, "email.skipped", template=template, reason="email_api_key not set")
        return False

    payload: dict[str, Any] = {
        "from": settings.email_from,
        "to": to,
        "subject": subject,
        "html": html,
    }
    if attachments:
        payload["attachments"] = attachments

    start = time.monotonic()
    try:
        _post_email(payload)
    except httpx.HTTPError:
        log_exception(
            logger,
            "email.send.failure",
            template=template,
            recipient_count=len(to),
            duration_ms=monotonic_ms(start),
        )
        return False
    log_event(
        logger,
        "email.send.success",
        template=template,
        recipient_count=len(to),
        duration_ms=monotonic_ms(start),
    )
    return True
