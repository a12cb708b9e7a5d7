from __future__ import annotations

import contextvars
import json
import logging
import os
import time
import uuid
from datetime import UTC, datetime
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Output key -> context variable; every log line carries whichever are set.
_CONTEXT: dict[str, contextvars.ContextVar[str | None]] = {
    key: contextvars.ContextVar(key, default=None)
    for key in ("request_id", "user_id", "organization_id", "celery_task_id")
}

_configured = False


def _without_none(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None}


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, message, event and fields."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=UTC).isoformat().replace("+00:00", "Z")
        payload: dict[str, Any] = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if getattr(record, "event", None):
            payload["event"] = record.event
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload.update(_without_none(fields))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=True)


def configure_logging() -> None:
    global _configured  # noqa: PLW0603
    if _configured:
        return
    level = logging.getLevelNamesMapping().get(
        os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO
    )
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger("tripledger")
    root.setLevel(level)
    root.handlers = [handler]
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


def _bind(**values: str | None) -> dict[str, contextvars.Token]:
    return {key: _CONTEXT[key].set(value) for key, value in values.items()}


def _unbind(tokens: dict[str, contextvars.Token]) -> None:
    for key, token in tokens.items():
        _CONTEXT[key].reset(token)


def set_user_context(user_id: str | None, *, organization_id: str | None = None) -> None:
    """Tag the rest of the current request with the authenticated user."""
    _bind(user_id=user_id, organization_id=organization_id)


def set_task_context(task_id: str | None) -> dict[str, contextvars.Token]:
    return _bind(celery_task_id=task_id)


def reset_task_context(tokens: dict[str, contextvars.Token]) -> None:
    _unbind(tokens)


def _merge_fields(fields: dict[str, Any]) -> dict[str, Any]:
    payload = _without_none({key: var.get() for key, var in _CONTEXT.items()})
    payload.update(_without_none(fields))
    return payload


def log_event(
    logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any
) -> None:
    logger.log(level, event, extra={"event": event, "fields": _merge_fields(fields)})


def log_exception(logger: logging.Logger, event: str, **fields: Any) -> None:
    logger.exception(event, extra={"event": event, "fields": _merge_fields(fields)})


def monotonic_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assign (or propagate) ``x-request-id`` and log one line per request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        tokens = _bind(request_id=request_id, user_id=None, organization_id=None)
        logger = get_logger(__name__)
        start = time.monotonic()
        try:
            response = await call_next(request)
            response.headers["x-request-id"] = request_id
            log_event(
                logger,
                "http.request.finish",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=monotonic_ms(start),
            )
            return response
        except Exception:
            log_exception(
                logger,
                "http.request.error",
                method=request.method,
                path=request.url.path,
                query=str(request.url.query) or None,
                duration_ms=monotonic_ms(start),
            )
            raise
        finally:
            _unbind(tokens)
