"""Application logging configuration and middleware.

Logging is configured through ``logging.config.dictConfig`` with a key-value
formatter. Two context variables are injected into every record: the HTTP
request id (set by ``RequestIdMiddleware``) and the group id of the queue
group currently being processed (set by ``bind_group_id``), so a single
group's journey can be followed across the ingress, the scheduler and the
processor.
"""

from __future__ import annotations

import logging
import logging.config
import os
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware  # type: ignore[import-not-found]

# ---------------------------------------------------------------------------
# Context variables propagated to log records
# ---------------------------------------------------------------------------
request_id_ctx_var: ContextVar[str | None] = ContextVar("request_id", default=None)
group_id_ctx_var: ContextVar[str | None] = ContextVar("group_id", default=None)


class RequestIdFilter(logging.Filter):
    """Inject the request and group IDs from contextvars into log records."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - small
        record.request_id = request_id_ctx_var.get() or "-"
        record.group_id = group_id_ctx_var.get() or "-"
        return True


def _build_config(log_level: str) -> dict[str, Any]:
    """Build logging configuration dictionary."""

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"request_id": {"()": RequestIdFilter}},
        "formatters": {
            "kv": {
                "format": (
                    "level=%(levelname)s logger=%(name)s request_id=%(request_id)s "
                    "group_id=%(group_id)s message=%(message)s"
                )
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": "kv",
                "filters": ["request_id"],
                "level": log_level,
            }
        },
        "root": {"handlers": ["default"], "level": log_level},
    }


def setup_logging() -> None:
    """Configure root logging using key-value formatting.

    The log level can be controlled via the ``LOG_LEVEL`` environment variable.
    """

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.config.dictConfig(_build_config(log_level))


@contextmanager
def bind_group_id(group_id: str) -> Iterator[None]:
    """Tag every log record emitted inside the block with ``group_id``."""
    token = group_id_ctx_var.set(group_id)
    try:
        yield
    finally:
        group_id_ctx_var.reset(token)


# ---------------------------------------------------------------------------
# FastAPI middleware for request ID injection
# ---------------------------------------------------------------------------
class RequestIdMiddleware(BaseHTTPMiddleware):
    """Populate a unique request ID for each incoming HTTP request.

    Uses the ``X-Request-ID`` header when present, otherwise a new UUID4. The
    ID is echoed back in the ``X-Request-ID`` response header.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        token = request_id_ctx_var.set(request_id)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_ctx_var.reset(token)


__all__ = [
    "RequestIdMiddleware",
    "bind_group_id",
    "group_id_ctx_var",
    "request_id_ctx_var",
    "setup_logging",
]
