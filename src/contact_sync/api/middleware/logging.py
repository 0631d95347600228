"""structlog setup and per-request access logging.

Every request gets a request id, taken from an incoming X-Request-ID header
when the caller (a proxy, or a Wealthbox webhook redelivery) sends one, and
generated otherwise. The id is bound into structlog's context variables, so
engine and client events logged while serving the request carry it too, and
it is echoed back on the response.

Access lines are keyed by the matched route template rather than the raw
path, so /api/v1/organizations/7/stats and /api/v1/organizations/8/stats
group together.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.contact_sync.config import Environment, get_settings

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
_MAX_REQUEST_ID_LENGTH = 128


def configure_structlog() -> None:
    """Route structlog through stdlib logging at LOG_LEVEL; JSON in production."""
    settings = get_settings()

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    )

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.ENVIRONMENT == Environment.production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _request_id(request: Request) -> str:
    supplied = request.headers.get(REQUEST_ID_HEADER, "").strip()
    if supplied and len(supplied) <= _MAX_REQUEST_ID_LENGTH:
        return supplied
    return str(uuid.uuid4())


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class LoggingMiddleware(BaseHTTPMiddleware):
    """One access line per request, tagged with route template and request id."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = _request_id(request)
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        started = time.monotonic()

        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "http.request_failed",
                method=request.method,
                route=_route_template(request),
                status_code=500,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            raise
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[REQUEST_ID_HEADER] = request_id
        status_code = response.status_code
        if status_code >= 500:
            emit = logger.error
        elif status_code >= 400:
            emit = logger.warning
        else:
            emit = logger.info
        emit(
            "http.request_completed",
            method=request.method,
            route=_route_template(request),
            path=request.url.path,
            status_code=status_code,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
            request_id=request_id,
        )
        return response
