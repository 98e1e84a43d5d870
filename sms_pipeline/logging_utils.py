import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from sms_pipeline.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

REQUEST_LOGGER = "sms_pipeline.requests"

# request paths never worth a log line or a metric sample
_QUIET_PATHS = frozenset({"/metrics", "/health/live"})


class PipelineJsonFormatter(jsonlogger.JsonFormatter):
    """JSON log lines with a millisecond UTC ``ts``, ``level`` and the active request id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault(
            "ts",
            datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        )
        log_record["level"] = record.levelname
        request_id = request_id_ctx.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route the root logger and uvicorn's loggers through one JSON handler on stdout.

    uvicorn's access log is switched off: RequestLoggingMiddleware writes
    one line per request instead.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(PipelineJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    return root


def _route_path(request: Request) -> str:
    # the matched route template keeps label cardinality bounded,
    # e.g. every unknown source collapses into /webhooks/{path:path}
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Tag each request with an id, time it, record it in metrics and log it.

    Every line carries request_id, method, path, status and latency_ms.
    Handlers add their own keys through ``annotate_request_log``; the
    webhook route adds message_sid and outcome this way.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            if request.url.path in _QUIET_PATHS:
                return response

            elapsed = time.perf_counter() - started
            path = _route_path(request)
            record_http_request(request.method, path, response.status_code, elapsed)

            fields = {
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            fields.update(getattr(request.state, "log_fields", {}))

            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logging.getLogger(REQUEST_LOGGER).log(level, "Request completed", extra=fields)
            return response
        finally:
            request_id_ctx.reset(token)


def annotate_request_log(request: Request, **fields: Any) -> None:
    """Add keys to this request's access log line. None values are dropped."""
    log_fields = getattr(request.state, "log_fields", None)
    if log_fields is None:
        log_fields = request.state.log_fields = {}
    log_fields.update({key: value for key, value in fields.items() if value is not None})
