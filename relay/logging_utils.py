import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from relay.ingestion import IngestionReport, Outcome
from relay.metrics import record_http_request


REQUEST_ID_HEADER = "X-Request-ID"

# Set per request so that log lines from the pipeline carry the delivery's id
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding an ISO-8601 UTC ``ts``, ``level`` and the current request id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault("ts", datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"))
        log_record["level"] = record.levelname
        if "request_id" not in log_record and request_id_ctx.get():
            log_record["request_id"] = request_id_ctx.get()


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route all application and server logs through one JSON handler on stdout.

    Args:
        log_level: Root logging level name (DEBUG, INFO, WARNING, ...)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in _SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    # RequestLoggingMiddleware replaces the access log
    logging.getLogger("uvicorn.access").disabled = True
    # One line per provider call is too chatty at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


def _level_for(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Emit one structured log line per HTTP request and record request metrics.

    The line carries request_id, method, path, status and latency_ms. For
    webhook deliveries the per-item outcome counts attached by
    :func:`log_webhook_data` are merged in. An incoming ``X-Request-ID`` is
    reused so ids can be correlated with an upstream proxy.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers[REQUEST_ID_HEADER] = request_id

            route = _route_label(request)
            if route != "/metrics":
                record_http_request(request.method, route, response.status_code, elapsed)

            fields = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            fields.update(getattr(request.state, "webhook_log_data", {}))

            logging.getLogger("relay.requests").log(
                _level_for(response.status_code), "Request completed", extra=fields
            )
            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(request: Request, report: Optional[IngestionReport] = None, result: Optional[str] = None):
    """Stash a webhook delivery summary for the request log line."""
    summary = {}
    if result is not None:
        summary["result"] = result

    if report is not None:
        summary.update({
            "items": len(report.outcomes),
            "processed": report.count(Outcome.PROCESSED, Outcome.REPLIED),
            "replied": report.count(Outcome.REPLIED),
            "failed": report.count(Outcome.FAILED),
            "skipped": report.count(Outcome.SKIPPED),
            "statuses_applied": report.count(Outcome.STATUS_APPLIED),
            "statuses_ignored": report.count(Outcome.STATUS_IGNORED),
        })

    request.state.webhook_log_data = summary
