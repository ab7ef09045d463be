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

from tillsms.metrics import record_http_request


# Context variable to store request_id for the current request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Paths that are neither logged per request nor counted in http metrics
QUIET_PATHS = ("/metrics", "/health/live", "/health/ready")


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_ctx.get()


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding an ISO-8601 UTC `ts`, `level` and the request id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            created = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record['ts'] = created.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname
        log_record['logger'] = record.name

        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Send all logs, uvicorn's included, to stdout as one JSON object per line.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(message)s'))
    root.addHandler(json_handler)

    for logger_name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # RequestLoggingMiddleware replaces the access log
    logging.getLogger("uvicorn.access").disabled = True

    # SQL echo and httpx request lines are too chatty below WARNING
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root


def _route_template(request: Request) -> str:
    """/api/sms/campaigns/{campaign_id}/dispatch rather than the concrete id."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log one JSON line per request and record http metrics.

    Log keys:
    - request_id: taken from X-Request-ID when the caller sends one
    - method, path, route, status, latency_ms
    - staff: signed-in email, when the request passed the session check
    - campaign_id, action, affected: attached by campaign handlers

    5xx responses log at error, 4xx at warning, the rest at info.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)

        logger = logging.getLogger("tillsms.requests")
        start = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "Request failed",
                    extra={"method": request.method, "path": request.url.path},
                )
                raise

            response.headers["X-Request-ID"] = request_id
            latency_seconds = time.perf_counter() - start
            route = _route_template(request)

            if request.url.path in QUIET_PATHS:
                return response

            record_http_request(
                method=request.method,
                path=route,
                status=response.status_code,
                latency_seconds=latency_seconds,
            )

            log_data = {
                "method": request.method,
                "path": request.url.path,
                "route": route,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            staff = getattr(request.state, "staff", None)
            if staff:
                log_data["staff"] = staff
            if hasattr(request.state, "campaign_log_data"):
                log_data.update(request.state.campaign_log_data)

            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_campaign_data(
    request: Request,
    campaign_id: Optional[str] = None,
    action: Optional[str] = None,
    affected: Optional[int] = None,
) -> None:
    """
    Attach campaign action fields to the request log line.

    Args:
        request: FastAPI request object
        campaign_id: Campaign the request acted on
        action: create, dispatch, refresh, resend or test_send
        affected: Number of messages created or changed
    """
    campaign_data = {"action": action}
    if campaign_id is not None:
        campaign_data["campaign_id"] = campaign_id
    if affected is not None:
        campaign_data["affected"] = affected
    request.state.campaign_log_data = campaign_data
