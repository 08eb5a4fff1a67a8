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

from dao_forum.metrics import record_http_request


request_logger = logging.getLogger("dao_forum.requests")

# Request id of the request being served, picked up by every log record
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding ISO-8601 timestamps, level and request_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            now = datetime.now(timezone.utc)
            log_record['ts'] = now.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())

    # Remove existing handlers
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))
    logger.addHandler(json_handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Request lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests in structured JSON format.

    Logged keys: ts, level, request_id, method, path, status, latency_ms,
    and user_id when the caller sent X-User-Id. Forum write endpoints add
    message_id and result through log_forum_write().

    An incoming X-Request-ID is reused; otherwise a fresh one is generated.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            elapsed = time.perf_counter() - started

            # Route template, not the raw path: message ids would explode label cardinality
            route_path = getattr(request.scope.get("route"), "path", request.url.path)
            if route_path != "/metrics":
                record_http_request(request.method, route_path, response.status_code, elapsed)

            _log_request(request, response.status_code, elapsed)
            return response
        finally:
            request_id_ctx.reset(token)


def _log_request(request: Request, status: int, elapsed: float) -> None:
    log_data = {
        "request_id": request.state.request_id,
        "method": request.method,
        "path": request.url.path,
        "status": status,
        "latency_ms": round(elapsed * 1000, 2),
    }
    user_id = request.headers.get("X-User-Id")
    if user_id:
        log_data["user_id"] = user_id
    log_data.update(getattr(request.state, "forum_log_data", {}))

    if status >= 500:
        level = logging.ERROR
    elif status >= 400:
        level = logging.WARNING
    else:
        level = logging.INFO
    request_logger.log(level, "Request completed", extra=log_data)


def log_forum_write(request: Request, message_id: Optional[str] = None, result: Optional[str] = None):
    """
    Attach forum write details to the request log line.

    Args:
        request: FastAPI request object
        message_id: Message created or deleted by the request
        result: Outcome (created, deleted, or an error code)
    """
    data = {}
    if message_id is not None:
        data["message_id"] = message_id
    if result is not None:
        data["result"] = result
    request.state.forum_log_data = data
