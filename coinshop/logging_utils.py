import json
import logging
import os
import time
import traceback
import uuid
from typing import Any, Dict

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware


def _now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime())


def get_json_logger(service_name: str, level: str | None = None) -> logging.Logger:
    """
    Return a logger that prints plain JSON to stdout.

    - Leaves the default uvicorn logging configuration alone.
    - Each line is one JSON object, ready for Loki / Elasticsearch.
    """
    logger = logging.getLogger(service_name)
    if level:
        logger.setLevel(level.upper())
    if logger.handlers:
        return logger
    handler = logging.StreamHandler()
    # message is already a JSON string
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, **fields: Any) -> None:
    """
    Log a business event as JSON.

    Example:
        log_event(logger, "transfer_success", from_user_id=1, to_user_id=2, amount=200)
    """
    payload: Dict[str, Any] = {
        "ts": _now(),
        "event": event,
        **fields,
    }
    logger.info(json.dumps(payload, ensure_ascii=False, default=str))


def log_error_event(logger: logging.Logger, event: str, exc: BaseException | None = None, **fields: Any) -> None:
    """Log error event at ERROR level with optional traceback."""
    payload: Dict[str, Any] = {
        "ts": _now(),
        "event": event,
        "level": "error",
        **fields,
    }
    if exc is not None:
        payload["error"] = str(exc)
        payload["error_type"] = type(exc).__name__
        tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
        payload["traceback"] = "".join(tb).replace("\n", "\\n")
    logger.error(json.dumps(payload, ensure_ascii=False, default=str))


class RequestLogMiddleware(BaseHTTPMiddleware):
    """JSON access log for every request."""

    def __init__(self, app, logger: logging.Logger, service_name: str) -> None:
        super().__init__(app)
        self.logger = logger
        self.service_name = service_name

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in ("/health", "/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        route = request.scope.get("route")
        payload = {
            "ts": _now(),
            "event": "http_request",
            "service": self.service_name,
            "method": request.method,
            # template, not the raw path: item names and usernames stay out of the log
            "path": getattr(route, "path", None) or path,
            "status": response.status_code,
            "duration_ms": round(duration_ms, 2),
            "client_ip": request.client.host if request.client else None,
            "request_id": request_id,
        }
        self.logger.info(json.dumps(payload, ensure_ascii=False))
        response.headers.setdefault("X-Request-Id", request_id)
        return response


def setup_exception_logging(app, logger: logging.Logger, service_name: str):
    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        if isinstance(exc, HTTPException):
            raise exc
        log_error_event(
            logger,
            "unhandled_exception",
            exc=exc,
            service=service_name,
            method=request.method,
            path=request.url.path,
        )
        return JSONResponse(status_code=500, content={"errors": "Internal server error"})
