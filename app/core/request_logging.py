"""
Request logging middleware.
Logs one structured line per request with timing; build routes carry the job_id.
NEVER logs: request bodies (template archives), sensitive headers.
"""
import logging
import re
import time
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.metrics import metrics
from app.core.request_context import set_request_id

logger = logging.getLogger("builder.request")

# Polled constantly by build status UIs and health checks
QUIET_PATHS = {"/health", "/metrics"}

BUILD_PATH_PATTERN = re.compile(r"^/builds/([0-9a-fA-F-]{36})(?:/|$)")


def job_id_from_path(path: str) -> Optional[str]:
    """Job id addressed by a /builds/{job_id}/... path, if any."""
    match = BUILD_PATH_PATTERN.match(path)
    return match.group(1) if match else None


def client_ip_of(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def count_response(status_code: int) -> None:
    metrics.inc("requests_total")
    status_class = status_code // 100
    if status_class in (2, 4, 5):
        metrics.inc(f"requests_{status_class}xx")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    - Reuses an incoming X-Request-Id or generates one, and echoes it back
    - Logs method, path, status, duration and upload size
    - Updates request metrics
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = set_request_id(request.headers.get("x-request-id"))
        path = request.url.path

        start_time = time.perf_counter()
        response: Response = await call_next(request)
        duration_ms = int((time.perf_counter() - start_time) * 1000)

        response.headers["X-Request-Id"] = request_id
        count_response(response.status_code)

        if path in QUIET_PATHS:
            return response

        extra = {
            "request_id": request_id,
            "method": request.method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
            "client_ip": client_ip_of(request),
        }
        job_id = job_id_from_path(path)
        if job_id:
            extra["job_id"] = job_id
        content_length = request.headers.get("content-length")
        if request.method in ("POST", "PUT") and content_length and content_length.isdigit():
            extra["body_bytes"] = int(content_length)

        logger.info("request", extra=extra)
        return response
