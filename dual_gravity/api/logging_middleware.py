"""
Request Logging Middleware

Logs every API request with timing and a request id, tags the response
with ``X-Request-ID`` and flags requests slower than a threshold.
"""

import time
import uuid
from typing import Callable, List, Optional

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from ..utils.logging_config import log_performance, set_request_context

logger = structlog.get_logger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Request/response logging.

    Request headers are never logged since they carry the player's
    catalog credential.

    Args:
        app: FastAPI application
        exclude_paths: Paths logged without the start/complete pair
        slow_request_threshold: Seconds after which a request is slow
    """

    def __init__(
        self,
        app,
        exclude_paths: Optional[List[str]] = None,
        slow_request_threshold: float = 5.0
    ):
        super().__init__(app)
        self.logger = logger.bind(component="LoggingMiddleware")
        self.exclude_paths = exclude_paths or ["/health", "/docs", "/openapi.json"]
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        if request.url.path in self.exclude_paths:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response

        set_request_context(request_id, path=request.url.path)
        start_time = time.time()
        self.logger.info(
            "api_request_start",
            method=request.method,
            path=request.url.path,
            client_ip=self._get_client_ip(request)
        )

        try:
            response = await call_next(request)
        except Exception as e:
            self.logger.error(
                "api_request_error",
                method=request.method,
                path=request.url.path,
                error_type=type(e).__name__,
                error_message=str(e),
                duration_seconds=round(time.time() - start_time, 4)
            )
            raise

        duration = time.time() - start_time
        self.logger.info(
            "api_request_complete",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_seconds=round(duration, 4)
        )
        if duration > self.slow_request_threshold:
            self.logger.warning(
                "slow_request",
                path=request.url.path,
                duration_seconds=round(duration, 4),
                threshold_seconds=self.slow_request_threshold
            )
        if request.url.path.startswith("/pipeline/"):
            log_performance(request.url.path, duration, status_code=response.status_code)

        response.headers["X-Request-ID"] = request_id
        return response

    def _get_client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        return request.client.host if request.client else "unknown"
