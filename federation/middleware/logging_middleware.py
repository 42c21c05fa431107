"""
Request/Response logging middleware.
"""

import logging
import time
import uuid
from typing import Callable
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

logger = logging.getLogger(__name__)

SENSITIVE_HEADERS = (
    "authorization",
    "cookie",
    "x-admin-key",
    "x-service-key",
    "proxy-authorization",
)

# Query parameters that must never reach the logs
SENSITIVE_QUERY_PARAMS = ("code", "token", "code_verifier", "client_secret", "refresh_token", "request_token")


class RequestResponseLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs method, path, status and duration of every request under a request id.
    """

    def __init__(self, app, enable_logging: bool = True, sensitive_headers: tuple = SENSITIVE_HEADERS):
        super().__init__(app)
        self.enable_logging = enable_logging
        self.sensitive_headers = sensitive_headers

    async def dispatch(self, request: Request, call_next: Callable) -> StarletteResponse:
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(
                f"Request failed | "
                f"request_id={request_id} | "
                f"method={request.method} | "
                f"path={request.url.path} | "
                f"error={str(e)} | "
                f"time={process_time:.3f}s",
                exc_info=True
            )
            raise

        process_time = time.time() - start_time
        if self.enable_logging:
            self._log_response(request, response, process_time, request_id)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{process_time:.4f}"
        return response

    def _log_response(self, request: Request, response: StarletteResponse, process_time: float, request_id: str):
        if response.status_code >= 500:
            log_level = logging.ERROR
        elif response.status_code >= 400:
            log_level = logging.WARNING
        elif request.url.path.startswith("/health"):
            log_level = logging.DEBUG
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            f"Response sent | "
            f"request_id={request_id} | "
            f"method={request.method} | "
            f"path={request.url.path} | "
            f"query={redact_query(request.query_params)} | "
            f"status={response.status_code} | "
            f"time={process_time:.3f}s"
        )

        if logger.isEnabledFor(logging.DEBUG):
            headers = self.filter_sensitive_headers(dict(request.headers))
            logger.debug(f"Request headers | request_id={request_id} | headers={headers}")

    def filter_sensitive_headers(self, headers: dict) -> dict:
        """Replace credential-bearing header values."""
        return {
            key: "***REDACTED***" if key.lower() in self.sensitive_headers else value
            for key, value in headers.items()
        }


def redact_query(query_params) -> str:
    return "&".join(
        f"{key}={'***' if key in SENSITIVE_QUERY_PARAMS else value}"
        for key, value in query_params.multi_items()
    )
