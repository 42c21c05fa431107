"""
Middleware package for security headers and request logging.
"""

from .security_headers import SecurityHeadersMiddleware
from .logging_middleware import RequestResponseLoggingMiddleware

__all__ = [
    "SecurityHeadersMiddleware",
    "RequestResponseLoggingMiddleware",
]
