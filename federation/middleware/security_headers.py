"""
Security headers middleware.
"""

import logging
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

from federation.core.config import settings

logger = logging.getLogger(__name__)

# Responses on these paths can carry codes, tokens or secrets
NO_STORE_PATH_PREFIXES = ("/oauth/", "/sso/", "/admin/")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Adds security headers to every response, and no-store caching headers to
    responses that may carry credentials.
    """

    def __init__(self, app, **kwargs):
        super().__init__(app)
        self.config = {
            'hsts_max_age': kwargs.get('hsts_max_age', 31536000),  # 1 year
            'hsts_include_subdomains': kwargs.get('hsts_include_subdomains', True),
            'x_frame_options': kwargs.get('x_frame_options', 'DENY'),
            'referrer_policy': kwargs.get('referrer_policy', 'no-referrer'),
        }

    async def dispatch(self, request: Request, call_next) -> StarletteResponse:
        response = await call_next(request)
        self._add_security_headers(request, response)
        if request.url.path.startswith(NO_STORE_PATH_PREFIXES):
            self._add_no_store_headers(response)
        return response

    def _add_security_headers(self, request: Request, response: Response) -> None:
        # HSTS only makes sense over HTTPS
        if request.url.scheme == 'https' or settings.app_env == 'production':
            hsts_value = f"max-age={self.config['hsts_max_age']}"
            if self.config['hsts_include_subdomains']:
                hsts_value += "; includeSubDomains"
            response.headers["Strict-Transport-Security"] = hsts_value

        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = self.config['x_frame_options']
        # Authorization redirects carry codes in the query string
        response.headers["Referrer-Policy"] = self.config['referrer_policy']

    def _add_no_store_headers(self, response: Response) -> None:
        response.headers["Cache-Control"] = "no-store"
        response.headers["Pragma"] = "no-cache"
