"""
OAuth 2.0 error taxonomy for the federation service.

Every error carries the RFC 6749 ``error`` code that goes on the wire, a human
readable ``error_description`` and the HTTP status used when it is rendered as
JSON. Code and grant failures all serialize as ``invalid_grant`` so clients
cannot distinguish a replayed code from an expired one.
"""

from typing import Optional

from fastapi.responses import JSONResponse


class OAuth2Error(Exception):
    """Base OAuth2 error class."""

    def __init__(self, error: str, error_description: str = None, status_code: int = 400):
        self.error = error
        self.error_description = error_description
        self.status_code = status_code
        super().__init__(error_description or error)

    def to_dict(self) -> dict:
        return {"error": self.error, "error_description": self.error_description}


class CatalogedOAuth2Error(OAuth2Error):
    """OAuth2 error whose wire code and status are fixed by the subclass."""

    error_code = "server_error"
    default_description = "The server encountered an unexpected condition"
    http_status = 400

    def __init__(self, error_description: Optional[str] = None):
        super().__init__(self.error_code, error_description or self.default_description, self.http_status)


class InvalidRequest(CatalogedOAuth2Error):
    error_code = "invalid_request"
    default_description = "The request is missing a required parameter or is malformed"


class InvalidClient(CatalogedOAuth2Error):
    error_code = "invalid_client"
    default_description = "Client authentication failed"
    http_status = 401


class InvalidRedirectURI(InvalidRequest):
    default_description = "redirect_uri is not registered for this client"


class InvalidScope(CatalogedOAuth2Error):
    error_code = "invalid_scope"
    default_description = "The requested scope is invalid or exceeds the client's allowed scopes"


class PkceRequired(InvalidRequest):
    default_description = "Public clients must use PKCE (code_challenge is required)"


class InvalidGrant(CatalogedOAuth2Error):
    error_code = "invalid_grant"
    default_description = "The provided grant is invalid"


class PkceMismatch(InvalidGrant):
    default_description = "PKCE verification failed"


class CodeExpired(InvalidGrant):
    default_description = "The code has expired"


class CodeAlreadyUsed(InvalidGrant):
    default_description = "The code has already been used"


class InvalidToken(CatalogedOAuth2Error):
    error_code = "invalid_token"
    default_description = "The access token is invalid"
    http_status = 401


class TokenExpired(InvalidToken):
    default_description = "The access token has expired"


class TokenRevoked(InvalidToken):
    default_description = "The access token has been revoked"


class ConsentRequired(CatalogedOAuth2Error):
    error_code = "consent_required"
    default_description = "User consent is required for the requested scopes"

    def __init__(self, missing_scopes=None, error_description: Optional[str] = None):
        self.missing_scopes = list(missing_scopes or [])
        super().__init__(error_description)


class AccessDenied(CatalogedOAuth2Error):
    error_code = "access_denied"
    default_description = "The resource owner denied the request"
    http_status = 403


class UnsupportedGrantType(CatalogedOAuth2Error):
    error_code = "unsupported_grant_type"
    default_description = "The authorization grant type is not supported"


class UnsupportedResponseType(CatalogedOAuth2Error):
    error_code = "unsupported_response_type"
    default_description = "Only response_type=code is supported"


class StorageUnavailable(CatalogedOAuth2Error):
    error_code = "temporarily_unavailable"
    default_description = "The service is temporarily unavailable, try again later"
    http_status = 503


def create_oauth2_error_response(error: OAuth2Error) -> JSONResponse:
    """Create OAuth2 error response following RFC 6749."""
    headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
    if error.status_code == 401:
        headers["WWW-Authenticate"] = f'Bearer error="{error.error}"'
    return JSONResponse(status_code=error.status_code, content=error.to_dict(), headers=headers)
