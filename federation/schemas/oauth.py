"""
Pydantic schemas for OAuth 2.0 responses.
"""

from typing import Optional
from pydantic import BaseModel, Field


class TokenResponse(BaseModel):
    """RFC 6749 access token response."""

    access_token: str = Field(..., description="Opaque access token")
    token_type: str = Field("Bearer", description="Token type")
    expires_in: int = Field(..., description="Access token lifetime in seconds")
    refresh_token: Optional[str] = Field(None, description="Refresh token, when issued")
    scope: str = Field(..., description="Space-separated granted scopes")


class IntrospectionResponse(BaseModel):
    """RFC 7662 introspection response."""

    active: bool = Field(..., description="Whether the token is currently usable")
    scope: Optional[str] = None
    client_id: Optional[str] = None
    sub: Optional[str] = None
    token_type: Optional[str] = None
    exp: Optional[int] = None
    iat: Optional[int] = None


class ConsentDecisionResponse(BaseModel):
    """Where the consent page should send the user next."""

    redirect_uri: str = Field(..., description="Client redirect carrying the code or an error")
