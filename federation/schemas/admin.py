"""
Pydantic schemas for client, webhook and maintenance administration.
"""

from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, field_validator

from federation.core.events import EventType


class ClientCreateRequest(BaseModel):
    """Request model for registering a client."""
    name: str = Field(..., min_length=1, max_length=255)
    redirect_uris: List[str] = Field(..., min_length=1, description="Exact URIs or https://*.domain.tld/path patterns")
    scopes: Optional[List[str]] = Field(None, description="Scopes the client may request")
    is_confidential: bool = Field(True, description="Confidential clients receive a secret")
    client_id: Optional[str] = Field(None, min_length=3, max_length=255, description="Requested client_id")

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Acme School Portal",
                "redirect_uris": ["https://*.gov.school.edu.sl/peeap/callback"],
                "scopes": ["profile", "email"],
                "is_confidential": True,
            }
        }


class ClientUpdateRequest(BaseModel):
    """Request model for updating a client."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    redirect_uris: Optional[List[str]] = None
    scopes: Optional[List[str]] = None
    is_active: Optional[bool] = None


class ClientResponse(BaseModel):
    """Response model for client information."""
    client_id: str
    name: str
    redirect_uris: List[str]
    scopes: List[str]
    is_confidential: bool
    is_active: bool


class ClientRegistrationResponse(ClientResponse):
    client_secret: Optional[str] = Field(None, description="Shown once; store it securely")


class ClientListResponse(BaseModel):
    clients: List[ClientResponse]


class SecretRotationResponse(BaseModel):
    client_id: str
    client_secret: str
    secret_last_rotated: datetime
    message: str = "Client secret rotated successfully. Store the new secret securely - it will not be shown again."


class WebhookCreateRequest(BaseModel):
    url: str = Field(..., min_length=1)
    events: List[str] = Field(default_factory=lambda: ["*"])

    @field_validator("events")
    @classmethod
    def validate_events(cls, v):
        unknown = [event for event in v if event != "*" and event not in EventType.ALL]
        if unknown:
            raise ValueError(f"Unknown event types: {', '.join(unknown)}")
        return v or ["*"]

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        if not v.startswith(("https://", "http://")):
            raise ValueError("Webhook URL must be http(s)")
        return v


class WebhookResponse(BaseModel):
    id: int
    client_id: Optional[str]
    url: str
    events: List[str]
    is_active: bool
    failure_count: int
    last_status: Optional[str] = None
    last_triggered_at: Optional[datetime] = None


class WebhookCreatedResponse(WebhookResponse):
    secret: str = Field(..., description="Signing secret; shown once")


class ReapResponse(BaseModel):
    deleted: Dict[str, int]
