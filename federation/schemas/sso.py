"""
Pydantic schemas for the internal SSO relay.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class SSOIssueRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    source_app: str = Field(..., description="App the user is signed in to")
    target_app: str = Field(..., description="App the user is being handed to")
    redirect_path: str = Field("/", description="Absolute path on the target app")
    scope: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "usr_123",
                "source_app": "wallet",
                "target_app": "merchant",
                "redirect_path": "/dashboard",
            }
        }


class SSOIssueResponse(BaseModel):
    token: str
    expires_at: datetime
    redirect_url: str


class SSOExchangeRequest(BaseModel):
    token: str = Field(..., min_length=1)
    target_app: Optional[str] = Field(None, description="Receiving app, checked against the token when given")


class SSOExchangeResponse(BaseModel):
    user_id: str
    source_app: str
    target_app: str
    redirect_path: str
    scope: str = ""
