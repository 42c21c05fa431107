"""
SQLAlchemy database models.
"""

from federation.models.base import Base, BaseModel
from federation.models.oauth_client import OAuthClient
from federation.models.authorization_code import AuthorizationCode
from federation.models.oauth_token import OAuthToken
from federation.models.consent import Consent
from federation.models.sso_token import SSOToken
from federation.models.audit_event import AuditEvent
from federation.models.webhook import WebhookEndpoint, WebhookDelivery

__all__ = [
    "Base", "BaseModel", "OAuthClient", "AuthorizationCode", "OAuthToken",
    "Consent", "SSOToken", "AuditEvent", "WebhookEndpoint", "WebhookDelivery",
]
