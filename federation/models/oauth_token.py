"""
OAuth 2.0 token model. One row holds the access/refresh pair of one issuance.
"""

from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Index

from federation.models.base import BaseModel
from federation.models.mixins import JSONListMixin


class OAuthToken(JSONListMixin, BaseModel):
    """Access/refresh token pair. Only SHA-256 digests of the raw tokens are stored."""

    __tablename__ = "oauth_tokens"

    __table_args__ = (
        Index('idx_oauth_token_user_client', 'user_id', 'client_id'),
        Index('idx_oauth_token_expiry', 'expires_at', 'refresh_expires_at'),
    )

    access_token_hash = Column(String(64), unique=True, nullable=False, index=True)
    refresh_token_hash = Column(String(64), unique=True, nullable=True, index=True)
    client_id = Column(String(255), ForeignKey("oauth_clients.client_id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    scope = Column(Text, nullable=False, default="[]")
    expires_at = Column(DateTime(timezone=True), nullable=False)
    refresh_expires_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True, index=True)

    def get_scopes(self):
        return self._load_list(self.scope)

    def set_scopes(self, scope_list):
        self.scope = self._dump_list(scope_list)

    def __repr__(self):
        return f"<OAuthToken(id={self.id}, client_id='{self.client_id}', revoked={self.revoked_at is not None})>"
