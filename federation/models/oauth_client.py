"""
OAuth 2.0 client model for first- and third-party applications.
"""

from sqlalchemy import Column, String, Text, Boolean, DateTime, Integer, Index

from federation.models.base import BaseModel
from federation.models.mixins import JSONListMixin


class OAuthClient(JSONListMixin, BaseModel):
    """Registered OAuth client. Clients are deactivated, never deleted."""

    __tablename__ = "oauth_clients"

    __table_args__ = (
        Index('idx_oauth_client_active_created', 'is_active', 'created_at'),
    )

    client_id = Column(String(255), unique=True, nullable=False, index=True)
    client_secret = Column(String(255), nullable=True)  # bcrypt hash, NULL for public clients
    name = Column(String(255), nullable=False)
    redirect_uris = Column(Text, nullable=False, default="[]")  # JSON list, registration order kept
    scopes = Column(Text, nullable=False, default="[]")  # JSON list of grantable scopes
    is_confidential = Column(Boolean, default=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    secret_last_rotated = Column(DateTime(timezone=True), nullable=True)

    # Counters maintained by the event logger
    tokens_issued = Column(Integer, default=0, nullable=False)
    last_token_issued_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<OAuthClient(id={self.id}, client_id='{self.client_id}', name='{self.name}')>"

    def get_redirect_uris(self):
        """Get list of redirect URIs from JSON string."""
        return self._load_list(self.redirect_uris)

    def set_redirect_uris(self, uris):
        """Set redirect URIs as JSON string, dropping duplicates but keeping order."""
        self.redirect_uris = self._dump_list(dict.fromkeys(uris or []))

    def get_scopes(self):
        """Get list of scopes from JSON string."""
        return self._load_list(self.scopes)

    def set_scopes(self, scope_list):
        """Set scopes as JSON string."""
        self.scopes = self._dump_list(dict.fromkeys(scope_list or []))
