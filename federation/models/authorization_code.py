"""
OAuth 2.0 authorization code model.
"""

import json

from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Index

from federation.models.base import BaseModel
from federation.models.mixins import JSONListMixin


class AuthorizationCode(JSONListMixin, BaseModel):
    """
    Single-use authorization code.

    Codes are consumed by setting ``used_at`` and are never deleted on the
    exchange path, so replays can be told apart from unknown codes. The expiry
    reaper removes them once they are long past ``expires_at``.
    """

    __tablename__ = "oauth_authorization_codes"

    __table_args__ = (
        Index('idx_oauth_auth_code_expires', 'expires_at'),
        Index('idx_oauth_auth_code_user_client', 'user_id', 'client_id'),
    )

    code = Column(String(255), unique=True, nullable=False, index=True)
    client_id = Column(String(255), ForeignKey("oauth_clients.client_id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    redirect_uri = Column(Text, nullable=False)
    scope = Column(Text, nullable=False, default="[]")
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)

    # PKCE fields
    code_challenge = Column(Text, nullable=True)
    code_challenge_method = Column(String(10), nullable=True)  # 'S256' or 'plain'

    # Opaque caller context, e.g. a linked external record id
    extra_data = Column("metadata", Text, nullable=True)

    def get_scopes(self):
        return self._load_list(self.scope)

    def set_scopes(self, scope_list):
        self.scope = self._dump_list(scope_list)

    def get_metadata(self):
        """Return the opaque metadata dict exactly as it was stored."""
        if not self.extra_data:
            return {}
        try:
            return json.loads(self.extra_data)
        except (json.JSONDecodeError, TypeError):
            return {}

    def set_metadata(self, metadata):
        self.extra_data = json.dumps(metadata) if metadata else None

    def __repr__(self):
        return f"<AuthorizationCode(code='{self.code[:8]}...', client_id='{self.client_id}', used={self.used_at is not None})>"
