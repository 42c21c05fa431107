"""
User consent model.
"""

from sqlalchemy import Column, String, Text, ForeignKey, UniqueConstraint

from federation.models.base import BaseModel
from federation.models.mixins import JSONListMixin


class Consent(JSONListMixin, BaseModel):
    """Cumulative scopes a user has approved for a client."""

    __tablename__ = "oauth_consents"

    __table_args__ = (
        UniqueConstraint('user_id', 'client_id', name='uq_oauth_consent_user_client'),
    )

    user_id = Column(String(64), nullable=False, index=True)
    client_id = Column(String(255), ForeignKey("oauth_clients.client_id"), nullable=False, index=True)
    scopes = Column(Text, nullable=False, default="[]")

    def get_scopes(self):
        return self._load_list(self.scopes)

    def set_scopes(self, scope_list):
        self.scopes = self._dump_list(scope_list)

    def __repr__(self):
        return f"<Consent(user_id='{self.user_id}', client_id='{self.client_id}')>"
