"""
Internal SSO handoff token model.
"""

from sqlalchemy import Column, String, DateTime, Text, Index

from federation.models.base import BaseModel


class SSOToken(BaseModel):
    """Very short-lived, single-use token for first-party cross-app handoff."""

    __tablename__ = "sso_tokens"

    __table_args__ = (
        Index('idx_sso_token_expires', 'expires_at'),
    )

    token = Column(String(255), unique=True, nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    source_app = Column(String(64), nullable=False)
    target_app = Column(String(64), nullable=False)
    scope = Column(Text, nullable=True)
    redirect_path = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<SSOToken(user_id='{self.user_id}', {self.source_app}->{self.target_app})>"
