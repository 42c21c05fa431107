"""
Append-only audit event log.
"""

import json

from sqlalchemy import Column, String, Text, Boolean, Index

from federation.models.base import BaseModel


class AuditEvent(BaseModel):
    """Lifecycle event for codes, tokens, SSO handoffs and client administration."""

    __tablename__ = "audit_events"

    __table_args__ = (
        Index('idx_audit_event_created_at', 'created_at'),
        Index('idx_audit_event_client_created', 'client_id', 'created_at'),
        Index('idx_audit_event_type_created', 'event_type', 'created_at'),
    )

    event_type = Column(String(100), nullable=False, index=True)
    client_id = Column(String(255), nullable=True)
    user_id = Column(String(64), nullable=True, index=True)
    success = Column(Boolean, default=True, nullable=False)
    details = Column(Text, nullable=True)  # JSON

    def get_details(self):
        if not self.details:
            return {}
        try:
            return json.loads(self.details)
        except (json.JSONDecodeError, TypeError):
            return {}

    def __repr__(self):
        return f"<AuditEvent(id={self.id}, event_type='{self.event_type}', success={self.success})>"
