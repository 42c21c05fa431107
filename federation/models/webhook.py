"""
Webhook endpoint and delivery models.
"""

from sqlalchemy import Column, String, Text, Boolean, DateTime, Integer, ForeignKey, Index
from sqlalchemy.orm import relationship

from federation.models.base import BaseModel
from federation.models.mixins import JSONListMixin


class WebhookEndpoint(JSONListMixin, BaseModel):
    """Subscriber URL for lifecycle events. A NULL client_id subscribes tenant-wide."""

    __tablename__ = "webhook_endpoints"

    client_id = Column(String(255), ForeignKey("oauth_clients.client_id"), nullable=True, index=True)
    url = Column(Text, nullable=False)
    secret = Column(String(255), nullable=False)  # HMAC signing key, needed in clear to sign
    events = Column(Text, nullable=False, default='["*"]')
    is_active = Column(Boolean, default=True, nullable=False)
    failure_count = Column(Integer, default=0, nullable=False)
    last_status = Column(String(20), nullable=True)
    last_triggered_at = Column(DateTime(timezone=True), nullable=True)

    deliveries = relationship("WebhookDelivery", back_populates="endpoint")

    def get_events(self):
        return self._load_list(self.events)

    def set_events(self, events):
        self.events = self._dump_list(dict.fromkeys(events or ["*"]))

    def subscribes_to(self, event_type: str) -> bool:
        events = self.get_events()
        return "*" in events or event_type in events


class WebhookDelivery(BaseModel):
    """One event delivery to one endpoint, with retry bookkeeping."""

    __tablename__ = "webhook_deliveries"

    __table_args__ = (
        Index('idx_webhook_delivery_status_retry', 'status', 'next_retry_at'),
    )

    endpoint_id = Column(Integer, ForeignKey("webhook_endpoints.id"), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    payload = Column(Text, nullable=False)  # JSON body sent to the endpoint
    status = Column(String(20), nullable=False, default="pending")  # pending|queued|in_flight|retrying|delivered|failed
    attempts = Column(Integer, default=0, nullable=False)
    response_status = Column(Integer, nullable=True)
    last_error = Column(Text, nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    endpoint = relationship("WebhookEndpoint", back_populates="deliveries")
