"""
Lifecycle event logging and webhook delivery.

Events are written to the audit log after the operation they describe has
committed, so a failure here never undoes or fails the operation itself.
Webhook deliveries are stored as rows and posted from a thread pool, with
exponential backoff between attempts.
"""

import hmac
import json
import logging
import secrets
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

import httpx
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from federation.core.config import Settings, get_settings
from federation.core.crypto import hmac_sha256_hex
from federation.core.database import SessionLocal, utcnow
from federation.models.audit_event import AuditEvent
from federation.models.oauth_client import OAuthClient
from federation.models.webhook import WebhookDelivery, WebhookEndpoint

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
DELIVERY_ID_HEADER = "X-Webhook-Id"
EVENT_HEADER = "X-Webhook-Event"


class EventType:
    """Lifecycle event names."""

    CODE_ISSUED = "authorization_code.issued"
    CODE_CONSUMED = "authorization_code.consumed"
    CODE_FAILED = "authorization_code.failed"
    TOKEN_ISSUED = "token.issued"
    TOKEN_REFRESHED = "token.refreshed"
    TOKEN_REVOKED = "token.revoked"
    TOKEN_FAILED = "token.failed"
    CONSENT_GRANTED = "consent.granted"
    SSO_TOKEN_ISSUED = "sso_token.issued"
    SSO_TOKEN_EXCHANGED = "sso_token.exchanged"
    SSO_TOKEN_FAILED = "sso_token.failed"
    CLIENT_REGISTERED = "client.registered"
    CLIENT_UPDATED = "client.updated"
    CLIENT_DEACTIVATED = "client.deactivated"

    ALL = (
        CODE_ISSUED, CODE_CONSUMED, CODE_FAILED,
        TOKEN_ISSUED, TOKEN_REFRESHED, TOKEN_REVOKED, TOKEN_FAILED,
        CONSENT_GRANTED,
        SSO_TOKEN_ISSUED, SSO_TOKEN_EXCHANGED, SSO_TOKEN_FAILED,
        CLIENT_REGISTERED, CLIENT_UPDATED, CLIENT_DEACTIVATED,
    )


class DeliveryStatus:
    PENDING = "pending"
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    FAILED = "failed"

    # A worker may start an attempt from these.
    ATTEMPTABLE = (PENDING, QUEUED, RETRYING)
    # retry_due picks these up once next_retry_at (backoff or claim lease) has passed.
    RECLAIMABLE = (RETRYING, QUEUED, IN_FLIGHT)


def generate_webhook_secret() -> str:
    return "whsec_" + secrets.token_hex(24)


def sign_webhook_payload(body: str, secret: str, timestamp: Optional[int] = None) -> str:
    """Build the signature header value: ``t=<unix>,v1=<hex HMAC-SHA256 of "<t>.<body>">``."""
    timestamp = int(time.time()) if timestamp is None else int(timestamp)
    return f"t={timestamp},v1={hmac_sha256_hex(secret, f'{timestamp}.{body}')}"


def verify_webhook_signature(
    body: str,
    header: Optional[str],
    secret: str,
    tolerance: Optional[int] = None,
    now: Optional[int] = None,
) -> bool:
    """
    Verify a webhook signature header on the receiving side.

    Args:
        body: Raw request body exactly as received
        header: Value of the X-Webhook-Signature header
        secret: Endpoint signing secret
        tolerance: Maximum age of the signature in seconds
        now: Current unix time, for tests

    Returns:
        True if one of the v1 signatures matches and the timestamp is fresh
    """
    if not header or not secret:
        return False
    tolerance = get_settings().webhook_signature_tolerance_seconds if tolerance is None else tolerance

    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if timestamp is None or not signatures:
        return False
    try:
        timestamp = int(timestamp)
    except ValueError:
        return False

    now = int(time.time()) if now is None else now
    if abs(now - timestamp) > tolerance:
        return False

    expected = hmac_sha256_hex(secret, f"{timestamp}.{body}")
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)


class WebhookDispatcher:
    """Posts stored webhook deliveries and schedules retries."""

    def __init__(
        self,
        session_factory=None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.BaseTransport] = None,
        executor: Optional[Executor] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or SessionLocal
        self.transport = transport
        self._executor = executor

    @property
    def executor(self) -> Executor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.settings.webhook_worker_threads,
                thread_name_prefix="webhook",
            )
        return self._executor

    def backoff_seconds(self, attempts: int) -> int:
        delay = self.settings.webhook_backoff_base_seconds * (2 ** max(attempts - 1, 0))
        return min(delay, self.settings.webhook_backoff_max_seconds)

    def enqueue(self, delivery_ids: Iterable[int]):
        for delivery_id in delivery_ids:
            self.executor.submit(self._deliver_logged, delivery_id)

    def _deliver_logged(self, delivery_id: int):
        try:
            self.deliver(delivery_id)
        except Exception:
            logger.exception(f"Webhook delivery {delivery_id} crashed")

    def _claim_for_attempt(self, db: Session, delivery_id: int) -> bool:
        result = db.execute(
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == delivery_id,
                WebhookDelivery.status.in_(DeliveryStatus.ATTEMPTABLE),
            )
            .values(
                status=DeliveryStatus.IN_FLIGHT,
                next_retry_at=utcnow() + timedelta(seconds=self.settings.webhook_claim_lease_seconds),
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    def deliver(self, delivery_id: int) -> Optional[str]:
        """
        Attempt one delivery.

        The delivery is claimed with a conditional UPDATE first, so a delivery
        that was queued twice is only posted once.

        Returns:
            The delivery status after the attempt, or None if the delivery does not exist
        """
        db = self.session_factory()
        try:
            claimed = self._claim_for_attempt(db, delivery_id)
            delivery = db.query(WebhookDelivery).filter(WebhookDelivery.id == delivery_id).first()
            if delivery is None:
                logger.warning(f"Webhook delivery {delivery_id} not found")
                return None
            if not claimed:
                logger.debug(f"Webhook delivery {delivery_id} is {delivery.status}, skipping attempt")
                return delivery.status

            endpoint = delivery.endpoint
            now = utcnow()
            if endpoint is None or not endpoint.is_active:
                delivery.status = DeliveryStatus.FAILED
                delivery.last_error = "Endpoint is inactive"
                delivery.next_retry_at = None
                db.commit()
                return delivery.status

            body = delivery.payload
            headers = {
                "Content-Type": "application/json",
                SIGNATURE_HEADER: sign_webhook_payload(body, endpoint.secret),
                DELIVERY_ID_HEADER: str(delivery.id),
                EVENT_HEADER: delivery.event_type,
            }

            delivery.attempts += 1
            error = None
            try:
                with httpx.Client(timeout=self.settings.webhook_timeout_seconds, transport=self.transport) as client:
                    response = client.post(endpoint.url, content=body, headers=headers)
                delivery.response_status = response.status_code
                if not response.is_success:
                    error = f"HTTP {response.status_code}"
            except httpx.HTTPError as e:
                error = f"{type(e).__name__}: {e}"

            endpoint.last_triggered_at = now
            if error is None:
                delivery.status = DeliveryStatus.DELIVERED
                delivery.delivered_at = now
                delivery.next_retry_at = None
                delivery.last_error = None
                endpoint.last_status = "success"
                endpoint.failure_count = 0
                logger.info(f"Delivered webhook {delivery.id} ({delivery.event_type}) to {endpoint.url}")
            else:
                delivery.last_error = error
                endpoint.last_status = "failed"
                endpoint.failure_count = (endpoint.failure_count or 0) + 1
                if delivery.attempts >= self.settings.webhook_max_attempts:
                    delivery.status = DeliveryStatus.FAILED
                    delivery.next_retry_at = None
                    logger.error(f"Webhook {delivery.id} to {endpoint.url} failed permanently after {delivery.attempts} attempts: {error}")
                else:
                    delay = self.backoff_seconds(delivery.attempts)
                    delivery.status = DeliveryStatus.RETRYING
                    delivery.next_retry_at = now + timedelta(seconds=delay)
                    logger.warning(f"Webhook {delivery.id} to {endpoint.url} failed ({error}), retrying in {delay}s")

            db.commit()
            return delivery.status
        finally:
            db.close()

    def retry_due(self) -> int:
        """
        Re-enqueue deliveries whose backoff has elapsed. Returns how many were enqueued.

        Each delivery is claimed before it is queued and the claim carries a
        lease, so repeated calls never queue the same delivery twice. Claims
        left behind by a crashed worker are picked up again once their lease
        runs out.
        """
        now = utcnow()
        lease_until = now + timedelta(seconds=self.settings.webhook_claim_lease_seconds)
        claimed = []
        db = self.session_factory()
        try:
            rows = db.query(WebhookDelivery.id).filter(
                WebhookDelivery.status.in_(DeliveryStatus.RECLAIMABLE),
                WebhookDelivery.next_retry_at <= now,
            ).order_by(WebhookDelivery.next_retry_at).all()
            for row in rows:
                result = db.execute(
                    update(WebhookDelivery)
                    .where(
                        WebhookDelivery.id == row.id,
                        WebhookDelivery.status.in_(DeliveryStatus.RECLAIMABLE),
                        WebhookDelivery.next_retry_at <= now,
                    )
                    .values(status=DeliveryStatus.QUEUED, next_retry_at=lease_until)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed.append(row.id)
            db.commit()
        finally:
            db.close()
        if claimed:
            logger.info(f"Retrying {len(claimed)} webhook deliveries")
            self.enqueue(claimed)
        return len(claimed)

    def shutdown(self, wait: bool = True):
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None


class EventLogger:
    """Appends audit events, maintains client counters and fans events out to webhooks."""

    def __init__(self, db: Session, settings: Optional[Settings] = None, dispatcher: Optional[WebhookDispatcher] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.dispatcher = dispatcher

    def _subscribed_endpoints(self, event_type: str, client_id: Optional[str]) -> List[WebhookEndpoint]:
        query = self.db.query(WebhookEndpoint).filter(WebhookEndpoint.is_active == True)  # noqa: E712
        if client_id:
            query = query.filter(or_(WebhookEndpoint.client_id == client_id, WebhookEndpoint.client_id.is_(None)))
        else:
            query = query.filter(WebhookEndpoint.client_id.is_(None))
        return [endpoint for endpoint in query.all() if endpoint.subscribes_to(event_type)]

    def record(
        self,
        event_type: str,
        client_id: Optional[str] = None,
        user_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> Optional[AuditEvent]:
        """
        Record an event. Never raises: failures are logged and the event is dropped.

        Returns:
            The stored AuditEvent, or None if recording failed
        """
        try:
            now = utcnow()
            data = dict(data or {})
            event = AuditEvent(
                event_type=event_type,
                client_id=client_id,
                user_id=str(user_id) if user_id is not None else None,
                success=success,
                details=json.dumps(data, default=str) if data else None,
            )
            self.db.add(event)

            if event_type == EventType.TOKEN_ISSUED and success and client_id:
                self.db.execute(
                    update(OAuthClient)
                    .where(OAuthClient.client_id == client_id)
                    .values(tokens_issued=OAuthClient.tokens_issued + 1, last_token_issued_at=now)
                    .execution_options(synchronize_session=False)
                )

            deliveries = []
            for endpoint in self._subscribed_endpoints(event_type, client_id):
                payload = {
                    "event": event_type,
                    "timestamp": now.isoformat(),
                    "data": {"client_id": client_id, "user_id": event.user_id, "success": success, **data},
                }
                delivery = WebhookDelivery(
                    endpoint_id=endpoint.id,
                    event_type=event_type,
                    payload=json.dumps(payload, default=str),
                    status=DeliveryStatus.PENDING,
                )
                self.db.add(delivery)
                deliveries.append(delivery)

            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception(f"Failed to record event {event_type} for client {client_id}")
            return None

        log = logger.info if success else logger.warning
        log(f"Event {event_type}: client={client_id} user={user_id} success={success}")

        if deliveries and self.dispatcher is not None:
            try:
                self.dispatcher.enqueue([delivery.id for delivery in deliveries])
            except Exception:
                logger.exception(f"Failed to enqueue webhooks for event {event_type}")
        return event
