"""
Unit tests for event logging, webhook signing and webhook delivery.
"""

import json
import pytest
from datetime import timedelta

import httpx
from sqlalchemy import update

from federation.core.database import ensure_utc, utcnow
from federation.core.events import (
    DeliveryStatus,
    EventLogger,
    EventType,
    WebhookDispatcher,
    generate_webhook_secret,
    sign_webhook_payload,
    verify_webhook_signature,
)
from federation.models.audit_event import AuditEvent
from federation.models.oauth_client import OAuthClient
from federation.models.webhook import WebhookDelivery, WebhookEndpoint


def add_endpoint(db_session, client_id=None, events=None, url="https://hooks.example.com/federation", secret="whsec_test"):
    endpoint = WebhookEndpoint(client_id=client_id, url=url, secret=secret, is_active=True)
    endpoint.set_events(events or ["*"])
    db_session.add(endpoint)
    db_session.commit()
    return endpoint


# ==================== SIGNATURES ====================

@pytest.mark.unit
class TestWebhookSignatures:
    """Test HMAC signing of webhook payloads."""

    def test_sign_and_verify(self):
        body = json.dumps({"event": "token.issued"})
        header = sign_webhook_payload(body, "whsec_abc", timestamp=1700000000)

        assert header.startswith("t=1700000000,v1=")
        assert verify_webhook_signature(body, header, "whsec_abc", tolerance=300, now=1700000100) is True

    def test_tampered_body_or_wrong_secret(self):
        header = sign_webhook_payload("{}", "whsec_abc", timestamp=1700000000)

        assert verify_webhook_signature('{"x":1}', header, "whsec_abc", tolerance=300, now=1700000000) is False
        assert verify_webhook_signature("{}", header, "whsec_other", tolerance=300, now=1700000000) is False

    def test_stale_signature(self):
        header = sign_webhook_payload("{}", "whsec_abc", timestamp=1700000000)
        assert verify_webhook_signature("{}", header, "whsec_abc", tolerance=300, now=1700000301) is False

    @pytest.mark.parametrize("header", [None, "", "garbage", "t=abc,v1=00", "t=1700000000"])
    def test_malformed_headers(self, header):
        assert verify_webhook_signature("{}", header, "whsec_abc", tolerance=300, now=1700000000) is False

    def test_generated_secrets(self):
        secret = generate_webhook_secret()
        assert secret.startswith("whsec_")
        assert secret != generate_webhook_secret()


# ==================== EVENT LOGGER ====================

@pytest.mark.unit
class TestEventLogger:
    """Test audit events, counters and webhook fan-out."""

    def test_record_writes_audit_event(self, event_logger, db_session):
        event = event_logger.record(EventType.CODE_ISSUED, client_id="acme", user_id=7, data={"scope": "profile"})

        stored = db_session.query(AuditEvent).one()
        assert event is not None
        assert stored.event_type == "authorization_code.issued"
        assert stored.user_id == "7"
        assert stored.get_details() == {"scope": "profile"}

    def test_token_issued_increments_client_counter(self, event_logger, db_session, acme_client):
        event_logger.record(EventType.TOKEN_ISSUED, client_id="acme", user_id="user-1")
        event_logger.record(EventType.TOKEN_ISSUED, client_id="acme", user_id="user-1")
        event_logger.record(EventType.TOKEN_ISSUED, client_id="acme", success=False)

        client = db_session.query(OAuthClient).filter(OAuthClient.client_id == "acme").one()
        db_session.refresh(client)
        assert client.tokens_issued == 2
        assert client.last_token_issued_at is not None

    def test_fans_out_to_subscribed_endpoints(self, event_logger, db_session, webhook_receiver, acme_client):
        add_endpoint(db_session, client_id="acme", events=[EventType.TOKEN_ISSUED])
        add_endpoint(db_session, client_id=None, events=["*"], url="https://global.example.com/hook")
        add_endpoint(db_session, client_id="other", events=["*"], url="https://other.example.com/hook")
        add_endpoint(db_session, client_id="acme", events=[EventType.TOKEN_REVOKED], url="https://revoked.example.com/hook")

        event_logger.record(EventType.TOKEN_ISSUED, client_id="acme", user_id="user-1", data={"scope": "profile"})

        urls = sorted(str(request.url) for request in webhook_receiver.requests)
        assert urls == ["https://global.example.com/hook", "https://hooks.example.com/federation"]
        payload = json.loads(webhook_receiver.requests[0].content)
        assert payload["event"] == "token.issued"
        assert payload["data"]["client_id"] == "acme"
        assert payload["data"]["scope"] == "profile"

    def test_delivered_requests_are_signed(self, event_logger, db_session, webhook_receiver):
        add_endpoint(db_session, secret="whsec_signed")

        event_logger.record(EventType.SSO_TOKEN_ISSUED, user_id="user-1")

        request = webhook_receiver.requests[0]
        body = request.content.decode("utf-8")
        assert request.headers["X-Webhook-Event"] == "sso_token.issued"
        assert verify_webhook_signature(body, request.headers["X-Webhook-Signature"], "whsec_signed", tolerance=60)

    def test_record_never_raises(self, db_session, test_settings):
        class BrokenSession:
            def add(self, obj):
                raise RuntimeError("database gone")

            def rollback(self):
                pass

        logger = EventLogger(BrokenSession(), test_settings)
        assert logger.record(EventType.CODE_ISSUED, client_id="acme") is None


# ==================== DISPATCHER ====================

@pytest.mark.unit
class TestWebhookDispatcher:
    """Test delivery attempts, backoff and retry."""

    def _delivery(self, db_session, endpoint):
        delivery = WebhookDelivery(
            endpoint_id=endpoint.id,
            event_type=EventType.TOKEN_ISSUED,
            payload=json.dumps({"event": EventType.TOKEN_ISSUED}),
            status=DeliveryStatus.PENDING,
        )
        db_session.add(delivery)
        db_session.commit()
        return delivery.id

    def _reload(self, db_session, model, row_id):
        db_session.expire_all()
        return db_session.query(model).filter(model.id == row_id).one()

    def test_backoff_is_exponential_and_capped(self, webhook_dispatcher):
        assert [webhook_dispatcher.backoff_seconds(n) for n in (1, 2, 3, 4)] == [10, 20, 40, 60]

    def test_successful_delivery(self, webhook_dispatcher, db_session):
        endpoint = add_endpoint(db_session)
        delivery_id = self._delivery(db_session, endpoint)

        assert webhook_dispatcher.deliver(delivery_id) == DeliveryStatus.DELIVERED

        delivery = self._reload(db_session, WebhookDelivery, delivery_id)
        assert delivery.attempts == 1
        assert delivery.response_status == 200
        assert delivery.delivered_at is not None
        assert self._reload(db_session, WebhookEndpoint, endpoint.id).last_status == "success"

    def test_failure_schedules_retry_then_gives_up(self, webhook_dispatcher, webhook_receiver, db_session, test_settings):
        webhook_receiver.status_code = 500
        endpoint = add_endpoint(db_session)
        delivery_id = self._delivery(db_session, endpoint)

        before = utcnow()
        assert webhook_dispatcher.deliver(delivery_id) == DeliveryStatus.RETRYING
        delivery = self._reload(db_session, WebhookDelivery, delivery_id)
        assert delivery.last_error == "HTTP 500"
        assert ensure_utc(delivery.next_retry_at) >= before + timedelta(seconds=10)

        for _ in range(test_settings.webhook_max_attempts - 1):
            status = webhook_dispatcher.deliver(delivery_id)

        assert status == DeliveryStatus.FAILED
        delivery = self._reload(db_session, WebhookDelivery, delivery_id)
        assert delivery.attempts == test_settings.webhook_max_attempts
        assert delivery.next_retry_at is None
        assert self._reload(db_session, WebhookEndpoint, endpoint.id).failure_count == test_settings.webhook_max_attempts
        assert webhook_dispatcher.deliver(delivery_id) == DeliveryStatus.FAILED
        assert len(webhook_receiver.requests) == test_settings.webhook_max_attempts

    def test_transport_errors_are_retried(self, session_factory, test_settings, db_session):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        dispatcher = WebhookDispatcher(
            session_factory=session_factory,
            settings=test_settings,
            transport=httpx.MockTransport(refuse),
        )
        delivery_id = self._delivery(db_session, add_endpoint(db_session))

        assert dispatcher.deliver(delivery_id) == DeliveryStatus.RETRYING
        assert "ConnectError" in self._reload(db_session, WebhookDelivery, delivery_id).last_error

    def test_retry_due_only_picks_elapsed_retries(self, webhook_dispatcher, webhook_receiver, db_session):
        webhook_receiver.status_code = 503
        endpoint = add_endpoint(db_session)
        due_id = self._delivery(db_session, endpoint)
        later_id = self._delivery(db_session, endpoint)
        webhook_dispatcher.deliver(due_id)
        webhook_dispatcher.deliver(later_id)
        db_session.execute(
            update(WebhookDelivery)
            .where(WebhookDelivery.id == due_id)
            .values(next_retry_at=utcnow() - timedelta(seconds=1))
        )
        db_session.commit()
        webhook_receiver.status_code = 200

        assert webhook_dispatcher.retry_due() == 1

        assert self._reload(db_session, WebhookDelivery, due_id).status == DeliveryStatus.DELIVERED
        assert self._reload(db_session, WebhookDelivery, later_id).status == DeliveryStatus.RETRYING

    def test_retry_due_queues_each_delivery_once(self, deferred_dispatcher, webhook_receiver, db_session):
        webhook_receiver.status_code = 503
        delivery_id = self._delivery(db_session, add_endpoint(db_session))
        assert deferred_dispatcher.deliver(delivery_id) == DeliveryStatus.RETRYING
        db_session.execute(
            update(WebhookDelivery)
            .where(WebhookDelivery.id == delivery_id)
            .values(next_retry_at=utcnow() - timedelta(seconds=1))
        )
        db_session.commit()
        webhook_receiver.status_code = 200

        assert deferred_dispatcher.retry_due() == 1
        assert deferred_dispatcher.retry_due() == 0
        assert self._reload(db_session, WebhookDelivery, delivery_id).status == DeliveryStatus.QUEUED

        executor = deferred_dispatcher.executor
        assert len(executor.queue) == 1
        executor.run_all()

        delivery = self._reload(db_session, WebhookDelivery, delivery_id)
        assert delivery.status == DeliveryStatus.DELIVERED
        assert delivery.attempts == 2
        assert len(webhook_receiver.requests) == 2

    def test_delivery_queued_twice_is_posted_once(self, deferred_dispatcher, webhook_receiver, db_session):
        delivery_id = self._delivery(db_session, add_endpoint(db_session))

        deferred_dispatcher.enqueue([delivery_id, delivery_id])
        deferred_dispatcher.executor.run_all()

        delivery = self._reload(db_session, WebhookDelivery, delivery_id)
        assert delivery.status == DeliveryStatus.DELIVERED
        assert delivery.attempts == 1
        assert len(webhook_receiver.requests) == 1

    def test_expired_claim_is_picked_up_again(self, webhook_dispatcher, webhook_receiver, db_session):
        delivery_id = self._delivery(db_session, add_endpoint(db_session))
        db_session.execute(
            update(WebhookDelivery)
            .where(WebhookDelivery.id == delivery_id)
            .values(status=DeliveryStatus.IN_FLIGHT, next_retry_at=utcnow() - timedelta(seconds=1))
        )
        db_session.commit()

        assert webhook_dispatcher.retry_due() == 1
        assert self._reload(db_session, WebhookDelivery, delivery_id).status == DeliveryStatus.DELIVERED
        assert len(webhook_receiver.requests) == 1

    def test_inactive_endpoint_fails_delivery(self, webhook_dispatcher, webhook_receiver, db_session):
        endpoint = add_endpoint(db_session)
        delivery_id = self._delivery(db_session, endpoint)
        endpoint.is_active = False
        db_session.commit()

        assert webhook_dispatcher.deliver(delivery_id) == DeliveryStatus.FAILED
        assert webhook_receiver.requests == []

    def test_unknown_delivery(self, webhook_dispatcher):
        assert webhook_dispatcher.deliver(12345) is None
