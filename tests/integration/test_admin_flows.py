"""
Integration tests for admin endpoints.

Tests complete end-to-end admin workflows including:
- Client registration, update, deactivation and secret rotation
- Webhook registration and delivery
- Consent revocation
- Maintenance sweeps
"""

import base64
import pytest
from datetime import timedelta
from fastapi.testclient import TestClient

from federation.core.consent import ConsentStore
from federation.core.database import utcnow
from federation.core.tokens import TokenManager
from federation.models.authorization_code import AuthorizationCode


def basic_auth(client_id, secret):
    raw = f"{client_id}:{secret}".encode("utf-8")
    return {"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"}


# ==================== CLIENT MANAGEMENT ====================

@pytest.mark.integration
class TestClientManagement:
    """Test client administration endpoints."""

    def test_admin_key_required(self, client: TestClient):
        assert client.get("/admin/clients").status_code == 401
        assert client.get("/admin/clients", headers={"X-Admin-Key": "wrong"}).status_code == 401

    def test_register_and_fetch_client(self, client: TestClient, admin_headers):
        response = client.post("/admin/clients", json={
            "name": "Peeap Schools",
            "redirect_uris": ["https://*.gov.school.edu.sl/peeap/callback"],
            "scopes": ["profile", "school:read"],
            "client_id": "peeap",
        }, headers=admin_headers)

        assert response.status_code == 201
        data = response.json()
        assert data["client_id"] == "peeap"
        assert data["client_secret"]
        assert data["is_confidential"] is True

        fetched = client.get("/admin/clients/peeap", headers=admin_headers)
        assert fetched.status_code == 200
        assert "client_secret" not in fetched.json()
        assert fetched.json()["redirect_uris"] == ["https://*.gov.school.edu.sl/peeap/callback"]

    def test_register_rejects_unsafe_redirect(self, client: TestClient, admin_headers):
        response = client.post("/admin/clients", json={
            "name": "Sneaky",
            "redirect_uris": ["https://*.com/cb"],
        }, headers=admin_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_list_update_and_deactivate(self, client: TestClient, admin_headers, acme_client):
        updated = client.put("/admin/clients/acme", json={"name": "Acme Academy", "scopes": ["profile"]},
                             headers=admin_headers)
        assert updated.status_code == 200
        assert updated.json()["name"] == "Acme Academy"
        assert updated.json()["scopes"] == ["profile"]

        listed = client.get("/admin/clients", headers=admin_headers).json()["clients"]
        assert [c["client_id"] for c in listed] == ["acme"]

        assert client.delete("/admin/clients/acme", headers=admin_headers).status_code == 200
        assert client.get("/admin/clients", headers=admin_headers).json()["clients"] == []
        inactive = client.get("/admin/clients", params={"include_inactive": True}, headers=admin_headers).json()
        assert inactive["clients"][0]["is_active"] is False

    def test_unknown_client_is_404(self, client: TestClient, admin_headers):
        assert client.get("/admin/clients/ghost", headers=admin_headers).status_code == 404
        assert client.put("/admin/clients/ghost", json={"name": "x"}, headers=admin_headers).status_code == 404
        assert client.delete("/admin/clients/ghost", headers=admin_headers).status_code == 404
        assert client.post("/admin/clients/ghost/rotate-secret", headers=admin_headers).status_code == 404

    def test_rotate_secret(self, client: TestClient, admin_headers, acme_client):
        _, old_secret = acme_client

        response = client.post("/admin/clients/acme/rotate-secret", headers=admin_headers)

        assert response.status_code == 200
        new_secret = response.json()["client_secret"]
        assert new_secret != old_secret
        old = client.post("/oauth/introspect", data={"token": "x"}, headers=basic_auth("acme", old_secret))
        new = client.post("/oauth/introspect", data={"token": "x"}, headers=basic_auth("acme", new_secret))
        assert old.status_code == 401
        assert new.status_code == 200
        assert new.json() == {"active": False}


# ==================== WEBHOOKS ====================

@pytest.mark.integration
class TestWebhookManagement:
    """Test webhook registration and delivery through the API."""

    def test_client_webhook_receives_signed_events(self, client: TestClient, admin_headers, acme_client,
                                                   webhook_receiver):
        created = client.post("/admin/clients/acme/webhooks", json={
            "url": "https://hooks.acme.example.com/federation",
            "events": ["client.updated"],
        }, headers=admin_headers)
        assert created.status_code == 201
        secret = created.json()["secret"]
        assert secret.startswith("whsec_")

        client.put("/admin/clients/acme", json={"name": "Acme 2"}, headers=admin_headers)

        from federation.core.events import verify_webhook_signature

        assert webhook_receiver.events == ["client.updated"]
        request = webhook_receiver.requests[0]
        assert verify_webhook_signature(
            request.content.decode("utf-8"), request.headers["X-Webhook-Signature"], secret, tolerance=60
        )

        listed = client.get("/admin/clients/acme/webhooks", headers=admin_headers).json()
        assert len(listed) == 1
        assert listed[0]["last_status"] == "success"
        assert "secret" not in listed[0]

    def test_rejects_unknown_event_types(self, client: TestClient, admin_headers, acme_client):
        response = client.post("/admin/clients/acme/webhooks", json={
            "url": "https://hooks.acme.example.com/federation",
            "events": ["user.deleted"],
        }, headers=admin_headers)
        assert response.status_code == 422

    def test_webhook_for_unknown_client(self, client: TestClient, admin_headers):
        response = client.post("/admin/clients/ghost/webhooks", json={"url": "https://h.example.com"},
                               headers=admin_headers)
        assert response.status_code == 404

    def test_deactivated_webhook_stops_receiving(self, client: TestClient, admin_headers, acme_client,
                                                 webhook_receiver):
        webhook_id = client.post("/admin/webhooks", json={"url": "https://h.example.com/all"},
                                 headers=admin_headers).json()["id"]

        assert client.delete(f"/admin/webhooks/{webhook_id}", headers=admin_headers).status_code == 200
        client.put("/admin/clients/acme", json={"name": "Quiet"}, headers=admin_headers)

        assert webhook_receiver.requests == []
        assert client.delete("/admin/webhooks/999", headers=admin_headers).status_code == 404


# ==================== CONSENTS AND MAINTENANCE ====================

@pytest.mark.integration
class TestConsentAndMaintenance:
    """Test consent revocation and on-demand sweeps."""

    def test_revoke_consent_revokes_tokens(self, client: TestClient, admin_headers, acme_client,
                                           db_session, test_settings):
        record, _ = acme_client
        ConsentStore(db_session, test_settings).grant("user-1", "acme", ["profile", "email"])
        manager = TokenManager(db_session, test_settings)
        issued = manager.issue_from_code("user-1", record, "profile")

        partial = client.delete("/admin/consents/user-1/acme", params={"scope": "email", "revoke_tokens": False},
                                headers=admin_headers)
        assert partial.status_code == 200
        assert list(ConsentStore(db_session, test_settings).get_consented_scopes("user-1", "acme")) == ["profile"]
        assert manager.introspect(issued.access_token)["active"] is True

        full = client.delete("/admin/consents/user-1/acme", headers=admin_headers)
        assert full.status_code == 200
        assert "1 token(s) revoked" in full.json()["message"]
        assert manager.introspect(issued.access_token) == {"active": False}

        assert client.delete("/admin/consents/user-1/acme", headers=admin_headers).status_code == 404

    def test_reap_endpoint(self, client: TestClient, admin_headers, acme_client, db_session):
        db_session.add(AuthorizationCode(
            code="stale",
            client_id="acme",
            user_id="user-1",
            redirect_uri="https://acme.example.com/cb",
            expires_at=utcnow() - timedelta(days=1),
        ))
        db_session.commit()

        response = client.post("/admin/maintenance/reap", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["deleted"]["authorization_codes"] == 1


# ==================== HEALTH ====================

@pytest.mark.integration
class TestHealth:
    """Test health endpoints and response headers."""

    def test_health(self, client: TestClient):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["x-content-type-options"] == "nosniff"

    def test_detailed_health(self, client: TestClient):
        response = client.get("/health/detailed")

        assert response.status_code == 200
        assert response.json()["checks"]["database"] == "healthy"
