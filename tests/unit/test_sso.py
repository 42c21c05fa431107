"""
Unit tests for the first-party SSO relay.
"""

import threading
import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

from sqlalchemy import update

from federation.core.database import utcnow
from federation.core.errors import CodeAlreadyUsed, CodeExpired, InvalidGrant, InvalidRequest
from federation.core.sso import SSORelay, check_redirect_path
from federation.models.sso_token import SSOToken


@pytest.fixture
def relay(db_session, test_settings):
    return SSORelay(db_session, test_settings)


@pytest.mark.unit
class TestSSOIssue:
    """Test issuing handoff tokens."""

    def test_issue_builds_callback_url(self, relay, test_settings):
        issued = relay.issue("user-1", "wallet", "merchant", "/dashboard?tab=sales")

        parts = urlsplit(issued.redirect_url)
        assert f"{parts.scheme}://{parts.netloc}" == "https://merchant.example.com"
        assert parts.path == test_settings.sso_callback_path
        query = parse_qs(parts.query)
        assert query["token"] == [issued.token]
        assert query["redirect"] == ["/dashboard?tab=sales"]

    def test_token_expires_after_configured_minutes(self, relay, test_settings):
        before = utcnow()
        issued = relay.issue("user-1", "wallet", "merchant")
        assert issued.expires_at - before <= timedelta(minutes=test_settings.sso_token_expire_minutes, seconds=1)

    @pytest.mark.parametrize("source, target", [
        ("wallet", "unknown"),
        ("unknown", "merchant"),
        ("wallet", "wallet"),
    ])
    def test_rejects_unknown_or_identical_apps(self, relay, source, target):
        with pytest.raises(InvalidRequest):
            relay.issue("user-1", source, target)

    def test_requires_user(self, relay):
        with pytest.raises(InvalidRequest):
            relay.issue("", "wallet", "merchant")

    @pytest.mark.parametrize("path", [
        "https://evil.com/",
        "//evil.com/path",
        "dashboard",
        "/\\evil.com",
    ])
    def test_rejects_unsafe_redirect_paths(self, path):
        with pytest.raises(InvalidRequest):
            check_redirect_path(path)

    def test_defaults_redirect_path(self):
        assert check_redirect_path(None) == "/"
        assert check_redirect_path("/orders/42") == "/orders/42"


@pytest.mark.unit
class TestSSOExchange:
    """Test single-use redemption of handoff tokens."""

    def test_exchange_once(self, relay):
        issued = relay.issue("user-1", "wallet", "merchant", "/home", scope="profile")

        result = relay.exchange(issued.token, target_app="merchant")

        assert result.user_id == "user-1"
        assert result.source_app == "wallet"
        assert result.target_app == "merchant"
        assert result.redirect_path == "/home"
        assert str(result.scope) == "profile"
        with pytest.raises(CodeAlreadyUsed):
            relay.exchange(issued.token)

    def test_exchange_for_wrong_app(self, relay):
        issued = relay.issue("user-1", "wallet", "merchant")

        with pytest.raises(InvalidGrant):
            relay.exchange(issued.token, target_app="wallet")
        # The mismatch did not use up the token
        assert relay.exchange(issued.token, target_app="merchant").user_id == "user-1"

    def test_expired_token(self, relay, db_session):
        issued = relay.issue("user-1", "wallet", "merchant")
        db_session.execute(update(SSOToken).values(expires_at=utcnow() - timedelta(seconds=1)))
        db_session.commit()

        with pytest.raises(CodeExpired):
            relay.exchange(issued.token)

    def test_unknown_token(self, relay):
        with pytest.raises(InvalidGrant):
            relay.exchange("nope")
        with pytest.raises(InvalidRequest):
            relay.exchange("")


@pytest.mark.concurrency
class TestConcurrentExchange:
    """Test that racing exchanges of one SSO token succeed exactly once."""

    def test_exactly_one_winner(self, file_session_factory, test_settings):
        setup = file_session_factory()
        token = SSORelay(setup, test_settings).issue("user-1", "wallet", "merchant", "/orders").token
        setup.close()

        workers = 8
        barrier = threading.Barrier(workers)

        def redeem():
            session = file_session_factory()
            try:
                relay = SSORelay(session, test_settings)
                barrier.wait()
                try:
                    relay.exchange(token, "merchant")
                    return "ok"
                except CodeAlreadyUsed:
                    return "used"
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = [future.result() for future in [pool.submit(redeem) for _ in range(workers)]]

        assert results.count("ok") == 1
        assert results.count("used") == workers - 1

        check = file_session_factory()
        assert check.query(SSOToken).filter(SSOToken.token == token).one().used_at is not None
        check.close()
