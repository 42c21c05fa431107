"""
Unit tests for the expiry reaper.
"""

import asyncio
import pytest
from datetime import timedelta
from unittest.mock import patch

from federation.core.database import utcnow
from federation.core.reaper import ExpiryReaper
from federation.models.authorization_code import AuthorizationCode
from federation.models.oauth_token import OAuthToken
from federation.models.sso_token import SSOToken


def make_code(db_session, code, expires_delta):
    db_session.add(AuthorizationCode(
        code=code,
        client_id="acme",
        user_id="user-1",
        redirect_uri="https://acme.example.com/cb",
        expires_at=utcnow() + expires_delta,
    ))


def make_sso_token(db_session, token, expires_delta):
    db_session.add(SSOToken(
        token=token,
        user_id="user-1",
        source_app="wallet",
        target_app="merchant",
        expires_at=utcnow() + expires_delta,
    ))


def make_token_row(db_session, digest, expires_delta, refresh_delta=None, revoked_delta=None):
    now = utcnow()
    db_session.add(OAuthToken(
        access_token_hash=digest,
        refresh_token_hash=None,
        client_id="acme",
        user_id="user-1",
        expires_at=now + expires_delta,
        refresh_expires_at=now + refresh_delta if refresh_delta is not None else None,
        revoked_at=now + revoked_delta if revoked_delta is not None else None,
    ))


@pytest.mark.unit
class TestExpiryReaper:
    """Test batched removal of expired rows."""

    def test_sweep_removes_rows_past_grace(self, db_session, session_factory, test_settings):
        grace = timedelta(minutes=test_settings.reaper_grace_minutes)
        for index in range(5):
            make_code(db_session, f"old-{index}", -grace - timedelta(minutes=1))
        make_code(db_session, "recently-expired", -timedelta(minutes=1))
        make_code(db_session, "live", timedelta(minutes=5))
        make_sso_token(db_session, "old-sso", -grace - timedelta(minutes=1))
        make_sso_token(db_session, "live-sso", timedelta(minutes=5))
        db_session.commit()

        stats = ExpiryReaper(session_factory, test_settings).sweep(db_session)

        assert stats["authorization_codes"] == 5
        assert stats["sso_tokens"] == 1
        remaining = sorted(code for (code,) in db_session.query(AuthorizationCode.code).all())
        assert remaining == ["live", "recently-expired"]
        assert [t for (t,) in db_session.query(SSOToken.token).all()] == ["live-sso"]

    def test_token_rows_kept_for_retention_window(self, db_session, session_factory, test_settings):
        past_retention = -timedelta(days=test_settings.token_audit_retention_days, hours=1)
        make_token_row(db_session, "a" * 64, past_retention)
        make_token_row(db_session, "b" * 64, past_retention, refresh_delta=timedelta(days=1))
        make_token_row(db_session, "c" * 64, -timedelta(hours=1))
        make_token_row(db_session, "d" * 64, past_retention, revoked_delta=-timedelta(hours=1))
        db_session.commit()

        stats = ExpiryReaper(session_factory, test_settings).sweep(db_session)

        assert stats["oauth_tokens"] == 1
        remaining = sorted(h[0] for (h,) in db_session.query(OAuthToken.access_token_hash).all())
        assert remaining == ["b", "c", "d"]

    def test_sweep_with_own_session(self, db_session, session_factory, test_settings):
        make_code(db_session, "old", -timedelta(days=1))
        db_session.commit()

        stats = ExpiryReaper(session_factory, test_settings).sweep()

        assert stats == {"authorization_codes": 1, "sso_tokens": 0, "oauth_tokens": 0}

    @pytest.mark.asyncio
    async def test_run_forever_survives_errors(self, session_factory, test_settings):
        reaper = ExpiryReaper(session_factory, test_settings)
        calls = []

        def failing_sweep():
            calls.append(1)
            raise RuntimeError("database unavailable")

        with patch.object(reaper, "sweep", side_effect=failing_sweep):
            task = asyncio.create_task(reaper.run_forever(interval=0.01))
            await asyncio.sleep(0.2)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert len(calls) >= 2
