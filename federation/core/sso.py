"""
Internal single sign-on relay between first-party apps.

A user signed in to one first-party app (say ``wallet``) is handed to another
(say ``merchant``) with a short-lived, single-use token carried in the
redirect. There is no client secret and no consent step; both apps must be on
the configured allow-list.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode, urlsplit

from sqlalchemy import update
from sqlalchemy.orm import Session

from federation.core.config import Settings, get_settings
from federation.core.crypto import generate_opaque_token
from federation.core.database import ensure_utc, utcnow
from federation.core.errors import CodeAlreadyUsed, CodeExpired, InvalidGrant, InvalidRequest
from federation.core.scopes import Scope
from federation.models.sso_token import SSOToken

logger = logging.getLogger(__name__)


@dataclass
class IssuedSSOToken:
    token: str
    expires_at: datetime
    redirect_url: str


@dataclass
class SSOExchangeResult:
    user_id: str
    source_app: str
    target_app: str
    redirect_path: str
    scope: Scope


def check_redirect_path(redirect_path: Optional[str]) -> str:
    """Only same-origin absolute paths are accepted, never a URL or a protocol-relative path."""
    path = redirect_path or "/"
    if not path.startswith("/") or path.startswith("//") or "\\" in path:
        raise InvalidRequest("redirect_path must be an absolute path on the target app")
    parts = urlsplit(path)
    if parts.scheme or parts.netloc:
        raise InvalidRequest("redirect_path must not include a scheme or host")
    return path


class SSORelay:
    """Issues and redeems SSO handoff tokens."""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def _check_app(self, name: str, role: str) -> str:
        if name not in self.settings.sso_apps:
            raise InvalidRequest(f"Unknown {role} app: {name}")
        return self.settings.sso_apps[name].rstrip("/")

    def issue(
        self,
        user_id: str,
        source_app: str,
        target_app: str,
        redirect_path: Optional[str] = "/",
        scope=None,
    ) -> IssuedSSOToken:
        """
        Issue a handoff token from source_app to target_app.

        Raises:
            InvalidRequest: Unknown app, same source and target, or unsafe redirect_path
        """
        if not user_id:
            raise InvalidRequest("user_id is required")
        self._check_app(source_app, "source")
        target_base = self._check_app(target_app, "target")
        if source_app == target_app:
            raise InvalidRequest("source_app and target_app must differ")
        path = check_redirect_path(redirect_path)
        scope = Scope.parse(scope)

        token = generate_opaque_token(self.settings.oauth2_token_length)
        expires_at = utcnow() + timedelta(minutes=self.settings.sso_token_expire_minutes)
        self.db.add(SSOToken(
            token=token,
            user_id=str(user_id),
            source_app=source_app,
            target_app=target_app,
            scope=str(scope) or None,
            redirect_path=path,
            expires_at=expires_at,
        ))
        self.db.commit()

        query = urlencode({"token": token, "redirect": path})
        redirect_url = f"{target_base}{self.settings.sso_callback_path}?{query}"
        logger.info(f"Issued SSO token for user {user_id}: {source_app} -> {target_app}")
        return IssuedSSOToken(token=token, expires_at=expires_at, redirect_url=redirect_url)

    def exchange(self, token: str, target_app: Optional[str] = None) -> SSOExchangeResult:
        """
        Redeem a handoff token exactly once.

        Raises:
            InvalidGrant: Unknown token or the token was issued for another app
            CodeAlreadyUsed: Token already redeemed, possibly concurrently
            CodeExpired: Token past its expiry
        """
        if not token:
            raise InvalidRequest("token is required")
        record = self.db.query(SSOToken).filter(SSOToken.token == token).first()
        if record is None:
            raise InvalidGrant("Invalid SSO token")
        if record.used_at is not None:
            logger.warning(f"Replay of SSO token for user {record.user_id}")
            raise CodeAlreadyUsed("The SSO token has already been used")

        now = utcnow()
        if ensure_utc(record.expires_at) <= now:
            raise CodeExpired("The SSO token has expired")
        if target_app is not None and record.target_app != target_app:
            raise InvalidGrant("SSO token was issued for another app")

        result = self.db.execute(
            update(SSOToken)
            .where(SSOToken.id == record.id, SSOToken.used_at.is_(None), SSOToken.expires_at > now)
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            raise CodeAlreadyUsed("The SSO token has already been used")

        logger.info(f"Exchanged SSO token for user {record.user_id}: {record.source_app} -> {record.target_app}")
        return SSOExchangeResult(
            user_id=record.user_id,
            source_app=record.source_app,
            target_app=record.target_app,
            redirect_path=record.redirect_path or "/",
            scope=Scope.parse(record.scope),
        )
