"""
Access and refresh token lifecycle.

Tokens are opaque random strings handed to the client once. Only their
SHA-256 digests are stored. One row holds the access/refresh pair of a single
issuance; rotating the refresh token revokes the whole row and inserts a new
one in the same transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from federation.core.config import Settings, get_settings
from federation.core.crypto import TokenHasher, generate_opaque_token
from federation.core.database import ensure_utc, utcnow
from federation.core.errors import InvalidGrant, InvalidScope, InvalidToken, TokenExpired, TokenRevoked
from federation.core.scopes import Scope
from federation.models.oauth_token import OAuthToken

logger = logging.getLogger(__name__)


@dataclass
class IssuedTokens:
    access_token: str
    expires_at: datetime
    expires_in: int
    scope: Scope
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    user_id: Optional[str] = None

    def to_response(self) -> dict:
        """Token endpoint response body (RFC 6749 section 5.1)."""
        body = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": str(self.scope),
        }
        if self.refresh_token:
            body["refresh_token"] = self.refresh_token
        return body


@dataclass
class AccessTokenInfo:
    user_id: str
    client_id: str
    scope: Scope
    expires_at: datetime


class TokenManager:
    """Issues, validates, rotates and revokes tokens."""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def _build_row(self, user_id: str, client_id: str, scope: Scope, with_refresh: bool):
        now = utcnow()
        access_token = generate_opaque_token(self.settings.oauth2_token_length)
        refresh_token = generate_opaque_token(self.settings.oauth2_token_length) if with_refresh else None
        expires_at = now + timedelta(minutes=self.settings.oauth2_access_token_expire_minutes)

        row = OAuthToken(
            access_token_hash=TokenHasher.hash_token(access_token),
            refresh_token_hash=TokenHasher.hash_token(refresh_token) if refresh_token else None,
            client_id=client_id,
            user_id=str(user_id),
            expires_at=expires_at,
            refresh_expires_at=(
                now + timedelta(days=self.settings.oauth2_refresh_token_expire_days) if refresh_token else None
            ),
        )
        row.set_scopes(scope)
        issued = IssuedTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            expires_in=self.settings.oauth2_access_token_expire_minutes * 60,
            scope=scope,
            user_id=str(user_id),
        )
        return row, issued

    def issue_from_code(self, user_id: str, client, scope, commit: bool = True) -> IssuedTokens:
        """
        Mint a token pair for a consumed authorization code.

        Public clients get no refresh token unless
        ``oauth2_public_client_refresh_tokens`` is enabled. With ``commit=False``
        the row is only flushed, so the caller can commit it together with
        the code consumption.
        """
        with_refresh = client.is_confidential or self.settings.oauth2_public_client_refresh_tokens
        row, issued = self._build_row(user_id, client.client_id, Scope.parse(scope), with_refresh)
        self.db.add(row)
        if commit:
            self.db.commit()
        else:
            self.db.flush()

        logger.info(f"Issued tokens for client {client.client_id}, user {user_id}, refresh={with_refresh}")
        return issued

    def _find_by_hash(self, token: str) -> Optional[OAuthToken]:
        if not token:
            return None
        digest = TokenHasher.hash_token(token)
        return self.db.query(OAuthToken).filter(
            or_(OAuthToken.access_token_hash == digest, OAuthToken.refresh_token_hash == digest)
        ).first()

    def validate_access_token(self, token: str) -> AccessTokenInfo:
        """
        Resolve an access token.

        Raises:
            InvalidToken: Unknown token (refresh tokens are not access tokens)
            TokenRevoked: The token, or the pair it belongs to, was revoked
            TokenExpired: The access token is past its expiry
        """
        if not token:
            raise InvalidToken()
        row = self.db.query(OAuthToken).filter(
            OAuthToken.access_token_hash == TokenHasher.hash_token(token)
        ).first()
        if row is None:
            raise InvalidToken()
        if row.revoked_at is not None:
            raise TokenRevoked()
        if ensure_utc(row.expires_at) <= utcnow():
            raise TokenExpired()
        return AccessTokenInfo(
            user_id=row.user_id,
            client_id=row.client_id,
            scope=Scope(row.get_scopes()),
            expires_at=ensure_utc(row.expires_at),
        )

    def rotate_refresh(self, refresh_token: str, client_id: Optional[str] = None, scope=None) -> IssuedTokens:
        """
        Exchange a refresh token for a new pair, revoking the old pair.

        The conditional revoke and the insert of the new row commit together;
        of several concurrent rotations of the same token exactly one wins.

        Raises:
            InvalidGrant: Unknown, revoked, already rotated, expired or client-mismatched token
            InvalidScope: Requested scope is wider than the original grant
        """
        if not refresh_token:
            raise InvalidGrant("refresh_token is required")
        row = self.db.query(OAuthToken).filter(
            OAuthToken.refresh_token_hash == TokenHasher.hash_token(refresh_token)
        ).first()
        if row is None:
            raise InvalidGrant("Invalid refresh token")
        if row.revoked_at is not None:
            logger.warning(f"Reuse of revoked refresh token for client {row.client_id}, user {row.user_id}")
            raise InvalidGrant("Refresh token has been revoked")

        now = utcnow()
        if row.refresh_expires_at is None or ensure_utc(row.refresh_expires_at) <= now:
            raise InvalidGrant("Refresh token has expired")
        if client_id is not None and row.client_id != client_id:
            raise InvalidGrant("Refresh token was issued to another client")

        original = Scope(row.get_scopes())
        granted = original
        if scope:
            granted = Scope.parse(scope)
            if not granted.issubset(original):
                raise InvalidScope("Requested scope exceeds the original grant")

        result = self.db.execute(
            update(OAuthToken)
            .where(
                OAuthToken.id == row.id,
                OAuthToken.revoked_at.is_(None),
                OAuthToken.refresh_expires_at > now,
            )
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            logger.warning(f"Lost race rotating refresh token for client {row.client_id}")
            raise InvalidGrant("Refresh token has already been used")

        new_row, issued = self._build_row(row.user_id, row.client_id, granted, with_refresh=True)
        self.db.add(new_row)
        self.db.commit()

        logger.info(f"Rotated refresh token for client {new_row.client_id}, user {new_row.user_id}")
        return issued

    def revoke(self, token: str, client_id: Optional[str] = None) -> bool:
        """
        Revoke the pair an access or refresh token belongs to.

        Idempotent; unknown tokens and tokens of other clients are a no-op.

        Returns:
            True if a matching row was found
        """
        row = self._find_by_hash(token)
        if row is None:
            return False
        if client_id is not None and row.client_id != client_id:
            logger.warning(f"Client {client_id} tried to revoke a token issued to {row.client_id}")
            return False
        if row.revoked_at is None:
            self.db.execute(
                update(OAuthToken)
                .where(OAuthToken.id == row.id, OAuthToken.revoked_at.is_(None))
                .values(revoked_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            logger.info(f"Revoked tokens for client {row.client_id}, user {row.user_id}")
        return True

    def revoke_for_user_client(self, user_id: str, client_id: str) -> int:
        """Revoke every live pair a user holds for a client."""
        result = self.db.execute(
            update(OAuthToken)
            .where(
                OAuthToken.user_id == user_id,
                OAuthToken.client_id == client_id,
                OAuthToken.revoked_at.is_(None),
            )
            .values(revoked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount

    def introspect(self, token: str) -> dict:
        """RFC 7662 introspection. Anything not currently usable is reported as inactive."""
        row = self._find_by_hash(token)
        if row is None or row.revoked_at is not None:
            return {"active": False}

        digest = TokenHasher.hash_token(token)
        if row.access_token_hash == digest:
            token_type, expires_at = "access_token", row.expires_at
        else:
            token_type, expires_at = "refresh_token", row.refresh_expires_at

        expires_at = ensure_utc(expires_at)
        if expires_at is None or expires_at <= utcnow():
            return {"active": False}

        body = {
            "active": True,
            "scope": " ".join(row.get_scopes()),
            "client_id": row.client_id,
            "sub": row.user_id,
            "token_type": token_type,
            "exp": int(expires_at.timestamp()),
        }
        issued_at = ensure_utc(row.created_at)
        if issued_at is not None:
            body["iat"] = int(issued_at.timestamp())
        return body
