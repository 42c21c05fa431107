"""
Authorization code issuance and single-use consumption.

A code moves from ISSUED to CONSUMED exactly once. Consumption is a single
conditional UPDATE, so when several requests race to redeem the same code
exactly one of them sees an affected row.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from federation.core.clients import ClientRegistry
from federation.core.config import Settings, get_settings
from federation.core.crypto import PKCEHandler, SUPPORTED_PKCE_METHODS, generate_opaque_token
from federation.core.database import ensure_utc, utcnow
from federation.core.errors import (
    CodeAlreadyUsed,
    CodeExpired,
    InvalidGrant,
    InvalidRedirectURI,
    InvalidRequest,
    PkceMismatch,
    PkceRequired,
)
from federation.core.redirect import validate_redirect_uri
from federation.core.scopes import Scope, validate_requested_scope
from federation.models.authorization_code import AuthorizationCode

logger = logging.getLogger(__name__)


@dataclass
class IssuedCode:
    code: str
    client_id: str
    redirect_uri: str
    scope: Scope
    expires_at: datetime


@dataclass
class ConsumedCode:
    user_id: str
    client_id: str
    redirect_uri: str
    scope: Scope
    metadata: Dict[str, Any] = field(default_factory=dict)


class AuthorizationCodeIssuer:
    """Mints and redeems authorization codes."""

    def __init__(self, db: Session, settings: Optional[Settings] = None, registry: Optional[ClientRegistry] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.registry = registry or ClientRegistry(db, self.settings)

    def _check_pkce_challenge(self, client, code_challenge: Optional[str], method: Optional[str]) -> Optional[str]:
        if not code_challenge:
            if method:
                raise InvalidRequest("code_challenge_method given without code_challenge")
            if client.is_public:
                raise PkceRequired()
            return None

        method = method or "S256"
        if method not in SUPPORTED_PKCE_METHODS:
            raise InvalidRequest(f"Unsupported code_challenge_method: {method}")
        if not (self.settings.pkce_code_verifier_min_length <= len(code_challenge)
                <= self.settings.pkce_code_verifier_max_length):
            raise InvalidRequest("code_challenge has an invalid length")
        return method

    def issue(
        self,
        client_id: str,
        user_id: str,
        redirect_uri: str,
        scope,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IssuedCode:
        """
        Issue an authorization code bound to client, user, redirect URI and scope.

        Raises:
            InvalidClient: Unknown or inactive client
            InvalidRedirectURI: redirect_uri is not registered for the client
            InvalidScope: Requested scope exceeds the client's scopes
            PkceRequired: Public client without a code_challenge
            InvalidRequest: Unsupported PKCE method
        """
        client = self.registry.lookup(client_id)
        if not validate_redirect_uri(client.redirect_uris, redirect_uri):
            raise InvalidRedirectURI()
        granted = validate_requested_scope(scope, client.scopes, self.settings)
        method = self._check_pkce_challenge(client, code_challenge, code_challenge_method)

        expires_at = utcnow() + timedelta(minutes=self.settings.oauth2_authorization_code_expire_minutes)
        record = AuthorizationCode(
            code=generate_opaque_token(self.settings.oauth2_token_length),
            client_id=client_id,
            user_id=str(user_id),
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=method,
            expires_at=expires_at,
        )
        record.set_scopes(granted)
        record.set_metadata(metadata)
        self.db.add(record)
        self.db.commit()

        logger.info(f"Issued authorization code for client {client_id}, user {user_id}, scope '{granted}'")
        return IssuedCode(
            code=record.code,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=granted,
            expires_at=expires_at,
        )

    def consume(
        self,
        code: str,
        client_id: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
        commit: bool = True,
    ) -> ConsumedCode:
        """
        Redeem a code exactly once.

        Validation failures leave the code unused, so a legitimate retry with
        the right parameters can still succeed before the code expires. With
        ``commit=False`` the consumption stays in the open transaction and the
        caller decides whether it commits or rolls back.

        Raises:
            InvalidGrant: Unknown code, client mismatch or redirect_uri mismatch
            CodeAlreadyUsed: The code was consumed already, possibly concurrently
            CodeExpired: The code is past its expiry
            PkceMismatch: code_verifier missing or not matching the challenge
        """
        if not code:
            raise InvalidRequest("code is required")

        record = self.db.query(AuthorizationCode).filter(AuthorizationCode.code == code).first()
        if record is None:
            raise InvalidGrant("Invalid authorization code")
        if record.used_at is not None:
            logger.warning(f"Replay of consumed authorization code for client {record.client_id}")
            raise CodeAlreadyUsed()

        now = utcnow()
        if ensure_utc(record.expires_at) <= now:
            raise CodeExpired()
        if record.client_id != client_id:
            raise InvalidGrant("Authorization code was issued to another client")
        if record.redirect_uri != redirect_uri:
            raise InvalidGrant("redirect_uri does not match the authorization request")

        if record.code_challenge:
            if not code_verifier:
                raise PkceMismatch("code_verifier is required")
            if not PKCEHandler.verify(code_verifier, record.code_challenge, record.code_challenge_method or "S256"):
                raise PkceMismatch()
        elif code_verifier:
            raise PkceMismatch("code_verifier supplied but no code_challenge was registered")

        result = self.db.execute(
            update(AuthorizationCode)
            .where(
                AuthorizationCode.id == record.id,
                AuthorizationCode.used_at.is_(None),
                AuthorizationCode.expires_at > now,
            )
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            logger.warning(f"Lost race consuming authorization code for client {client_id}")
            raise CodeAlreadyUsed()
        if commit:
            self.db.commit()

        logger.info(f"Consumed authorization code for client {client_id}, user {record.user_id}")
        return ConsumedCode(
            user_id=record.user_id,
            client_id=record.client_id,
            redirect_uri=record.redirect_uri,
            scope=Scope(record.get_scopes()),
            metadata=record.get_metadata(),
        )
