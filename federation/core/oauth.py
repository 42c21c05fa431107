"""
Authorization server orchestration.

Ties the client registry, redirect validation, consent store, code issuer and
token manager together into the authorize, consent, token, revoke and
introspect flows, and records a lifecycle event for every step.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.orm import Session

from federation.core.clients import ClientRecord, ClientRegistry
from federation.core.codes import AuthorizationCodeIssuer
from federation.core.config import Settings, get_settings
from federation.core.consent import ConsentStore
from federation.core.errors import (
    AccessDenied,
    InvalidRedirectURI,
    InvalidRequest,
    OAuth2Error,
    PkceRequired,
    UnsupportedGrantType,
    UnsupportedResponseType,
)
from federation.core.events import EventLogger, EventType
from federation.core.redirect import is_wildcard_pattern, validate_redirect_uri
from federation.core.scopes import validate_requested_scope
from federation.core.tokens import IssuedTokens, TokenManager

logger = logging.getLogger(__name__)

CONSENT_REQUEST_TOKEN_TYPE = "consent_request"
CONSENT_REQUEST_ALGORITHM = "HS256"


def append_query(url: str, params: Dict[str, Any]) -> str:
    """Add query parameters to a URL, keeping any it already carries."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


@dataclass
class AuthorizationRequest:
    client_id: Optional[str]
    redirect_uri: Optional[str] = None
    response_type: Optional[str] = "code"
    scope: Optional[str] = None
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AuthorizationResult:
    """Where to send the user agent next."""

    redirect_url: str
    code: Optional[str] = None
    consent_required: bool = False
    login_required: bool = False
    consent_request_token: Optional[str] = None
    missing_scopes: List[str] = field(default_factory=list)
    error: Optional[str] = None


class AuthorizationServer:
    """OAuth 2.0 authorization code flow with PKCE."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        registry: Optional[ClientRegistry] = None,
        events: Optional[EventLogger] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.events = events or EventLogger(db, self.settings)
        self.registry = registry or ClientRegistry(db, self.settings, events=self.events)
        self.consents = ConsentStore(db, self.settings)
        self.codes = AuthorizationCodeIssuer(db, self.settings, registry=self.registry)
        self.tokens = TokenManager(db, self.settings)

    # --------------------------------------------------------------- authorize

    def resolve_trusted_redirect(self, request: AuthorizationRequest) -> ClientRecord:
        """
        Validate the client and redirect URI before anything is sent back to the client.

        Errors raised here must be shown to the user, never redirected.

        Raises:
            InvalidRequest: Missing client_id
            InvalidClient: Unknown or inactive client
            InvalidRedirectURI: redirect_uri missing, ambiguous or not registered
        """
        if not request.client_id:
            raise InvalidRequest("Missing client_id parameter")
        client = self.registry.lookup(request.client_id)

        if not request.redirect_uri:
            exact = [uri for uri in client.redirect_uris if not is_wildcard_pattern(uri)]
            if len(client.redirect_uris) != 1 or len(exact) != 1:
                raise InvalidRedirectURI("redirect_uri is required for this client")
            request.redirect_uri = exact[0]
        elif not validate_redirect_uri(client.redirect_uris, request.redirect_uri):
            logger.warning(f"Rejected redirect_uri for client {client.client_id}: {request.redirect_uri}")
            raise InvalidRedirectURI()
        return client

    def _error_redirect(self, request: AuthorizationRequest, error: OAuth2Error) -> AuthorizationResult:
        url = append_query(request.redirect_uri, {
            "error": error.error,
            "error_description": error.error_description,
            "state": request.state,
        })
        return AuthorizationResult(redirect_url=url, error=error.error)

    def _issue_code(self, request: AuthorizationRequest, user_id: str) -> AuthorizationResult:
        issued = self.codes.issue(
            client_id=request.client_id,
            user_id=user_id,
            redirect_uri=request.redirect_uri,
            scope=request.scope,
            code_challenge=request.code_challenge,
            code_challenge_method=request.code_challenge_method,
            metadata=request.metadata,
        )
        self.events.record(
            EventType.CODE_ISSUED,
            client_id=request.client_id,
            user_id=user_id,
            data={"scope": str(issued.scope), "pkce": bool(request.code_challenge)},
        )
        url = append_query(request.redirect_uri, {"code": issued.code, "state": request.state})
        return AuthorizationResult(redirect_url=url, code=issued.code)

    def begin_authorization(
        self,
        request: AuthorizationRequest,
        user_id: Optional[str],
        return_to: Optional[str] = None,
    ) -> AuthorizationResult:
        """
        Handle an authorization request.

        Returns a redirect carrying the code and state, a redirect to the login
        page when no user is signed in, a redirect to the consent page when the
        user has not yet approved every requested scope, or an error redirect to
        the (already trusted) client redirect URI.
        """
        client = self.resolve_trusted_redirect(request)

        try:
            if request.response_type != "code":
                raise UnsupportedResponseType()
            scope = validate_requested_scope(request.scope, client.scopes, self.settings)
            request.scope = str(scope)
            if client.is_public and not request.code_challenge:
                raise PkceRequired()
        except OAuth2Error as e:
            logger.warning(f"Authorization request error for client {client.client_id}: {e.error} - {e.error_description}")
            self.events.record(
                EventType.CODE_FAILED, client_id=client.client_id, user_id=user_id,
                data={"error": e.error, "stage": "authorize"}, success=False,
            )
            return self._error_redirect(request, e)

        if not user_id:
            url = append_query(self.settings.login_url, {"return_to": return_to})
            return AuthorizationResult(redirect_url=url, login_required=True)

        consented = self.consents.get_consented_scopes(user_id, client.client_id)
        missing = scope.difference(consented)
        if missing:
            token = self.create_consent_request_token(request, user_id)
            url = append_query(self.settings.consent_url, {
                "request_token": token,
                "client_id": client.client_id,
                "client_name": client.name,
                "scope": str(scope),
            })
            return AuthorizationResult(
                redirect_url=url,
                consent_required=True,
                consent_request_token=token,
                missing_scopes=list(missing),
            )

        try:
            return self._issue_code(request, user_id)
        except OAuth2Error as e:
            self.events.record(
                EventType.CODE_FAILED, client_id=client.client_id, user_id=user_id,
                data={"error": e.error, "stage": "issue"}, success=False,
            )
            return self._error_redirect(request, e)

    def create_consent_request_token(self, request: AuthorizationRequest, user_id: str) -> str:
        """Sign the pending authorization request so the consent page cannot tamper with it."""
        now = datetime.now(timezone.utc)
        payload = {
            "type": CONSENT_REQUEST_TOKEN_TYPE,
            "sub": str(user_id),
            "client_id": request.client_id,
            "redirect_uri": request.redirect_uri,
            "scope": request.scope,
            "exp": now + timedelta(minutes=self.settings.consent_request_expire_minutes),
            "iat": now,
        }
        optional = {
            "state": request.state,
            "code_challenge": request.code_challenge,
            "code_challenge_method": request.code_challenge_method,
            "metadata": request.metadata or None,
        }
        payload.update({key: value for key, value in optional.items() if value})
        return jwt.encode(payload, self.settings.consent_request_secret, algorithm=CONSENT_REQUEST_ALGORITHM)

    def decode_consent_request_token(self, token: str) -> dict:
        try:
            payload = jwt.decode(token, self.settings.consent_request_secret, algorithms=[CONSENT_REQUEST_ALGORITHM])
        except ExpiredSignatureError:
            raise InvalidRequest("Consent request has expired")
        except JWTError as e:
            raise InvalidRequest(f"Invalid consent request: {e}")
        if payload.get("type") != CONSENT_REQUEST_TOKEN_TYPE:
            raise InvalidRequest("Invalid consent request token type")
        return payload

    def approve_consent(self, request_token: str, user_id: Optional[str], approve: bool = True) -> AuthorizationResult:
        """
        Complete a consent decision and continue the authorization.

        Approval grants the requested scopes (cumulatively) and issues a code;
        denial redirects to the client with ``access_denied``.
        """
        payload = self.decode_consent_request_token(request_token)
        if not user_id or str(user_id) != payload.get("sub"):
            raise InvalidRequest("Consent request belongs to another user")

        request = AuthorizationRequest(
            client_id=payload.get("client_id"),
            redirect_uri=payload.get("redirect_uri"),
            scope=payload.get("scope"),
            state=payload.get("state"),
            code_challenge=payload.get("code_challenge"),
            code_challenge_method=payload.get("code_challenge_method"),
            metadata=payload.get("metadata") or {},
        )
        client = self.resolve_trusted_redirect(request)

        if not approve:
            logger.info(f"User {user_id} denied consent for client {client.client_id}")
            self.events.record(
                EventType.CODE_FAILED, client_id=client.client_id, user_id=user_id,
                data={"error": "access_denied", "stage": "consent"}, success=False,
            )
            return self._error_redirect(request, AccessDenied())

        try:
            scope = validate_requested_scope(request.scope, client.scopes, self.settings)
        except OAuth2Error as e:
            return self._error_redirect(request, e)

        granted = self.consents.grant(user_id, client.client_id, scope)
        self.events.record(
            EventType.CONSENT_GRANTED, client_id=client.client_id, user_id=user_id,
            data={"scope": str(scope), "consented": str(granted)},
        )
        try:
            return self._issue_code(request, user_id)
        except OAuth2Error as e:
            self.events.record(
                EventType.CODE_FAILED, client_id=client.client_id, user_id=user_id,
                data={"error": e.error, "stage": "issue"}, success=False,
            )
            return self._error_redirect(request, e)

    # ------------------------------------------------------------------- token

    def _authenticate(self, client_id: Optional[str], client_secret: Optional[str], grant_type: str) -> ClientRecord:
        try:
            return self.registry.authenticate(client_id, client_secret)
        except OAuth2Error as e:
            self.events.record(
                EventType.TOKEN_FAILED, client_id=client_id,
                data={"error": e.error, "grant_type": grant_type}, success=False,
            )
            raise

    def exchange_authorization_code(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        code: Optional[str],
        redirect_uri: Optional[str],
        code_verifier: Optional[str] = None,
    ) -> IssuedTokens:
        """authorization_code grant: consume the code exactly once and mint a token pair."""
        client = self._authenticate(client_id, client_secret, "authorization_code")
        if not code:
            raise InvalidRequest("Missing code parameter")

        try:
            consumed = self.codes.consume(code, client.client_id, redirect_uri, code_verifier, commit=False)
        except OAuth2Error as e:
            self.events.record(
                EventType.CODE_FAILED, client_id=client.client_id,
                data={"error": e.error, "reason": e.error_description, "stage": "exchange"}, success=False,
            )
            raise

        # The code is only burned if the token row lands in the same commit.
        try:
            issued = self.tokens.issue_from_code(consumed.user_id, client, consumed.scope, commit=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception(f"Token issuance failed for client {client.client_id}, authorization code left unused")
            raise

        self.events.record(
            EventType.CODE_CONSUMED, client_id=client.client_id, user_id=consumed.user_id,
            data={"scope": str(consumed.scope)},
        )
        self.events.record(
            EventType.TOKEN_ISSUED, client_id=client.client_id, user_id=consumed.user_id,
            data={
                "scope": str(issued.scope),
                "grant_type": "authorization_code",
                "refresh_token_issued": issued.refresh_token is not None,
                "metadata": consumed.metadata,
            },
        )
        return issued

    def refresh(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        refresh_token: Optional[str],
        scope: Optional[str] = None,
    ) -> IssuedTokens:
        """refresh_token grant: rotate the refresh token, revoking the old pair."""
        client = self._authenticate(client_id, client_secret, "refresh_token")
        if not refresh_token:
            raise InvalidRequest("Missing refresh_token parameter")

        try:
            issued = self.tokens.rotate_refresh(refresh_token, client_id=client.client_id, scope=scope)
        except OAuth2Error as e:
            self.events.record(
                EventType.TOKEN_FAILED, client_id=client.client_id,
                data={"error": e.error, "reason": e.error_description, "grant_type": "refresh_token"}, success=False,
            )
            raise
        self.events.record(
            EventType.TOKEN_REFRESHED, client_id=client.client_id, user_id=issued.user_id,
            data={"scope": str(issued.scope)},
        )
        return issued

    def token(self, grant_type: Optional[str], **params) -> IssuedTokens:
        """Dispatch a token endpoint request by grant type."""
        if grant_type == "authorization_code":
            return self.exchange_authorization_code(
                params.get("client_id"), params.get("client_secret"), params.get("code"),
                params.get("redirect_uri"), params.get("code_verifier"),
            )
        if grant_type == "refresh_token":
            return self.refresh(
                params.get("client_id"), params.get("client_secret"),
                params.get("refresh_token"), params.get("scope"),
            )
        if not grant_type:
            raise InvalidRequest("Missing grant_type parameter")
        raise UnsupportedGrantType(f"Unsupported grant_type: {grant_type}")

    def revoke(self, token: Optional[str], client_id: Optional[str] = None, client_secret: Optional[str] = None) -> bool:
        """
        RFC 7009 revocation. Unknown tokens are not an error.

        When client credentials are presented they must be valid, and only
        that client's tokens can be revoked.
        """
        client = None
        if client_id:
            client = self._authenticate(client_id, client_secret, "revoke")
        if not token:
            return False
        revoked = self.tokens.revoke(token, client_id=client.client_id if client else None)
        if revoked:
            self.events.record(EventType.TOKEN_REVOKED, client_id=client.client_id if client else None)
        return revoked

    def introspect(self, token: Optional[str], client_id: Optional[str], client_secret: Optional[str]) -> dict:
        """RFC 7662 introspection for authenticated clients."""
        self._authenticate(client_id, client_secret, "introspect")
        if not token:
            return {"active": False}
        return self.tokens.introspect(token)
