"""
OAuth client registry.

Holds registered client applications, authenticates them at the token
endpoint and serves the administrative lifecycle (register, update,
deactivate, rotate secret). Client records are cached read-through in Redis;
every mutation invalidates the cached copy.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from federation.core.cache import build_client_cache
from federation.core.config import Settings, get_settings
from federation.core.crypto import ClientSecretHasher, generate_client_id, generate_client_secret
from federation.core.database import utcnow
from federation.core.errors import InvalidClient, InvalidRequest, InvalidScope
from federation.core.redirect import check_redirect_uri_pattern
from federation.core.scopes import Scope
from federation.models.oauth_client import OAuthClient

logger = logging.getLogger(__name__)


@dataclass
class ClientRecord:
    """Read-only view of a registered client."""

    client_id: str
    name: str
    redirect_uris: List[str] = field(default_factory=list)
    scopes: List[str] = field(default_factory=list)
    is_confidential: bool = True
    is_active: bool = True
    secret_hash: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_model(cls, client: OAuthClient) -> "ClientRecord":
        return cls(
            client_id=client.client_id,
            name=client.name,
            redirect_uris=client.get_redirect_uris(),
            scopes=client.get_scopes(),
            is_confidential=bool(client.is_confidential),
            is_active=bool(client.is_active),
            secret_hash=client.client_secret,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "ClientRecord":
        return cls(**data)

    def to_dict(self) -> dict:
        return asdict(self)

    @property
    def is_public(self) -> bool:
        return not self.is_confidential


class ClientRegistry:
    """Lookup, authentication and administration of OAuth clients."""

    def __init__(self, db: Session, settings: Optional[Settings] = None, cache=None, events=None):
        self.db = db
        self.settings = settings or get_settings()
        self.cache = cache if cache is not None else build_client_cache(self.settings)
        self.events = events

    # ------------------------------------------------------------------ lookup

    def _get_model(self, client_id: str) -> Optional[OAuthClient]:
        return self.db.query(OAuthClient).filter(OAuthClient.client_id == client_id).first()

    def get(self, client_id: str) -> Optional[ClientRecord]:
        """Return the client record, active or not, or None if unknown."""
        if not client_id:
            return None
        cached = self.cache.get(client_id)
        if cached is not None:
            try:
                return ClientRecord.from_dict(cached)
            except TypeError:
                logger.warning(f"Ignoring stale cache entry for client {client_id}")
                self.cache.invalidate(client_id)

        client = self._get_model(client_id)
        if client is None:
            return None
        record = ClientRecord.from_model(client)
        self.cache.set(client_id, record.to_dict())
        return record

    def lookup(self, client_id: str) -> ClientRecord:
        """Return an active client or raise InvalidClient."""
        record = self.get(client_id)
        if record is None:
            raise InvalidClient(f"Unknown client: {client_id}")
        if not record.is_active:
            raise InvalidClient(f"Client is deactivated: {client_id}")
        return record

    def list_clients(self, include_inactive: bool = False) -> List[ClientRecord]:
        query = self.db.query(OAuthClient)
        if not include_inactive:
            query = query.filter(OAuthClient.is_active == True)  # noqa: E712
        return [ClientRecord.from_model(client) for client in query.order_by(OAuthClient.id).all()]

    # ---------------------------------------------------------- authentication

    def verify_secret(self, client_id: str, provided: Optional[str]) -> bool:
        """Verify a confidential client's secret. Public clients have no secret to verify."""
        record = self.get(client_id)
        if record is None or not record.is_active or not record.is_confidential:
            return False
        return ClientSecretHasher.verify_secret(provided, record.secret_hash)

    @staticmethod
    def is_scope_allowed(client: ClientRecord, scope) -> bool:
        return Scope.parse(scope).issubset(client.scopes)

    def authenticate(self, client_id: Optional[str], client_secret: Optional[str] = None) -> ClientRecord:
        """
        Authenticate a client at the token endpoint.

        Confidential clients must present a valid secret. Public clients are
        identified by client_id alone and prove possession through PKCE.
        """
        if not client_id:
            raise InvalidClient("client_id is required")
        record = self.lookup(client_id)
        if record.is_confidential:
            if not client_secret or not ClientSecretHasher.verify_secret(client_secret, record.secret_hash):
                logger.warning(f"Client authentication failed for {client_id}")
                raise InvalidClient()
        return record

    # ---------------------------------------------------------- administration

    def _validate_redirect_uris(self, redirect_uris: Iterable[str]) -> List[str]:
        uris = list(dict.fromkeys(redirect_uris or []))
        if not uris:
            raise InvalidRequest("At least one redirect_uri is required")
        for uri in uris:
            check_redirect_uri_pattern(uri, self.settings)
        return uris

    def _validate_scopes(self, scopes: Iterable[str]) -> Scope:
        scope = Scope.parse(scopes)
        unsupported = scope.difference(self.settings.oauth2_supported_scopes)
        if unsupported:
            raise InvalidScope(f"Unsupported scopes: {', '.join(unsupported)}")
        return scope

    def _record_event(self, event_type: str, client_id: str, data: dict = None):
        if self.events is not None:
            self.events.record(event_type, client_id=client_id, data=data)

    def register(
        self,
        name: str,
        redirect_uris: Iterable[str],
        scopes: Optional[Iterable[str]] = None,
        is_confidential: bool = True,
        client_id: Optional[str] = None,
    ) -> Tuple[ClientRecord, Optional[str]]:
        """
        Register a client.

        Returns:
            The new record and the plain client secret, which is only ever
            available here (None for public clients).
        """
        uris = self._validate_redirect_uris(redirect_uris)
        scope = self._validate_scopes(scopes if scopes else self.settings.oauth2_default_scopes)
        client_id = client_id or generate_client_id()
        if self._get_model(client_id) is not None:
            raise InvalidRequest(f"client_id already registered: {client_id}")

        plain_secret = generate_client_secret() if is_confidential else None
        client = OAuthClient(
            client_id=client_id,
            name=name,
            client_secret=ClientSecretHasher.hash_secret(plain_secret) if plain_secret else None,
            is_confidential=is_confidential,
            is_active=True,
        )
        client.set_redirect_uris(uris)
        client.set_scopes(scope)

        self.db.add(client)
        self.db.commit()
        self.db.refresh(client)
        self.cache.invalidate(client_id)

        logger.info(f"Registered OAuth client: {client_id} ({'confidential' if is_confidential else 'public'})")
        self._record_event("client.registered", client_id, {"name": name, "scopes": list(scope)})
        return ClientRecord.from_model(client), plain_secret

    def update(
        self,
        client_id: str,
        name: Optional[str] = None,
        redirect_uris: Optional[Iterable[str]] = None,
        scopes: Optional[Iterable[str]] = None,
        is_active: Optional[bool] = None,
    ) -> Optional[ClientRecord]:
        client = self._get_model(client_id)
        if client is None:
            return None

        changed = []
        if name:
            client.name = name
            changed.append("name")
        if redirect_uris is not None:
            client.set_redirect_uris(self._validate_redirect_uris(redirect_uris))
            changed.append("redirect_uris")
        if scopes is not None:
            client.set_scopes(self._validate_scopes(scopes))
            changed.append("scopes")
        if is_active is not None:
            client.is_active = is_active
            changed.append("is_active")

        client.updated_at = utcnow()
        self.db.commit()
        self.cache.invalidate(client_id)

        logger.info(f"Updated OAuth client {client_id}: {', '.join(changed) or 'no changes'}")
        self._record_event("client.updated", client_id, {"fields": changed})
        return ClientRecord.from_model(client)

    def deactivate(self, client_id: str) -> bool:
        """Soft-delete a client. Its rows are kept for audit."""
        client = self._get_model(client_id)
        if client is None:
            return False
        client.is_active = False
        client.updated_at = utcnow()
        self.db.commit()
        self.cache.invalidate(client_id)

        logger.info(f"Deactivated OAuth client: {client_id}")
        self._record_event("client.deactivated", client_id)
        return True

    def rotate_secret(self, client_id: str) -> Optional[Tuple[str, object]]:
        """
        Replace a confidential client's secret. The old secret stops working immediately.

        Returns:
            (plain_secret, rotated_at), or None if the client is unknown or inactive
        """
        client = self._get_model(client_id)
        if client is None or not client.is_active:
            return None
        if not client.is_confidential:
            raise InvalidRequest("Public clients have no secret to rotate")

        plain_secret = generate_client_secret()
        client.client_secret = ClientSecretHasher.hash_secret(plain_secret)
        client.secret_last_rotated = utcnow()
        self.db.commit()
        self.cache.invalidate(client_id)

        logger.info(f"Rotated client secret for OAuth client: {client_id}")
        self._record_event("client.updated", client_id, {"fields": ["client_secret"]})
        return plain_secret, client.secret_last_rotated
