"""
Per user, per client consent records.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from federation.core.config import Settings, get_settings
from federation.core.database import utcnow
from federation.core.errors import StorageUnavailable
from federation.core.scopes import Scope
from federation.models.consent import Consent

logger = logging.getLogger(__name__)


class ConsentStore:
    """
    Cumulative scope grants.

    A grant only ever adds scopes. Shrinking a grant is an explicit
    administrative action through ``revoke``.
    """

    MAX_MERGE_ATTEMPTS = 5

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def _get(self, user_id: str, client_id: str) -> Optional[Consent]:
        return self.db.query(Consent).filter(
            Consent.user_id == user_id,
            Consent.client_id == client_id,
        ).populate_existing().first()

    def get_consented_scopes(self, user_id: str, client_id: str) -> Scope:
        consent = self._get(user_id, client_id)
        return Scope(consent.get_scopes()) if consent else Scope()

    def requires_consent(self, user_id: str, client_id: str, requested: Iterable[str]) -> bool:
        return not Scope.parse(requested).issubset(self.get_consented_scopes(user_id, client_id))

    def grant(self, user_id: str, client_id: str, scopes: Iterable[str]) -> Scope:
        """
        Union the scopes into the stored consent and return the resulting set.

        The merge is a compare-and-set on the stored scopes, so concurrent
        grants for the same user and client never overwrite each other.

        Raises:
            StorageUnavailable: The row kept changing underneath every attempt
        """
        requested = Scope.parse(scopes)
        for _ in range(self.MAX_MERGE_ATTEMPTS):
            consent = self._get(user_id, client_id)
            if consent is None:
                consent = Consent(user_id=user_id, client_id=client_id)
                consent.set_scopes(requested)
                self.db.add(consent)
                try:
                    self.db.commit()
                except IntegrityError:
                    # A concurrent first grant won the insert; merge into its row.
                    self.db.rollback()
                    continue
                logger.info(f"Recorded consent for user {user_id} on client {client_id}: {requested}")
                return requested

            stored = consent.scopes
            merged = Scope(consent.get_scopes()).union(requested)
            if list(merged) == consent.get_scopes():
                return merged

            result = self.db.execute(
                update(Consent)
                .where(Consent.id == consent.id, Consent.scopes == stored)
                .values(scopes=Consent._dump_list(merged), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                self.db.commit()
                self.db.expire(consent)
                logger.info(f"Extended consent for user {user_id} on client {client_id}: {merged}")
                return merged
            # Another grant or revoke changed the row first; reload and merge again.
            self.db.rollback()

        logger.error(f"Gave up merging consent for user {user_id} on client {client_id}")
        raise StorageUnavailable()

    def revoke(self, user_id: str, client_id: str, scopes: Optional[Iterable[str]] = None) -> bool:
        """
        Remove scopes from a consent, or the whole consent when scopes is None.

        Returns:
            True if a consent record existed
        """
        for _ in range(self.MAX_MERGE_ATTEMPTS):
            consent = self._get(user_id, client_id)
            if consent is None:
                return False

            stored = consent.scopes
            remaining = Scope()
            if scopes is not None:
                remaining = Scope(consent.get_scopes()).difference(Scope.parse(scopes))

            if remaining:
                statement = (
                    update(Consent)
                    .where(Consent.id == consent.id, Consent.scopes == stored)
                    .values(scopes=Consent._dump_list(remaining), updated_at=utcnow())
                )
            else:
                statement = delete(Consent).where(Consent.id == consent.id, Consent.scopes == stored)
            result = self.db.execute(statement.execution_options(synchronize_session=False))
            if result.rowcount == 1:
                self.db.commit()
                if remaining:
                    self.db.expire(consent)
                else:
                    self.db.expunge(consent)
                logger.info(
                    f"Revoked consent for user {user_id} on client {client_id}, remaining: {remaining or 'none'}"
                )
                return True
            self.db.rollback()

        logger.error(f"Gave up revoking consent for user {user_id} on client {client_id}")
        raise StorageUnavailable()
