"""
Periodic removal of expired codes, SSO tokens and token rows.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.orm import Session

from federation.core.config import Settings, get_settings
from federation.core.database import SessionLocal, utcnow
from federation.models.authorization_code import AuthorizationCode
from federation.models.oauth_token import OAuthToken
from federation.models.sso_token import SSOToken

logger = logging.getLogger(__name__)


class ExpiryReaper:
    """
    Deletes expired rows in bounded batches.

    Codes and SSO tokens go once they are a grace period past expiry. Token rows
    are kept for the audit retention window after both of their expiries, and
    after revocation.
    """

    def __init__(self, session_factory=None, settings: Optional[Settings] = None):
        self.session_factory = session_factory or SessionLocal
        self.settings = settings or get_settings()

    def _delete_in_batches(self, db: Session, model, condition) -> int:
        batch_size = max(self.settings.reaper_batch_size, 1)
        total = 0
        while True:
            ids = db.execute(select(model.id).where(condition).limit(batch_size)).scalars().all()
            if not ids:
                break
            result = db.execute(
                delete(model).where(model.id.in_(ids)).execution_options(synchronize_session=False)
            )
            db.commit()
            total += result.rowcount
            if len(ids) < batch_size:
                break
        return total

    def sweep(self, db: Optional[Session] = None) -> Dict[str, int]:
        """
        Run one reaping pass.

        Returns:
            Number of rows deleted per kind
        """
        owns_session = db is None
        db = db or self.session_factory()
        try:
            now = utcnow()
            grace_cutoff = now - timedelta(minutes=self.settings.reaper_grace_minutes)
            retention_cutoff = now - timedelta(days=self.settings.token_audit_retention_days)

            stats = {
                "authorization_codes": self._delete_in_batches(
                    db, AuthorizationCode, AuthorizationCode.expires_at < grace_cutoff
                ),
                "sso_tokens": self._delete_in_batches(
                    db, SSOToken, SSOToken.expires_at < grace_cutoff
                ),
                "oauth_tokens": self._delete_in_batches(
                    db,
                    OAuthToken,
                    and_(
                        OAuthToken.expires_at < retention_cutoff,
                        or_(OAuthToken.refresh_expires_at.is_(None), OAuthToken.refresh_expires_at < retention_cutoff),
                        or_(OAuthToken.revoked_at.is_(None), OAuthToken.revoked_at < retention_cutoff),
                    ),
                ),
            }

            total_cleaned = sum(stats.values())
            if total_cleaned > 0:
                logger.info(f"Expiry sweep completed: {stats}")
            else:
                logger.debug("Expiry sweep: nothing to remove")
            return stats
        except Exception:
            db.rollback()
            raise
        finally:
            if owns_session:
                db.close()

    async def run_forever(self, interval: Optional[int] = None):
        """Sweep on a fixed interval until cancelled. Errors are logged and the loop continues."""
        interval = interval or self.settings.reaper_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(self.sweep)
            except Exception as e:
                logger.error(f"Error in scheduled expiry sweep: {e}")
