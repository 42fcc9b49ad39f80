"""Persistence for QuickBooks OAuth credentials, one row per realm."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dealbridge.models.credential import AccessCredential
from dealbridge.services.encryption import EncryptionService, get_encryption_service
from dealbridge.services.quickbooks_oauth import TokenGrant

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class StoredCredential:
    """Decrypted view of an AccessCredential row."""
    realm_id: str
    access_token: str
    refresh_token: str
    token_type: str
    access_expires_at: datetime
    refresh_expires_at: datetime

    def access_expired(self, now: datetime) -> bool:
        """True at or after the access expiry instant."""
        return now >= self.access_expires_at

    def refresh_expired(self, now: datetime) -> bool:
        return now >= self.refresh_expires_at


class AccessCredentialStore:
    """Reads and writes encrypted credentials.

    Each write flushes and commits so the new tokens survive even if the
    operation that triggered a refresh fails afterwards.
    """

    def __init__(
        self,
        db: AsyncSession,
        encryption_service: Optional[EncryptionService] = None,
    ):
        """Initialize AccessCredentialStore.

        Args:
            db: Async SQLAlchemy session
            encryption_service: Optional encryption service instance.
                If not provided, the process-wide service is used.
        """
        self.db = db
        self._encryption = encryption_service or get_encryption_service()

    async def _load_row(self, realm_id: str) -> Optional[AccessCredential]:
        result = await self.db.execute(
            select(AccessCredential)
            .where(AccessCredential.realm_id == realm_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def _decrypt(self, row: AccessCredential) -> StoredCredential:
        return StoredCredential(
            realm_id=row.realm_id,
            access_token=self._encryption.decrypt(row.access_token_encrypted),
            refresh_token=self._encryption.decrypt(row.refresh_token_encrypted),
            token_type=row.token_type,
            access_expires_at=_as_utc(row.access_expires_at),
            refresh_expires_at=_as_utc(row.refresh_expires_at),
        )

    async def get(self, realm_id: str) -> Optional[StoredCredential]:
        """Return the realm's credential, or None if none is stored.

        Always reads the database, never a cached identity-map row, so a
        refresh committed by another request is visible.
        """
        row = await self._load_row(realm_id)
        if row is None:
            return None
        return self._decrypt(row)

    async def latest_realm_id(self) -> Optional[str]:
        """Realm of the most recently written credential, if any."""
        result = await self.db.execute(
            select(AccessCredential.realm_id)
            .order_by(
                func.coalesce(
                    AccessCredential.updated_at, AccessCredential.created_at
                ).desc()
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def save_grant(
        self,
        realm_id: str,
        grant: TokenGrant,
        issued_at: Optional[datetime] = None,
    ) -> StoredCredential:
        """Insert or update the realm's credential from a token grant.

        Args:
            realm_id: QuickBooks company id
            grant: Tokens returned by the authorization server
            issued_at: Instant the grant was received; expiries are relative
                to it. Defaults to now.

        Returns:
            The credential as stored
        """
        issued_at = issued_at or utcnow()
        access_expires_at = grant.access_expires_at(issued_at)
        refresh_expires_at = grant.refresh_expires_at(issued_at)

        row = await self._load_row(realm_id)
        if row is None:
            row = AccessCredential(realm_id=realm_id)
            self.db.add(row)
            logger.info(f"Storing new QuickBooks credential for realm {realm_id}")

        row.access_token_encrypted = self._encryption.encrypt(grant.access_token)
        row.refresh_token_encrypted = self._encryption.encrypt(grant.refresh_token)
        row.token_type = grant.token_type
        row.access_expires_at = access_expires_at
        row.refresh_expires_at = refresh_expires_at
        row.updated_at = issued_at

        await self.db.flush()
        await self.db.commit()

        return StoredCredential(
            realm_id=realm_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            token_type=grant.token_type,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )
