"""Access-token lifecycle for QuickBooks calls.

``TokenLifecycleManager.with_authenticated_call`` hands a valid access token
to an async operation, refreshing the stored credential first when the
access token has expired. Refreshes are single-flight per realm: concurrent
callers that find the same expired token wait for one refresh and reuse its
result.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from dealbridge.core.config import settings
from dealbridge.core.errors import (
    CredentialNotFoundError,
    OAuthError,
    RefreshFailedError,
)
from dealbridge.core.logging import LoggerAdapter
from dealbridge.services.credentials import (
    AccessCredentialStore,
    StoredCredential,
    utcnow,
)
from dealbridge.services.quickbooks_oauth import QuickBooksOAuthClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

AuthenticatedOperation = Callable[[str], Awaitable[T]]


class RealmLocks:
    """One asyncio.Lock per realm id, created on first use."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, realm_id: str) -> asyncio.Lock:
        lock = self._locks.get(realm_id)
        if lock is None:
            lock = self._locks[realm_id] = asyncio.Lock()
        return lock


# Shared by every manager in the process so that requests with their own
# sessions still coordinate their refreshes.
refresh_locks = RealmLocks()


class TokenLifecycleManager:
    """Keeps QuickBooks access tokens valid across requests.

    Example:
        ```python
        async with get_db_context() as db:
            manager = TokenLifecycleManager(AccessCredentialStore(db), oauth)
            invoices = await manager.with_authenticated_call(
                realm_id,
                lambda token: qb.find_invoices_by_doc_number(token, realm_id, "1001"),
            )
        ```
    """

    def __init__(
        self,
        store: AccessCredentialStore,
        oauth_client: QuickBooksOAuthClient,
        locks: Optional[RealmLocks] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize TokenLifecycleManager.

        Args:
            store: Credential persistence
            oauth_client: Client for the token endpoint
            locks: Per-realm refresh locks. Defaults to the process-wide set.
            clock: Returns the current UTC time; injectable for tests.
        """
        self.store = store
        self.oauth_client = oauth_client
        self._locks = locks if locks is not None else refresh_locks
        self._clock = clock

    async def with_authenticated_call(
        self,
        realm_id: str,
        operation: AuthenticatedOperation[T],
    ) -> T:
        """Run ``operation`` with a valid access token for ``realm_id``.

        The operation is invoked exactly once. It is not retried, even if
        QuickBooks rejects the token.

        Raises:
            CredentialNotFoundError: No credential is stored for the realm.
            RefreshFailedError: The token had expired and could not be
                refreshed; the operation was not invoked.
        """
        credential = await self.store.get(realm_id)
        if credential is None:
            raise CredentialNotFoundError(realm_id)

        if credential.access_expired(self._clock()):
            credential = await self._refresh(realm_id)

        return await operation(credential.access_token)

    async def _refresh(self, realm_id: str) -> StoredCredential:
        log = LoggerAdapter(logger, {"realm_id": realm_id})

        async with self._locks.get(realm_id):
            # Another request may have refreshed while this one waited
            credential = await self.store.get(realm_id)
            if credential is None:
                raise CredentialNotFoundError(realm_id)

            now = self._clock()
            if not credential.access_expired(now):
                log.debug("Access token already refreshed by a concurrent request")
                return credential

            if credential.refresh_expired(now):
                log.warning("Refresh token expired, re-authorization required")
                raise RefreshFailedError(
                    realm_id,
                    f"refresh token expired at {credential.refresh_expires_at.isoformat()}",
                )

            log.info("Access token expired, refreshing")
            try:
                grant = await self.oauth_client.refresh(credential.refresh_token)
            except OAuthError as e:
                log.error(f"Token refresh failed: {e.message}")
                raise RefreshFailedError(realm_id, e.message) from e

            refreshed = await self.store.save_grant(realm_id, grant, issued_at=now)
            log.info(
                f"Access token refreshed, valid until {refreshed.access_expires_at.isoformat()}"
            )
            return refreshed

    # =========================================================================
    # Authorization handshake
    # =========================================================================

    def authorization_url(self, state: str) -> str:
        """Consent URL that starts the authorization-code flow."""
        return self.oauth_client.authorization_url(state)

    async def authorize(self, code: str, realm_id: str) -> StoredCredential:
        """Complete the authorization-code flow and store the credential.

        Replaces any credential already stored for the realm.

        Raises:
            OAuthError: If the code exchange fails.
        """
        if not realm_id:
            raise OAuthError("realmId is required to store a credential")

        issued_at = self._clock()
        grant = await self.oauth_client.exchange_code(code)
        credential = await self.store.save_grant(realm_id, grant, issued_at=issued_at)
        logger.info(f"QuickBooks realm {realm_id} authorized")
        return credential

    async def default_realm_id(self) -> str:
        """The configured realm, else the most recently authorized one.

        Raises:
            CredentialNotFoundError: If neither exists.
        """
        if settings.quickbooks_realm_id:
            return settings.quickbooks_realm_id

        realm_id = await self.store.latest_realm_id()
        if realm_id is None:
            raise CredentialNotFoundError("<any>")
        return realm_id
