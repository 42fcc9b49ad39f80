"""QuickBooks Online OAuth 2.0 client.

Builds the consent URL and performs the two token grants used by the
credential lifecycle:

- ``authorization_code`` once, when a company is connected
- ``refresh_token`` whenever the short-lived access token has expired

Both grants POST a form-encoded body to Intuit's bearer endpoint with the
client id and secret as HTTP basic credentials.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel

from dealbridge.core.config import settings
from dealbridge.core.errors import OAuthError

logger = logging.getLogger(__name__)

AUTHORIZATION_ENDPOINT = "https://appcenter.intuit.com/connect/oauth2"
TOKEN_ENDPOINT = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"


class TokenGrant(BaseModel):
    """Token pair returned by the bearer endpoint."""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    x_refresh_token_expires_in: int  # seconds
    id_token: Optional[str] = None

    def access_expires_at(self, issued_at: datetime) -> datetime:
        return issued_at + timedelta(seconds=self.expires_in)

    def refresh_expires_at(self, issued_at: datetime) -> datetime:
        return issued_at + timedelta(seconds=self.x_refresh_token_expires_in)


class QuickBooksOAuthClient:
    """Client for Intuit's OAuth 2.0 endpoints.

    Example:
        ```python
        oauth = QuickBooksOAuthClient()
        url = oauth.authorization_url(state="csrf-token")
        # ... user consents, Intuit redirects back with code + realmId ...
        grant = await oauth.exchange_code(code)
        ```
    """

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        scope: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize QuickBooksOAuthClient.

        Args:
            client_id: Intuit app client id. Defaults to settings.
            client_secret: Intuit app client secret. Defaults to settings.
            redirect_uri: Registered redirect URI. Defaults to settings.
            scope: Space separated scopes. Defaults to the accounting scope.
            http_client: Optional preconfigured client (used by tests).
            timeout: Request timeout in seconds. Defaults to settings.

        Raises:
            OAuthError: If the client id or secret is not configured.
        """
        self.client_id = client_id or settings.quickbooks_client_id
        self.client_secret = client_secret or settings.quickbooks_client_secret
        self.redirect_uri = redirect_uri or settings.quickbooks_redirect_uri
        self.scope = scope or settings.quickbooks_scope
        self.timeout = timeout if timeout is not None else settings.http_timeout

        if not self.client_id or not self.client_secret:
            raise OAuthError(
                "QUICKBOOKS_CLIENT_ID and QUICKBOOKS_CLIENT_SECRET must be configured"
            )

        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "QuickBooksOAuthClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def authorization_url(self, state: str) -> str:
        """Build the Intuit consent URL the user is redirected to."""
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "scope": self.scope,
            "redirect_uri": self.redirect_uri,
            "state": state,
        }
        return f"{AUTHORIZATION_ENDPOINT}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code for the first token pair."""
        if not code:
            raise OAuthError("Authorization code is required")
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            },
            grant="authorization_code",
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new token pair.

        Intuit may rotate the refresh token; always persist the returned one.
        """
        if not refresh_token:
            raise OAuthError("Refresh token is required")
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            grant="refresh_token",
        )

    async def _token_request(self, form: dict, grant: str) -> TokenGrant:
        client = await self._get_client()

        try:
            response = await client.post(
                TOKEN_ENDPOINT,
                data=form,
                auth=(self.client_id, self.client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Token endpoint unreachable during {grant} grant: {e}")
            raise OAuthError(f"Token endpoint unreachable: {e}")

        if not response.is_success:
            try:
                payload = response.json()
                reason = payload.get("error_description") or payload.get("error") or response.text
            except ValueError:
                reason = response.text or f"HTTP {response.status_code}"
            logger.warning(
                f"Token endpoint rejected {grant} grant ({response.status_code}): {reason}"
            )
            raise OAuthError(
                f"{grant} grant rejected ({response.status_code}): {reason}",
                status_code=response.status_code,
            )

        try:
            return TokenGrant.model_validate(response.json())
        except ValueError as e:
            raise OAuthError(f"Malformed token response for {grant} grant: {e}")
