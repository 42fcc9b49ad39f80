"""Pipedrive CRM API client.

Provides the deal reads and writes the reconciliation layer needs:

- fetching a deal (custom fields appear as hash-keyed attributes)
- fetching deal field definitions, cached in Redis when a cache is given
- updating a deal, including a single custom field
"""

import hashlib
import json
import logging
from typing import Any, List, Optional

import httpx
from redis.asyncio import Redis
from redis.exceptions import RedisError

from dealbridge.core.config import settings
from dealbridge.core.errors import UpstreamError

logger = logging.getLogger(__name__)


class PipedriveClient:
    """Client for the Pipedrive v1 REST API.

    Authenticates with the ``api_token`` query parameter.

    Example:
        ```python
        async with PipedriveClient(cache=Redis.from_url(settings.redis_url)) as crm:
            deal = await crm.get_deal(42)
            fields = await crm.get_deal_fields()
        ```
    """

    DEFAULT_CACHE_TTL = 300  # 5 minutes
    FIELDS_PAGE_SIZE = 500

    def __init__(
        self,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        cache: Optional[Redis] = None,
        cache_ttl: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize PipedriveClient.

        Args:
            api_token: Pipedrive API token. Defaults to settings.
            base_url: API base URL. Defaults to settings.
            cache: Optional Redis client. If None, caching is disabled.
            cache_ttl: Cache TTL in seconds. Defaults to settings.cache_ttl.
            http_client: Optional preconfigured client (used by tests).
            timeout: Request timeout in seconds. Defaults to settings.

        Raises:
            ValueError: If no API token is configured.
        """
        self.api_token = api_token or settings.pipedrive_api_token
        if not self.api_token:
            raise ValueError("PIPEDRIVE_API_TOKEN is not configured")

        self.base_url = (base_url or settings.pipedrive_base_url).rstrip("/")
        self.cache = cache
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.cache_ttl
        self.timeout = timeout if timeout is not None else settings.http_timeout
        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={"Accept": "application/json"},
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "PipedriveClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================================
    # Cache Methods
    # =========================================================================

    def _get_cache_key(self, endpoint: str, params: Optional[dict] = None) -> str:
        key_parts = [self.base_url, endpoint]
        if params:
            key_parts.append(json.dumps(params, sort_keys=True))
        key_hash = hashlib.md5(":".join(key_parts).encode()).hexdigest()
        return f"pipedrive:{key_hash}"

    async def _get_from_cache(self, cache_key: str) -> Optional[Any]:
        if self.cache is None:
            return None

        try:
            cached = await self.cache.get(cache_key)
            if cached:
                return json.loads(cached)
        except (RedisError, ValueError) as e:
            logger.warning(f"Cache get failed for {cache_key}: {e}")

        return None

    async def _set_cache(self, cache_key: str, data: Any) -> None:
        if self.cache is None:
            return

        try:
            await self.cache.setex(cache_key, self.cache_ttl, json.dumps(data))
        except RedisError as e:
            logger.warning(f"Cache set failed for {cache_key}: {e}")

    async def invalidate_field_cache(self) -> None:
        """Drop cached field definitions so the next load re-fetches them."""
        if self.cache is None:
            return
        try:
            await self.cache.delete(self._get_cache_key("/dealFields"))
        except RedisError as e:
            logger.warning(f"Cache invalidation failed for deal fields: {e}")

    # =========================================================================
    # HTTP Request Methods
    # =========================================================================

    async def _request(
        self,
        method: str,
        endpoint: str,
        operation: str,
        params: Optional[dict] = None,
        json_data: Optional[dict] = None,
        not_found_ok: bool = False,
    ) -> Optional[dict]:
        client = await self._get_client()
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        query = {**(params or {}), "api_token": self.api_token}

        try:
            response = await client.request(method, url, params=query, json=json_data)
        except httpx.HTTPError as e:
            logger.warning(f"Pipedrive {operation} failed without a response: {e}")
            raise UpstreamError(operation, None, str(e))

        if response.status_code == 404 and not_found_ok:
            return None

        if not response.is_success:
            logger.warning(f"Pipedrive {operation} failed with {response.status_code}")
            raise UpstreamError(operation, response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError:
            raise UpstreamError(
                operation, response.status_code, response.text,
                details={"reason": "response is not JSON"},
            )

        if payload.get("success") is False:
            raise UpstreamError(
                operation, response.status_code, payload.get("error") or response.text
            )
        return payload

    # =========================================================================
    # Deals
    # =========================================================================

    async def get_deal(self, deal_id: int) -> Optional[dict]:
        """Fetch a deal record, or None if Pipedrive does not know it."""
        payload = await self._request(
            "GET", f"/deals/{deal_id}",
            operation=f"get deal {deal_id}",
            not_found_ok=True,
        )
        if payload is None:
            return None
        return payload.get("data")

    async def update_deal(self, deal_id: int, data: dict) -> dict:
        """PUT ``data`` onto a deal and return the updated record."""
        if not data:
            raise ValueError("Update data is required")
        payload = await self._request(
            "PUT", f"/deals/{deal_id}",
            operation=f"update deal {deal_id}",
            json_data=data,
        )
        return payload.get("data") or {}

    async def update_deal_field(self, deal_id: int, field_key: str, value: Any) -> dict:
        """Set a single (custom) field on a deal."""
        logger.info(f"Setting deal {deal_id} field {field_key} to {value!r}")
        return await self.update_deal(deal_id, {field_key: value})

    # =========================================================================
    # Field Definitions
    # =========================================================================

    async def get_deal_fields(self, use_cache: bool = True) -> List[dict]:
        """All deal field definitions, following pagination."""
        cache_key = self._get_cache_key("/dealFields")
        if use_cache:
            cached = await self._get_from_cache(cache_key)
            if cached is not None:
                logger.debug("Cache hit for deal fields")
                return cached

        fields: List[dict] = []
        start = 0
        while True:
            payload = await self._request(
                "GET", "/dealFields",
                operation="get deal fields",
                params={"start": start, "limit": self.FIELDS_PAGE_SIZE},
            )
            page = payload.get("data") or []
            fields.extend(page)

            pagination = (payload.get("additional_data") or {}).get("pagination") or {}
            if not pagination.get("more_items_in_collection") or not page:
                break
            start = pagination.get("next_start", start + len(page))

        logger.info(f"Fetched {len(fields)} Pipedrive deal field definitions")
        if use_cache:
            await self._set_cache(cache_key, fields)
        return fields
