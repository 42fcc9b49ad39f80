"""QuickBooks Online accounting API client.

Thin async wrapper over the v3 REST API used by the reconciliation layer:

- SQL-like queries (``/query``) for invoices and customers
- invoice creation and sparse updates (``/invoice``)
- customer creation (``/customer``)

Every method takes the access token explicitly; obtaining a valid one is
``TokenLifecycleManager``'s job. Failures raise ``UpstreamError`` and are
never retried here.
"""

import logging
from datetime import date
from typing import Any, List, Optional

import httpx
from pydantic import BaseModel, Field

from dealbridge.core.config import settings
from dealbridge.core.errors import UpstreamError

logger = logging.getLogger(__name__)

API_BASE_URLS = {
    "sandbox": "https://sandbox-quickbooks.api.intuit.com",
    "production": "https://quickbooks.api.intuit.com",
}


# =============================================================================
# Data Models
# =============================================================================


class InvoiceRecord(BaseModel):
    """The parts of a QuickBooks invoice the reconciliation layer reads."""
    id: str
    doc_number: Optional[str] = None
    total_amount: float = 0.0
    balance: float = 0.0
    due_date: Optional[date] = None
    txn_date: Optional[date] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    sync_token: Optional[str] = None
    raw: dict = Field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, payload: dict) -> "InvoiceRecord":
        """Build from an ``Invoice`` object as returned by the API."""
        customer_ref = payload.get("CustomerRef") or {}
        return cls(
            id=str(payload["Id"]),
            doc_number=payload.get("DocNumber"),
            total_amount=payload.get("TotalAmt") or 0.0,
            balance=payload.get("Balance") or 0.0,
            due_date=payload.get("DueDate") or None,
            txn_date=payload.get("TxnDate") or None,
            customer_id=customer_ref.get("value"),
            customer_name=customer_ref.get("name"),
            sync_token=payload.get("SyncToken"),
            raw=payload,
        )


class CustomerRecord(BaseModel):
    """QuickBooks customer."""
    id: str
    display_name: str
    email: Optional[str] = None
    sync_token: Optional[str] = None

    @classmethod
    def from_api(cls, payload: dict) -> "CustomerRecord":
        email = (payload.get("PrimaryEmailAddr") or {}).get("Address")
        return cls(
            id=str(payload["Id"]),
            display_name=payload.get("DisplayName", ""),
            email=email,
            sync_token=payload.get("SyncToken"),
        )


def quote_literal(value: str) -> str:
    """Quote a string for the QuickBooks query language."""
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


# =============================================================================
# QuickBooks Client
# =============================================================================


class QuickBooksClient:
    """Client for the QuickBooks Online accounting API.

    Example:
        ```python
        async with QuickBooksClient() as qb:
            matches = await qb.find_invoices_by_doc_number(token, realm_id, "1001")
        ```
    """

    def __init__(
        self,
        environment: Optional[str] = None,
        base_url: Optional[str] = None,
        minor_version: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize QuickBooksClient.

        Args:
            environment: "sandbox" or "production". Defaults to settings.
            base_url: Explicit API host, overrides ``environment``.
            minor_version: API minor version sent with every request.
            http_client: Optional preconfigured client (used by tests).
            timeout: Request timeout in seconds. Defaults to settings.
        """
        environment = environment or settings.quickbooks_environment
        self.base_url = (base_url or API_BASE_URLS.get(environment, API_BASE_URLS["sandbox"])).rstrip("/")
        self.minor_version = (
            minor_version if minor_version is not None else settings.quickbooks_minor_version
        )
        self.timeout = timeout if timeout is not None else settings.http_timeout
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

    async def __aenter__(self) -> "QuickBooksClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================================
    # HTTP Request Methods
    # =========================================================================

    def company_url(self, realm_id: str, endpoint: str) -> str:
        return f"{self.base_url}/v3/company/{realm_id}/{endpoint.lstrip('/')}"

    def _handle_response_error(self, response: httpx.Response, operation: str) -> None:
        """Raise UpstreamError for non-2xx responses."""
        if response.is_success:
            return

        logger.warning(
            f"QuickBooks {operation} failed with {response.status_code} "
            f"(intuit_tid={response.headers.get('intuit_tid', '-')})"
        )
        raise UpstreamError(operation, response.status_code, response.text)

    async def _request(
        self,
        method: str,
        access_token: str,
        realm_id: str,
        endpoint: str,
        operation: str,
        params: Optional[dict] = None,
        json_data: Optional[dict] = None,
    ) -> dict:
        client = await self._get_client()
        query = {"minorversion": self.minor_version, **(params or {})}
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        if json_data is not None:
            headers["Content-Type"] = "application/json"

        try:
            response = await client.request(
                method,
                self.company_url(realm_id, endpoint),
                params=query,
                json=json_data,
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.warning(f"QuickBooks {operation} failed without a response: {e}")
            raise UpstreamError(operation, None, str(e), details={"realm_id": realm_id})

        self._handle_response_error(response, operation)

        try:
            data = response.json()
        except ValueError:
            raise UpstreamError(
                operation, response.status_code, response.text,
                details={"reason": "response is not JSON"},
            )

        # Some faults arrive with a 200 status
        fault = data.get("Fault") or data.get("fault")
        if fault:
            raise UpstreamError(operation, response.status_code, response.text)

        return data

    # =========================================================================
    # Queries
    # =========================================================================

    async def query(self, access_token: str, realm_id: str, statement: str) -> dict:
        """Run a query statement and return ``QueryResponse``."""
        logger.debug(f"QuickBooks query: {statement}")
        data = await self._request(
            "GET", access_token, realm_id, "/query",
            operation="query",
            params={"query": statement},
        )
        return data.get("QueryResponse") or {}

    async def find_invoices_by_doc_number(
        self,
        access_token: str,
        realm_id: str,
        doc_number: str,
    ) -> List[InvoiceRecord]:
        """All invoices whose DocNumber equals ``doc_number`` exactly."""
        response = await self.query(
            access_token, realm_id,
            f"select * from Invoice where DocNumber = {quote_literal(doc_number)}",
        )
        return [InvoiceRecord.from_api(item) for item in response.get("Invoice", [])]

    async def latest_numbered_invoice(
        self,
        access_token: str,
        realm_id: str,
    ) -> Optional[InvoiceRecord]:
        """The invoice with the highest DocNumber, or None if there is none."""
        response = await self.query(
            access_token, realm_id,
            "select * from Invoice where DocNumber is not null "
            "order by cast(DocNumber as int) desc maxresults 1",
        )
        invoices = response.get("Invoice", [])
        if not invoices:
            return None
        return InvoiceRecord.from_api(invoices[0])

    async def get_invoice(
        self,
        access_token: str,
        realm_id: str,
        invoice_id: str,
    ) -> InvoiceRecord:
        data = await self._request(
            "GET", access_token, realm_id, f"/invoice/{invoice_id}",
            operation="get invoice",
        )
        return InvoiceRecord.from_api(data["Invoice"])

    # =========================================================================
    # Invoice Writes
    # =========================================================================

    async def create_invoice(
        self,
        access_token: str,
        realm_id: str,
        payload: dict,
    ) -> InvoiceRecord:
        """POST a full invoice document."""
        data = await self._request(
            "POST", access_token, realm_id, "/invoice",
            operation="create invoice",
            json_data=payload,
        )
        return InvoiceRecord.from_api(data["Invoice"])

    async def sparse_update_invoice(
        self,
        access_token: str,
        realm_id: str,
        invoice_id: str,
        sync_token: str,
        fields: dict,
    ) -> InvoiceRecord:
        """Patch only ``fields`` on an existing invoice.

        ``sync_token`` must be the value from the latest read; QuickBooks
        rejects stale tokens.
        """
        payload: dict[str, Any] = {
            "Id": invoice_id,
            "SyncToken": sync_token,
            "sparse": True,
            **fields,
        }
        data = await self._request(
            "POST", access_token, realm_id, "/invoice",
            operation="update invoice",
            json_data=payload,
        )
        return InvoiceRecord.from_api(data["Invoice"])

    # =========================================================================
    # Customers
    # =========================================================================

    async def find_customer_by_display_name(
        self,
        access_token: str,
        realm_id: str,
        display_name: str,
    ) -> Optional[CustomerRecord]:
        response = await self.query(
            access_token, realm_id,
            f"select * from Customer where DisplayName = {quote_literal(display_name)}",
        )
        customers = response.get("Customer", [])
        return CustomerRecord.from_api(customers[0]) if customers else None

    async def create_customer(
        self,
        access_token: str,
        realm_id: str,
        display_name: str,
        email: Optional[str] = None,
    ) -> CustomerRecord:
        payload: dict[str, Any] = {"DisplayName": display_name}
        if email:
            payload["PrimaryEmailAddr"] = {"Address": email}
        data = await self._request(
            "POST", access_token, realm_id, "/customer",
            operation="create customer",
            json_data=payload,
        )
        return CustomerRecord.from_api(data["Customer"])

    async def search_customers(
        self,
        access_token: str,
        realm_id: str,
        text: str = "",
        page: int = 1,
        limit: int = 50,
    ) -> List[CustomerRecord]:
        """Customers whose DisplayName contains ``text``, one page at a time."""
        statement = "select * from Customer"
        if text.strip():
            statement += f" where DisplayName like {quote_literal(f'%{text.strip()}%')}"
        start_position = (max(page, 1) - 1) * limit + 1
        statement += f" startposition {start_position} maxresults {limit}"

        response = await self.query(access_token, realm_id, statement)
        return [CustomerRecord.from_api(item) for item in response.get("Customer", [])]
