"""Unit tests for QuickBooksClient.

Tests cover:
- URL construction, minorversion and authentication headers
- query quoting
- invoice and customer reads and writes
- error handling (HTTP errors, transport errors, 200 faults)
"""

import json
from datetime import date

import httpx
import pytest

from dealbridge.core.errors import UpstreamError
from dealbridge.services.quickbooks import (
    API_BASE_URLS,
    CustomerRecord,
    InvoiceRecord,
    QuickBooksClient,
    quote_literal,
)

REALM = "4620816365"
TOKEN = "access-token"

INVOICE = {
    "Id": "130",
    "DocNumber": "1042",
    "SyncToken": "0",
    "TotalAmt": 500.0,
    "Balance": 200.0,
    "DueDate": "2024-07-01",
    "TxnDate": "2024-06-01",
    "CustomerRef": {"value": "58", "name": "Acme Corp"},
}


class Recorder:
    """MockTransport handler that records requests and replays responses."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


def make_client(recorder, **kwargs) -> QuickBooksClient:
    return QuickBooksClient(
        environment="sandbox",
        minor_version=65,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
        **kwargs,
    )


def query_response(entity: str, items: list) -> httpx.Response:
    return httpx.Response(200, json={"QueryResponse": {entity: items} if items else {}})


# =============================================================================
# Models
# =============================================================================


class TestModels:
    def test_invoice_from_api(self):
        invoice = InvoiceRecord.from_api(INVOICE)

        assert invoice.id == "130"
        assert invoice.doc_number == "1042"
        assert invoice.total_amount == 500.0
        assert invoice.balance == 200.0
        assert invoice.due_date == date(2024, 7, 1)
        assert invoice.customer_id == "58"
        assert invoice.customer_name == "Acme Corp"
        assert invoice.sync_token == "0"
        assert invoice.raw == INVOICE

    def test_invoice_without_optional_fields(self):
        invoice = InvoiceRecord.from_api({"Id": 7})

        assert invoice.id == "7"
        assert invoice.doc_number is None
        assert invoice.due_date is None
        assert invoice.balance == 0.0

    def test_customer_from_api(self):
        customer = CustomerRecord.from_api(
            {"Id": "58", "DisplayName": "Acme Corp", "PrimaryEmailAddr": {"Address": "ap@acme.test"}}
        )

        assert customer.id == "58"
        assert customer.email == "ap@acme.test"

    def test_quote_literal_escapes_quotes(self):
        assert quote_literal("O'Brien") == "'O\\'Brien'"
        assert quote_literal("1001") == "'1001'"


# =============================================================================
# Request Construction
# =============================================================================


class TestRequestConstruction:
    def test_base_urls(self):
        assert make_client(Recorder()).base_url == API_BASE_URLS["sandbox"]
        production = QuickBooksClient(environment="production")
        assert production.base_url == "https://quickbooks.api.intuit.com"

    def test_company_url(self):
        client = make_client(Recorder())
        assert client.company_url(REALM, "/query") == (
            f"https://sandbox-quickbooks.api.intuit.com/v3/company/{REALM}/query"
        )

    async def test_query_headers_and_params(self):
        recorder = Recorder(query_response("Invoice", [INVOICE]))
        client = make_client(recorder)

        await client.query(TOKEN, REALM, "select * from Invoice")

        request = recorder.last
        assert request.method == "GET"
        assert request.url.path == f"/v3/company/{REALM}/query"
        assert request.url.params["query"] == "select * from Invoice"
        assert request.url.params["minorversion"] == "65"
        assert request.headers["Authorization"] == f"Bearer {TOKEN}"
        assert request.headers["Accept"] == "application/json"

    async def test_find_invoices_quotes_doc_number(self):
        recorder = Recorder(query_response("Invoice", [INVOICE]))
        client = make_client(recorder)

        invoices = await client.find_invoices_by_doc_number(TOKEN, REALM, "10'42")

        assert recorder.last.url.params["query"] == (
            "select * from Invoice where DocNumber = '10\\'42'"
        )
        assert [invoice.id for invoice in invoices] == ["130"]

    async def test_find_invoices_no_match(self):
        client = make_client(Recorder(query_response("Invoice", [])))

        assert await client.find_invoices_by_doc_number(TOKEN, REALM, "9999") == []


# =============================================================================
# Invoices
# =============================================================================


class TestInvoices:
    async def test_latest_numbered_invoice(self):
        recorder = Recorder(query_response("Invoice", [INVOICE]))
        client = make_client(recorder)

        latest = await client.latest_numbered_invoice(TOKEN, REALM)

        assert latest.doc_number == "1042"
        assert recorder.last.url.params["query"] == (
            "select * from Invoice where DocNumber is not null "
            "order by cast(DocNumber as int) desc maxresults 1"
        )

    async def test_latest_numbered_invoice_none(self):
        client = make_client(Recorder(query_response("Invoice", [])))

        assert await client.latest_numbered_invoice(TOKEN, REALM) is None

    async def test_create_invoice_posts_json(self):
        recorder = Recorder(httpx.Response(200, json={"Invoice": INVOICE}))
        client = make_client(recorder)
        payload = {"CustomerRef": {"value": "58"}, "DocNumber": "1042", "Line": []}

        invoice = await client.create_invoice(TOKEN, REALM, payload)

        request = recorder.last
        assert request.method == "POST"
        assert request.url.path == f"/v3/company/{REALM}/invoice"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == payload
        assert invoice.doc_number == "1042"

    async def test_sparse_update_payload(self):
        recorder = Recorder(httpx.Response(200, json={"Invoice": {**INVOICE, "DocNumber": "1", "SyncToken": "1"}}))
        client = make_client(recorder)

        invoice = await client.sparse_update_invoice(TOKEN, REALM, "130", "0", {"DocNumber": "1"})

        assert json.loads(recorder.last.content) == {
            "Id": "130",
            "SyncToken": "0",
            "sparse": True,
            "DocNumber": "1",
        }
        assert invoice.doc_number == "1"
        assert invoice.sync_token == "1"

    async def test_get_invoice(self):
        recorder = Recorder(httpx.Response(200, json={"Invoice": INVOICE}))
        client = make_client(recorder)

        invoice = await client.get_invoice(TOKEN, REALM, "130")

        assert recorder.last.url.path == f"/v3/company/{REALM}/invoice/130"
        assert invoice.id == "130"


# =============================================================================
# Customers
# =============================================================================


class TestCustomers:
    async def test_find_customer_by_display_name(self):
        recorder = Recorder(query_response("Customer", [{"Id": "58", "DisplayName": "O'Hara"}]))
        client = make_client(recorder)

        customer = await client.find_customer_by_display_name(TOKEN, REALM, "O'Hara")

        assert recorder.last.url.params["query"] == (
            "select * from Customer where DisplayName = 'O\\'Hara'"
        )
        assert customer.id == "58"

    async def test_find_customer_missing(self):
        client = make_client(Recorder(query_response("Customer", [])))

        assert await client.find_customer_by_display_name(TOKEN, REALM, "Nobody") is None

    async def test_create_customer_with_email(self):
        recorder = Recorder(httpx.Response(200, json={"Customer": {"Id": "59", "DisplayName": "New Co"}}))
        client = make_client(recorder)

        customer = await client.create_customer(TOKEN, REALM, "New Co", "billing@new.test")

        assert json.loads(recorder.last.content) == {
            "DisplayName": "New Co",
            "PrimaryEmailAddr": {"Address": "billing@new.test"},
        }
        assert customer.id == "59"

    async def test_search_customers_pagination(self):
        recorder = Recorder(query_response("Customer", []))
        client = make_client(recorder)

        await client.search_customers(TOKEN, REALM, "acme", page=3, limit=20)

        assert recorder.last.url.params["query"] == (
            "select * from Customer where DisplayName like '%acme%' "
            "startposition 41 maxresults 20"
        )


# =============================================================================
# Error Handling
# =============================================================================


class TestErrorHandling:
    async def test_http_error_raises_upstream_error(self):
        body = '{"Fault":{"Error":[{"Message":"Duplicate Document Number Error"}]}}'
        client = make_client(Recorder(httpx.Response(400, text=body)))

        with pytest.raises(UpstreamError) as exc_info:
            await client.create_invoice(TOKEN, REALM, {})

        assert exc_info.value.status_code == 400
        assert exc_info.value.body == body
        assert exc_info.value.operation == "create invoice"

    async def test_unauthorized_is_not_retried(self):
        recorder = Recorder(httpx.Response(401, text="AuthenticationFailed"))
        client = make_client(recorder)

        with pytest.raises(UpstreamError) as exc_info:
            await client.query(TOKEN, REALM, "select * from Invoice")

        assert exc_info.value.status_code == 401
        assert len(recorder.requests) == 1

    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        client = QuickBooksClient(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        with pytest.raises(UpstreamError) as exc_info:
            await client.query(TOKEN, REALM, "select * from Invoice")

        assert exc_info.value.status_code is None

    async def test_fault_with_success_status(self):
        client = make_client(Recorder(httpx.Response(200, json={"Fault": {"Error": [{"Message": "x"}]}})))

        with pytest.raises(UpstreamError):
            await client.query(TOKEN, REALM, "select * from Invoice")

    async def test_non_json_response(self):
        client = make_client(Recorder(httpx.Response(200, text="<html>")))

        with pytest.raises(UpstreamError) as exc_info:
            await client.query(TOKEN, REALM, "select * from Invoice")

        assert exc_info.value.details["reason"] == "response is not JSON"
