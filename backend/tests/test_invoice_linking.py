"""Unit tests for invoice status derivation and InvoiceLinkResolver."""

from datetime import date, timedelta
from unittest.mock import AsyncMock

import pytest

from dealbridge.core.errors import CredentialNotFoundError, RefreshFailedError, UpstreamError
from dealbridge.services.field_mapping import FieldRegistry
from dealbridge.services.invoice_linking import (
    InvoiceLinkResolver,
    derive_invoice_status,
    invoice_status,
    normalize_invoice_number,
)
from dealbridge.services.quickbooks import InvoiceRecord, QuickBooksClient

REALM = "4620816365"
FIELD_KEY = "1145157c2e32c3664dcb49085fcb7c32dbcde920"
TODAY = date(2024, 6, 15)


class RecordingTokenManager:
    def __init__(self):
        self.calls = 0

    async def with_authenticated_call(self, realm_id, operation):
        self.calls += 1
        return await operation("access-token")


# =============================================================================
# Status Derivation
# =============================================================================


class TestDeriveInvoiceStatus:
    def test_paid(self):
        status = derive_invoice_status(0, 500, TODAY - timedelta(days=1), TODAY)

        assert status.status == "Paid"
        assert status.color == "green"

    def test_overdue(self):
        status = derive_invoice_status(500, 500, TODAY - timedelta(days=1), TODAY)

        assert status.status == "Overdue"
        assert status.color == "red"
        assert status.description == "Invoice is overdue by 1 day"

    def test_overdue_days_plural(self):
        status = derive_invoice_status(200, 500, TODAY - timedelta(days=12), TODAY)

        assert status.status == "Overdue"
        assert "12 days" in status.description

    def test_partial(self):
        status = derive_invoice_status(200, 500, TODAY + timedelta(days=10), TODAY)

        assert status.status == "Partial"
        assert status.color == "yellow"
        assert status.description == "Partially paid - $300.00 paid of $500.00"

    def test_pending(self):
        status = derive_invoice_status(500, 500, TODAY + timedelta(days=10), TODAY)

        assert status.status == "Pending"
        assert status.color == "blue"

    def test_due_today_is_not_overdue(self):
        assert derive_invoice_status(500, 500, TODAY, TODAY).status == "Pending"

    def test_zero_total_is_pending(self):
        assert derive_invoice_status(0, 0, None, TODAY).status == "Pending"

    def test_no_due_date(self):
        assert derive_invoice_status(100, 500, None, TODAY).status == "Partial"

    def test_invoice_status_uses_record_fields(self):
        record = InvoiceRecord(id="1", total_amount=500, balance=0, due_date=TODAY)
        assert invoice_status(record, TODAY).status == "Paid"


class TestNormalizeInvoiceNumber:
    @pytest.mark.parametrize("value,expected", [
        (1001.0, "1001"),
        (1001, "1001"),
        ("1001", "1001"),
        ("  1001 ", "1001"),
        ("INV-7", "INV-7"),
        (1001.5, "1001.5"),
        (None, None),
        ("", None),
        ("   ", None),
        (False, None),
    ])
    def test_normalize(self, value, expected):
        assert normalize_invoice_number(value) == expected


# =============================================================================
# Resolver
# =============================================================================


@pytest.fixture
def token_manager() -> RecordingTokenManager:
    return RecordingTokenManager()


@pytest.fixture
def qb() -> AsyncMock:
    client = AsyncMock(spec=QuickBooksClient)
    client.find_invoices_by_doc_number.return_value = []
    return client


@pytest.fixture
def resolver(token_manager, qb) -> InvoiceLinkResolver:
    return InvoiceLinkResolver(token_manager, qb, FieldRegistry(), REALM, today=lambda: TODAY)


class TestInvoiceLinkResolver:
    async def test_deal_without_number_makes_no_call(self, resolver, token_manager, qb):
        result = await resolver.resolve({"id": 42, "title": "Deal", FIELD_KEY: None})

        assert result.has_invoice_number is False
        assert result.linked_invoice is None
        assert result.error is None
        assert token_manager.calls == 0
        qb.find_invoices_by_doc_number.assert_not_called()

    async def test_empty_string_counts_as_missing(self, resolver, token_manager):
        result = await resolver.resolve({"id": 42, FIELD_KEY: ""})

        assert result.has_invoice_number is False
        assert token_manager.calls == 0

    async def test_linking_info(self, resolver):
        info = resolver.linking_info({"id": 42, FIELD_KEY: 1042.0})

        assert info.has_invoice_number is True
        assert info.invoice_number == "1042"
        assert info.field_key == FIELD_KEY
        assert info.field_name == "Quickbooks Invoice Number"

    async def test_match_with_status(self, resolver, qb):
        qb.find_invoices_by_doc_number.return_value = [
            InvoiceRecord(id="130", doc_number="1042", total_amount=500, balance=500,
                          due_date=TODAY - timedelta(days=3)),
        ]

        result = await resolver.resolve({"id": 42, FIELD_KEY: 1042.0})

        qb.find_invoices_by_doc_number.assert_awaited_once_with("access-token", REALM, "1042")
        assert result.deal_id == 42
        assert result.invoice_number == "1042"
        assert result.linked_invoice.id == "130"
        assert result.status.status == "Overdue"
        assert result.match_count == 1
        assert result.error is None

    async def test_no_match(self, resolver):
        result = await resolver.resolve({"id": 42, FIELD_KEY: "9999"})

        assert result.has_invoice_number is True
        assert result.linked_invoice is None
        assert result.status is None
        assert result.error is None

    async def test_multiple_matches_use_first(self, resolver, qb):
        qb.find_invoices_by_doc_number.return_value = [
            InvoiceRecord(id="1", doc_number="7", total_amount=10, balance=0),
            InvoiceRecord(id="2", doc_number="7", total_amount=10, balance=10),
        ]

        result = await resolver.resolve({"id": 42, FIELD_KEY: "7"})

        assert result.linked_invoice.id == "1"
        assert result.match_count == 2

    async def test_search_failure_reported(self, resolver, qb):
        qb.find_invoices_by_doc_number.side_effect = UpstreamError("query", 500, "Internal error")

        result = await resolver.resolve({"id": 42, FIELD_KEY: "1042"})

        assert result.linked_invoice is None
        assert "HTTP 500" in result.error

    async def test_credential_failure_raises(self, qb):
        token_manager = AsyncMock()
        token_manager.with_authenticated_call.side_effect = CredentialNotFoundError(REALM)
        resolver = InvoiceLinkResolver(token_manager, qb, FieldRegistry(), REALM)

        with pytest.raises(CredentialNotFoundError):
            await resolver.resolve({"id": 42, FIELD_KEY: "1042"})

    async def test_refresh_failure_raises(self, qb):
        token_manager = AsyncMock()
        token_manager.with_authenticated_call.side_effect = RefreshFailedError(REALM, "connection reset")
        resolver = InvoiceLinkResolver(token_manager, qb, FieldRegistry(), REALM)

        with pytest.raises(RefreshFailedError):
            await resolver.resolve({"id": 42, FIELD_KEY: "1042"})
        qb.find_invoices_by_doc_number.assert_not_called()

    async def test_configurable_field_key(self, token_manager, qb):
        other_key = "ab" * 20
        resolver = InvoiceLinkResolver(token_manager, qb, FieldRegistry(), REALM, field_key=other_key)

        info = resolver.linking_info({other_key: "55", FIELD_KEY: "1042"})

        assert info.invoice_number == "55"
        assert info.field_name == "QuickBooks Invoice Number"

    def test_non_mapping_deal(self, resolver):
        assert resolver.extract_invoice_number(None) is None
