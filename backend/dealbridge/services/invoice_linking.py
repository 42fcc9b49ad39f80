"""Linking Pipedrive deals to QuickBooks invoices.

A deal points at its invoice through the "Quickbooks Invoice Number" custom
field, which holds the invoice's DocNumber. ``InvoiceLinkResolver`` reads
that field, finds the invoice and derives a payment status for display.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional

from dealbridge.core.config import settings
from dealbridge.core.errors import UpstreamError
from dealbridge.services.field_mapping import FieldRegistry
from dealbridge.services.quickbooks import InvoiceRecord, QuickBooksClient
from dealbridge.services.token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)

DEFAULT_FIELD_NAME = "QuickBooks Invoice Number"


# =============================================================================
# Invoice Status
# =============================================================================


@dataclass(frozen=True)
class InvoiceStatus:
    status: str
    color: str
    description: str


def derive_invoice_status(
    balance: float,
    total_amount: float,
    due_date: Optional[date],
    today: date,
) -> InvoiceStatus:
    """Payment status of an invoice.

    Rules are checked in order: Paid, Overdue, Partial, Pending.
    """
    if balance == 0 and total_amount > 0:
        return InvoiceStatus("Paid", "green", "Invoice has been fully paid")

    if due_date is not None and due_date < today and balance > 0:
        days = (today - due_date).days
        return InvoiceStatus(
            "Overdue", "red",
            f"Invoice is overdue by {days} day{'s' if days != 1 else ''}",
        )

    if 0 < balance < total_amount:
        paid = total_amount - balance
        return InvoiceStatus(
            "Partial", "yellow",
            f"Partially paid - ${paid:,.2f} paid of ${total_amount:,.2f}",
        )

    return InvoiceStatus("Pending", "blue", "Invoice is pending payment")


def invoice_status(invoice: InvoiceRecord, today: Optional[date] = None) -> InvoiceStatus:
    return derive_invoice_status(
        invoice.balance,
        invoice.total_amount,
        invoice.due_date,
        today or date.today(),
    )


# =============================================================================
# Link Results
# =============================================================================


@dataclass(frozen=True)
class LinkingInfo:
    """What a deal says about its invoice."""
    has_invoice_number: bool
    invoice_number: Optional[str]
    field_key: str
    field_name: str


@dataclass(frozen=True)
class LinkResult:
    """Outcome of resolving a deal's invoice.

    ``linked_invoice`` None with ``error`` None means no invoice carries the
    number (or the deal has none); a non-None ``error`` means the lookup
    itself failed.
    """
    deal_id: Optional[Any]
    linking_info: LinkingInfo
    linked_invoice: Optional[InvoiceRecord] = None
    status: Optional[InvoiceStatus] = None
    match_count: int = 0
    error: Optional[str] = None

    @property
    def has_invoice_number(self) -> bool:
        return self.linking_info.has_invoice_number

    @property
    def invoice_number(self) -> Optional[str]:
        return self.linking_info.invoice_number


def normalize_invoice_number(value: Any) -> Optional[str]:
    """String form of a stored invoice number, or None when empty.

    Pipedrive returns numeric fields as floats, so ``1001.0`` becomes
    ``"1001"``.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, Decimal) and value == value.to_integral_value():
        return str(int(value))
    text = str(value).strip()
    return text or None


# =============================================================================
# Resolver
# =============================================================================


class InvoiceLinkResolver:
    """Finds the QuickBooks invoice a Pipedrive deal refers to."""

    def __init__(
        self,
        token_manager: TokenLifecycleManager,
        quickbooks: QuickBooksClient,
        registry: FieldRegistry,
        realm_id: str,
        field_key: Optional[str] = None,
        today: Callable[[], date] = date.today,
    ):
        self.token_manager = token_manager
        self.quickbooks = quickbooks
        self.registry = registry
        self.realm_id = realm_id
        self.field_key = field_key or settings.pipedrive_invoice_number_field_key
        self._today = today

    def extract_invoice_number(self, deal: Mapping[str, Any]) -> Optional[str]:
        if not isinstance(deal, Mapping):
            return None
        return normalize_invoice_number(deal.get(self.field_key))

    def linking_info(self, deal: Mapping[str, Any]) -> LinkingInfo:
        invoice_number = self.extract_invoice_number(deal)
        definition = self.registry.resolve(self.field_key)
        return LinkingInfo(
            has_invoice_number=invoice_number is not None,
            invoice_number=invoice_number,
            field_key=self.field_key,
            field_name=definition.name if definition else DEFAULT_FIELD_NAME,
        )

    async def resolve(self, deal: Mapping[str, Any]) -> LinkResult:
        """Link a deal to its invoice.

        A failed QuickBooks search (``UpstreamError``) is reported in
        ``LinkResult.error`` rather than raised. Credential failures,
        including a token refresh that could not reach Intuit
        (``RefreshFailedError``), still raise: they need re-authorization,
        not a per-deal message.
        """
        info = self.linking_info(deal)
        deal_id = deal.get("id") if isinstance(deal, Mapping) else None

        if not info.has_invoice_number:
            return LinkResult(deal_id=deal_id, linking_info=info)

        try:
            matches = await self.token_manager.with_authenticated_call(
                self.realm_id,
                lambda token: self.quickbooks.find_invoices_by_doc_number(
                    token, self.realm_id, info.invoice_number
                ),
            )
        except UpstreamError as e:
            logger.warning(
                f"Invoice search for deal {deal_id} (DocNumber {info.invoice_number}) failed: {e}"
            )
            return LinkResult(deal_id=deal_id, linking_info=info, error=str(e))

        if not matches:
            logger.info(f"No QuickBooks invoice with DocNumber {info.invoice_number} for deal {deal_id}")
            return LinkResult(deal_id=deal_id, linking_info=info)

        if len(matches) > 1:
            logger.warning(
                f"{len(matches)} invoices share DocNumber {info.invoice_number}; using the first"
            )

        invoice = matches[0]
        return LinkResult(
            deal_id=deal_id,
            linking_info=info,
            linked_invoice=invoice,
            status=invoice_status(invoice, self._today()),
            match_count=len(matches),
        )
