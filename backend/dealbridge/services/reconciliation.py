"""Deal-level operations spanning Pipedrive and QuickBooks."""

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from dealbridge.core.config import settings
from dealbridge.core.errors import UpstreamError
from dealbridge.services.invoice_linking import InvoiceLinkResolver, LinkResult
from dealbridge.services.invoice_numbering import (
    AllocationResult,
    InvoiceDraft,
    InvoiceNumberAllocator,
    validate_draft,
)
from dealbridge.services.pipedrive import PipedriveClient

logger = logging.getLogger(__name__)


@dataclass
class DealInvoiceResult:
    """Invoice created for a deal and whether the deal now points at it.

    ``deal_updated`` False with ``update_error`` set means the invoice exists
    in QuickBooks but the deal's invoice-number field was not written.
    """
    deal_id: int
    allocation: AllocationResult
    deal_updated: bool
    update_error: Optional[str] = None

    @property
    def invoice_number(self) -> Optional[str]:
        return self.allocation.doc_number


class DealInvoiceService:
    """Creates invoices for deals and reports their payment status.

    Example:
        ```python
        service = DealInvoiceService(pipedrive, allocator, resolver)
        result = await service.create_invoice_for_deal(42, draft)
        link = await service.invoice_status_for_deal(42)
        ```
    """

    def __init__(
        self,
        pipedrive: PipedriveClient,
        allocator: InvoiceNumberAllocator,
        resolver: InvoiceLinkResolver,
        field_key: Optional[str] = None,
    ):
        self.pipedrive = pipedrive
        self.allocator = allocator
        self.resolver = resolver
        self.field_key = field_key or settings.pipedrive_invoice_number_field_key

    async def create_invoice_for_deal(
        self,
        deal_id: int,
        draft: Union[InvoiceDraft, Mapping[str, Any]],
        explicit_number: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
        strict_numbering: bool = False,
    ) -> DealInvoiceResult:
        """Create the invoice, then store its number on the deal.

        Failing to update the deal does not undo the invoice; the failure is
        returned in the result.

        Raises:
            Everything ``InvoiceNumberAllocator.allocate_and_create`` raises.
        """
        draft = validate_draft(draft)
        if draft.deal_id is None:
            draft = draft.model_copy(update={"deal_id": deal_id})

        allocation = await self.allocator.allocate_and_create(
            draft,
            explicit_number,
            idempotency_key=idempotency_key,
            strict_numbering=strict_numbering,
        )

        number = allocation.doc_number
        if not number:
            logger.warning(f"Invoice {allocation.invoice.id} has no DocNumber; deal {deal_id} not updated")
            return DealInvoiceResult(
                deal_id=deal_id,
                allocation=allocation,
                deal_updated=False,
                update_error="Created invoice has no document number",
            )

        try:
            await self.pipedrive.update_deal_field(deal_id, self.field_key, number)
        except UpstreamError as e:
            logger.error(
                f"Invoice {allocation.invoice.id} (#{number}) created but deal {deal_id} "
                f"was not updated: {e}"
            )
            return DealInvoiceResult(
                deal_id=deal_id,
                allocation=allocation,
                deal_updated=False,
                update_error=str(e),
            )

        logger.info(f"Deal {deal_id} linked to invoice #{number}")
        return DealInvoiceResult(deal_id=deal_id, allocation=allocation, deal_updated=True)

    async def invoice_status_for_deal(self, deal_id: int) -> Optional[LinkResult]:
        """Resolve the deal's invoice, or None if Pipedrive has no such deal."""
        deal = await self.pipedrive.get_deal(deal_id)
        if deal is None:
            return None
        return await self.resolver.resolve(deal)
