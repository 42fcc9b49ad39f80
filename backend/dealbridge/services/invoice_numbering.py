"""Invoice number allocation.

QuickBooks is the numbering authority: it may ignore the ``DocNumber`` sent
with a new invoice and assign its own. ``InvoiceNumberAllocator`` computes
the next number from the highest existing one, creates the invoice and, when
QuickBooks overrode the number, patches it back with a sparse update.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, List, Mapping, Optional, TypeVar, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dealbridge.core.config import settings
from dealbridge.core.errors import (
    NumberingWarningError,
    RefreshFailedError,
    UpstreamError,
    ValidationError,
)
from dealbridge.core.logging import LoggerAdapter
from dealbridge.models.allocation import InvoiceAllocation
from dealbridge.services.quickbooks import InvoiceRecord, QuickBooksClient
from dealbridge.services.token_manager import RealmLocks, TokenLifecycleManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

INTEGER_DOC_NUMBER = re.compile(r"\s*(\d+)\s*")
ISO_DATE = re.compile(r"\d{4}-\d{2}-\d{2}")

# Serialises "read latest number, then create" per realm within the process
allocation_locks = RealmLocks()


# =============================================================================
# Drafts and Results
# =============================================================================


class InvoiceLineItem(BaseModel):
    """One sales line of an invoice draft."""
    description: str = ""
    amount: float = Field(allow_inf_nan=False)
    quantity: Optional[float] = Field(default=None, allow_inf_nan=False)
    unit_price: Optional[float] = Field(default=None, allow_inf_nan=False)


class InvoiceDraft(BaseModel):
    """Caller input for a new invoice.

    Attributes:
        deal_id: Pipedrive deal the invoice is for (used in the default memo)
        customer_id: QuickBooks customer Id; skips the customer lookup
        customer_name: DisplayName to find or create when no id is given
        customer_email: Email for a newly created customer
        line_items: Sales lines, at least one
        due_date: ``YYYY-MM-DD``; defaults to ``invoice_default_due_days`` ahead
        txn_date: ``YYYY-MM-DD``; QuickBooks uses today when omitted
        memo: Customer memo; defaults to "Invoice for Deal #<deal_id>"
        sales_term_ref: QuickBooks Term Id
    """
    deal_id: Optional[Union[int, str]] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    line_items: List[InvoiceLineItem] = Field(default_factory=list)
    due_date: Optional[str] = None
    txn_date: Optional[str] = None
    memo: Optional[str] = None
    sales_term_ref: Optional[str] = None

    @property
    def total(self) -> float:
        return round(sum(item.amount for item in self.line_items), 2)


@dataclass(frozen=True)
class NextNumber:
    """Candidate document number and what it was derived from."""
    candidate: str
    last_number: Optional[str] = None
    warning: Optional[str] = None


@dataclass
class AllocationResult:
    """Outcome of ``allocate_and_create``.

    Attributes:
        invoice: The invoice as QuickBooks last returned it
        requested_number: DocNumber sent with the create request
        assigned_number: DocNumber QuickBooks gave the created invoice
        reconciled: True when a sparse update restored ``requested_number``
        warnings: Numbering problems the caller should surface
        replayed: True when an idempotency key returned an earlier invoice
    """
    invoice: InvoiceRecord
    requested_number: str
    assigned_number: Optional[str]
    reconciled: bool = False
    warnings: List[str] = field(default_factory=list)
    replayed: bool = False

    @property
    def doc_number(self) -> Optional[str]:
        return self.invoice.doc_number


def parse_doc_number(doc_number: Optional[str]) -> Optional[int]:
    """Integer value of a DocNumber, or None when it is not purely digits."""
    if doc_number is None:
        return None
    match = INTEGER_DOC_NUMBER.fullmatch(str(doc_number))
    return int(match.group(1)) if match else None


def _is_iso_date(value: str) -> bool:
    if not ISO_DATE.fullmatch(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def validate_draft(draft: Union[InvoiceDraft, Mapping[str, Any]]) -> InvoiceDraft:
    """Check a draft before any network call.

    Raises:
        ValidationError: Listing every problem found.
    """
    if not isinstance(draft, InvoiceDraft):
        if not isinstance(draft, Mapping):
            raise ValidationError("Invoice draft must be an object")
        try:
            draft = InvoiceDraft.model_validate(dict(draft))
        except PydanticValidationError as e:
            errors = [
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in e.errors()
            ]
            raise ValidationError("Invalid invoice draft", errors=errors) from e

    errors = []
    if not draft.customer_id and not (draft.customer_name or "").strip():
        errors.append("customer_name or customer_id is required")

    if not draft.line_items:
        errors.append("line_items must contain at least one item")
    for index, item in enumerate(draft.line_items):
        if not item.description.strip():
            errors.append(f"line_items[{index}]: description is required")
        if item.amount < 0:
            errors.append(f"line_items[{index}]: amount must not be negative")
        if item.quantity is not None and item.quantity <= 0:
            errors.append(f"line_items[{index}]: quantity must be positive")

    for name in ("due_date", "txn_date"):
        value = getattr(draft, name)
        if value is not None and not _is_iso_date(value):
            errors.append(f"{name} must be a YYYY-MM-DD date, got {value!r}")

    if errors:
        raise ValidationError(errors[0] if len(errors) == 1 else "Invalid invoice draft", errors=errors)
    return draft


# =============================================================================
# Allocator
# =============================================================================


class InvoiceNumberAllocator:
    """Creates QuickBooks invoices with sequential document numbers.

    Every QuickBooks call goes through the token manager. Allocations for one
    realm are serialised within the process; nothing prevents two processes
    from computing the same number.

    Example:
        ```python
        allocator = InvoiceNumberAllocator(manager, qb, realm_id, db=db)
        result = await allocator.allocate_and_create(
            {"deal_id": 42, "customer_name": "Acme", "line_items": [...]},
            idempotency_key="deal-42",
        )
        ```
    """

    def __init__(
        self,
        token_manager: TokenLifecycleManager,
        quickbooks: QuickBooksClient,
        realm_id: str,
        db: Optional[AsyncSession] = None,
        locks: Optional[RealmLocks] = None,
        today: Callable[[], date] = date.today,
    ):
        """Initialize InvoiceNumberAllocator.

        Args:
            token_manager: Supplies valid access tokens
            quickbooks: QuickBooks API client
            realm_id: Company the invoices are created in
            db: Session for idempotency records; required only when callers
                pass an idempotency key
            locks: Per-realm allocation locks. Defaults to the process-wide set.
            today: Returns the current date; injectable for tests.
        """
        self.token_manager = token_manager
        self.quickbooks = quickbooks
        self.realm_id = realm_id
        self.db = db
        self._locks = locks if locks is not None else allocation_locks
        self._today = today
        self._log = LoggerAdapter(logger, {"realm_id": realm_id})

    async def _call(self, operation: Callable[[str], Awaitable[T]]) -> T:
        return await self.token_manager.with_authenticated_call(self.realm_id, operation)

    # =========================================================================
    # Numbering
    # =========================================================================

    async def next_document_number(self) -> NextNumber:
        """Number that follows the highest existing DocNumber.

        A latest DocNumber that is not an integer restarts the sequence at 1
        and reports a warning.
        """
        latest = await self._call(
            lambda token: self.quickbooks.latest_numbered_invoice(token, self.realm_id)
        )
        last_number = latest.doc_number if latest else None
        if last_number is None:
            return NextNumber(candidate="1")

        value = parse_doc_number(last_number)
        if value is None:
            warning = (
                f"Latest invoice number {last_number!r} is not numeric; "
                f"numbering restarts at 1"
            )
            self._log.warning(warning)
            return NextNumber(candidate="1", last_number=last_number, warning=warning)

        return NextNumber(candidate=str(value + 1), last_number=last_number)

    # =========================================================================
    # Invoice creation
    # =========================================================================

    async def allocate_and_create(
        self,
        draft: Union[InvoiceDraft, Mapping[str, Any]],
        explicit_number: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
        strict_numbering: bool = False,
    ) -> AllocationResult:
        """Create an invoice with the next (or an explicit) document number.

        Args:
            draft: Invoice content
            explicit_number: DocNumber to request instead of the next one
            idempotency_key: Replaying a recorded key returns the recorded
                invoice instead of creating another
            strict_numbering: Refuse to restart numbering at 1 when the
                latest DocNumber is not numeric

        Raises:
            ValidationError: Malformed draft; nothing was sent.
            NumberingWarningError: ``strict_numbering`` refused the candidate;
                nothing was created.
            UpstreamError: A QuickBooks call failed.
            CredentialNotFoundError, RefreshFailedError: No usable credential.
        """
        draft = validate_draft(draft)
        if explicit_number is not None:
            explicit_number = str(explicit_number).strip()
            if not explicit_number:
                raise ValidationError("explicit_number must not be blank")
        if idempotency_key is not None and self.db is None:
            raise ValueError("A database session is required for idempotency keys")

        async with self._locks.get(self.realm_id):
            if idempotency_key is not None:
                replayed = await self._replay(idempotency_key)
                if replayed is not None:
                    return replayed

            warnings: List[str] = []
            if explicit_number:
                requested = explicit_number
            else:
                next_number = await self.next_document_number()
                if next_number.warning:
                    if strict_numbering:
                        raise NumberingWarningError(next_number.last_number, next_number.candidate)
                    warnings.append(next_number.warning)
                requested = next_number.candidate

            customer_id = await self._resolve_customer(draft)
            payload = self.build_invoice_payload(draft, customer_id, requested)

            created = await self._call(
                lambda token: self.quickbooks.create_invoice(token, self.realm_id, payload)
            )
            self._log.info(f"Created invoice {created.id} with DocNumber {created.doc_number}")

            invoice, reconciled = await self._reconcile(created, requested)
            if invoice.doc_number != requested:
                warnings.append(
                    f"QuickBooks assigned DocNumber {invoice.doc_number} instead of {requested}"
                )

            if idempotency_key is not None:
                await self._record(idempotency_key, requested, invoice)

            return AllocationResult(
                invoice=invoice,
                requested_number=requested,
                assigned_number=created.doc_number,
                reconciled=reconciled,
                warnings=warnings,
            )

    async def _resolve_customer(self, draft: InvoiceDraft) -> str:
        if draft.customer_id:
            return draft.customer_id

        name = draft.customer_name.strip()
        existing = await self._call(
            lambda token: self.quickbooks.find_customer_by_display_name(token, self.realm_id, name)
        )
        if existing is not None:
            self._log.debug(f"Using existing customer {existing.id} for {name!r}")
            return existing.id

        created = await self._call(
            lambda token: self.quickbooks.create_customer(
                token, self.realm_id, name, draft.customer_email
            )
        )
        self._log.info(f"Created customer {created.id} for {name!r}")
        return created.id

    def build_invoice_payload(
        self,
        draft: InvoiceDraft,
        customer_id: str,
        doc_number: str,
    ) -> dict:
        """QuickBooks ``Invoice`` document for a validated draft."""
        lines: List[dict] = []
        for line_number, item in enumerate(draft.line_items, start=1):
            lines.append({
                "Id": str(line_number),
                "LineNum": line_number,
                "Description": item.description,
                "Amount": item.amount,
                "DetailType": "SalesItemLineDetail",
                "SalesItemLineDetail": {
                    "ItemRef": {
                        "value": settings.quickbooks_default_item_id,
                        "name": settings.quickbooks_default_item_name,
                    },
                    "UnitPrice": item.unit_price if item.unit_price is not None else item.amount,
                    "Qty": item.quantity or 1,
                    "TaxCodeRef": {"value": settings.quickbooks_default_tax_code},
                },
            })
        lines.append({
            "Amount": draft.total,
            "DetailType": "SubTotalLineDetail",
            "SubTotalLineDetail": {},
        })

        due_date = draft.due_date or (
            self._today() + timedelta(days=settings.invoice_default_due_days)
        ).isoformat()

        payload: dict[str, Any] = {
            "CustomerRef": {"value": customer_id},
            "DocNumber": doc_number,
            "Line": lines,
            "DueDate": due_date,
        }
        memo = draft.memo or (f"Invoice for Deal #{draft.deal_id}" if draft.deal_id is not None else None)
        if memo:
            payload["CustomerMemo"] = {"value": memo}
        if draft.txn_date:
            payload["TxnDate"] = draft.txn_date
        if draft.sales_term_ref:
            payload["SalesTermRef"] = {"value": draft.sales_term_ref}
        return payload

    async def _reconcile(self, created: InvoiceRecord, requested: str) -> tuple[InvoiceRecord, bool]:
        """Patch the requested DocNumber back if QuickBooks replaced it.

        A failed patch is logged and the created invoice returned as is.
        """
        if created.doc_number == requested:
            return created, False

        self._log.warning(
            f"QuickBooks assigned DocNumber {created.doc_number} to invoice {created.id} "
            f"instead of {requested}, patching"
        )
        try:
            patched = await self._call(
                lambda token: self.quickbooks.sparse_update_invoice(
                    token, self.realm_id, created.id, created.sync_token or "0",
                    {"DocNumber": requested},
                )
            )
        except (UpstreamError, RefreshFailedError) as e:
            self._log.warning(f"Could not restore DocNumber {requested} on invoice {created.id}: {e}")
            return created, False

        return patched, True

    # =========================================================================
    # Idempotency
    # =========================================================================

    async def _replay(self, idempotency_key: str) -> Optional[AllocationResult]:
        result = await self.db.execute(
            select(InvoiceAllocation).where(InvoiceAllocation.idempotency_key == idempotency_key)
        )
        allocation = result.scalar_one_or_none()
        if allocation is None:
            return None

        if allocation.realm_id != self.realm_id:
            raise ValidationError(
                f"Idempotency key {idempotency_key!r} was used for another QuickBooks company"
            )

        self._log.info(
            f"Idempotency key {idempotency_key!r} already produced invoice {allocation.invoice_id}"
        )
        invoice = await self._call(
            lambda token: self.quickbooks.get_invoice(token, self.realm_id, allocation.invoice_id)
        )
        return AllocationResult(
            invoice=invoice,
            requested_number=allocation.requested_number,
            assigned_number=allocation.doc_number,
            replayed=True,
        )

    async def _record(self, idempotency_key: str, requested: str, invoice: InvoiceRecord) -> None:
        self.db.add(
            InvoiceAllocation(
                idempotency_key=idempotency_key,
                realm_id=self.realm_id,
                invoice_id=invoice.id,
                requested_number=requested,
                doc_number=invoice.doc_number,
            )
        )
        await self.db.flush()
        await self.db.commit()
