"""InvoiceAllocation model: idempotency records for invoice creation."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from dealbridge.models.base import BaseModel


class InvoiceAllocation(BaseModel):
    """Records which QuickBooks invoice a caller's idempotency key produced.

    A replayed key returns the recorded invoice instead of creating a second
    one.

    Attributes:
        idempotency_key: Caller-supplied key, unique
        realm_id: QuickBooks company the invoice lives in
        invoice_id: QuickBooks invoice Id
        requested_number: Document number the allocator asked for
        doc_number: Document number the invoice ended up with
    """

    __tablename__ = "invoice_allocations"

    idempotency_key: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    realm_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    invoice_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    requested_number: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    doc_number: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
