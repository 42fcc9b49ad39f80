"""SQLAlchemy models package.

All models are imported here so they are registered with SQLAlchemy's
metadata before ``init_db`` creates the tables.
"""

from dealbridge.models.base import BaseModel, TimestampMixin, UUIDPrimaryKeyMixin
from dealbridge.models.credential import AccessCredential
from dealbridge.models.allocation import InvoiceAllocation

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "AccessCredential",
    "InvoiceAllocation",
]
