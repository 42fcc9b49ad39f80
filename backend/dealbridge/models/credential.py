"""AccessCredential SQLAlchemy model for QuickBooks OAuth tokens."""

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from dealbridge.models.base import BaseModel


class AccessCredential(BaseModel):
    """One QuickBooks OAuth credential per realm (company).

    Tokens are stored Fernet-encrypted; ``AccessCredentialStore`` is the
    only code that reads or writes them.

    Attributes:
        id: UUID primary key (from BaseModel)
        realm_id: QuickBooks company id, unique
        access_token_encrypted: Short-lived bearer token (about one hour)
        refresh_token_encrypted: Long-lived refresh token (about 100 days)
        token_type: Token type reported by the token endpoint
        access_expires_at: When the access token stops being accepted
        refresh_expires_at: When the refresh token stops being accepted
    """

    __tablename__ = "access_credentials"

    _repr_hidden = ("access_token_encrypted", "refresh_token_encrypted")

    realm_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
    )
    access_token_encrypted: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    refresh_token_encrypted: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    token_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="bearer",
    )
    access_expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    refresh_expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
