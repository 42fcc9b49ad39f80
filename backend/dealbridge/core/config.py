"""Application configuration using Pydantic Settings."""

from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "Deal Bridge"
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///./dealbridge.db"

    # Redis (field definition cache)
    redis_url: str = "redis://localhost:6379/0"
    cache_ttl: int = 300  # 5 minutes

    # Transport timeout for every outbound call, in seconds
    http_timeout: float = 30.0

    # Encryption of stored OAuth tokens - empty string means not configured
    encryption_key: str = ""

    # QuickBooks Online
    quickbooks_client_id: str = ""
    quickbooks_client_secret: str = ""
    quickbooks_redirect_uri: str = "http://localhost:3000/api/quickbooks/callback"
    quickbooks_environment: Literal["sandbox", "production"] = "sandbox"
    quickbooks_scope: str = "com.intuit.quickbooks.accounting"
    quickbooks_realm_id: Optional[str] = None
    quickbooks_minor_version: int = 65
    quickbooks_default_item_id: str = "1"
    quickbooks_default_item_name: str = "Services"
    quickbooks_default_tax_code: str = "NON"
    invoice_default_due_days: int = 30

    # Pipedrive
    pipedrive_api_token: str = ""
    pipedrive_base_url: str = "https://api.pipedrive.com/v1"
    pipedrive_invoice_number_field_key: str = "1145157c2e32c3664dcb49085fcb7c32dbcde920"


# Create settings instance
settings = Settings()
