"""Shared configuration management for the platform.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_LOG_LEVEL=debug
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="invoice-review-platform",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Database configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./invoices.db",
        description="SQLAlchemy async database URL",
    )
    database_echo: bool = Field(
        default=False,
        description="Log every SQL statement (debugging only)",
    )
    field_write_concurrency: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Maximum number of invoice field writes issued concurrently",
    )

    # Storage configuration (S3-compatible object storage)
    storage_enabled: bool = Field(
        default=True,
        description="Enable document storage (uploads fail fast when disabled)",
    )
    storage_endpoint: str = Field(
        default="localhost:9000",
        description="S3-compatible storage endpoint (host:port)",
    )
    storage_access_key: str = Field(
        default="",
        description="Storage access key (use env var APP_STORAGE_ACCESS_KEY)",
    )
    storage_secret_key: str = Field(
        default="",
        description="Storage secret key (use env var APP_STORAGE_SECRET_KEY)",
    )
    storage_bucket: str = Field(
        default="invoices",
        description="Bucket holding uploaded invoice documents",
    )
    storage_secure: bool = Field(
        default=False,
        description="Use HTTPS for storage connections",
    )
    storage_public_base_url: str | None = Field(
        default=None,
        description=(
            "Base URL serving the bucket publicly (e.g. https://cdn.example.com). "
            "When unset, document URLs are presigned"
        ),
    )
    storage_url_expiry_seconds: int = Field(
        default=3600,
        gt=0,
        description="Lifetime of presigned document URLs",
    )

    # Extraction provider configuration
    extraction_provider: Literal["simulated", "azure", "openai"] = Field(
        default="simulated",
        description=(
            "Extraction provider: simulated (placeholder values), "
            "azure (Document Intelligence prebuilt-invoice), openai (vision model)"
        ),
    )
    extraction_simulated_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Artificial latency of the simulated provider",
    )
    extraction_simulated_seed: int | None = Field(
        default=None,
        description="Random seed for reproducible simulated values",
    )

    # Azure Document Intelligence (for extraction_provider="azure")
    azure_docintel_endpoint: str = Field(
        default="",
        description="Resource endpoint, e.g. https://<name>.cognitiveservices.azure.com",
    )
    azure_docintel_key: str = Field(
        default="",
        description="Resource key (use env var APP_AZURE_DOCINTEL_KEY)",
    )
    azure_docintel_model: str = Field(
        default="prebuilt-invoice",
        description="Analysis model identifier",
    )
    azure_docintel_api_version: str = Field(
        default="2024-11-30",
        description="REST API version",
    )
    azure_poll_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Delay between analysis status polls",
    )
    azure_poll_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Give up polling after this many seconds",
    )

    # OpenAI configuration (for extraction_provider="openai")
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="Vision-capable model used for field extraction",
    )

    # Lifecycle configuration
    analysis_conflict_policy: Literal["last_write_wins", "reject_stale"] = Field(
        default="last_write_wins",
        description=(
            "Behavior when two analyses of the same invoice overlap: "
            "last_write_wins keeps the latest result, reject_stale refuses the slower one"
        ),
    )

    # Export configuration
    export_provider: Literal["simulated", "sage"] = Field(
        default="simulated",
        description="Export adapter: simulated (no-op) or sage (HTTP API)",
    )
    export_simulated_delay_seconds: float = Field(
        default=1.5,
        ge=0,
        description="Artificial latency of the simulated export",
    )
    export_allow_resubmit: bool = Field(
        default=True,
        description="Allow exporting an invoice that was already exported",
    )
    export_document_type: str = Field(default="FACTURE", description="Sage TypeDocument")
    export_journal_code: str = Field(default="ACH", description="Sage CodeJournal")
    export_currency_code: str = Field(default="EUR", description="Sage DeviseCode")
    sage_api_url: str = Field(
        default="",
        description="Endpoint receiving purchase invoice payloads",
    )
    sage_api_token: str = Field(
        default="",
        description="Bearer token for the Sage endpoint (use env var APP_SAGE_API_TOKEN)",
    )
    sage_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="HTTP timeout for export submissions",
    )

    # Authentication
    auth_jwt_secret: str = Field(
        default="",
        description="HMAC secret used to verify access tokens (use env var APP_AUTH_JWT_SECRET)",
    )
    auth_jwt_algorithm: str = Field(
        default="HS256",
        description="Access token signing algorithm",
    )
    auth_jwt_audience: str | None = Field(
        default="authenticated",
        description="Expected 'aud' claim (None disables the check)",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
