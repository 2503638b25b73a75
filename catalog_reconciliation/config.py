"""
Configuration management using Pydantic settings.

Loads configuration from environment variables and .env file.
"""
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Get the directory where this config file is located
_CONFIG_DIR = Path(__file__).parent


class Settings(BaseSettings):
    """Reconciliation service configuration."""

    model_config = SettingsConfigDict(
        env_file=_CONFIG_DIR / ".env",
        env_prefix="RECON_",
        case_sensitive=False,
        extra="ignore",
    )

    # Shopify Admin API
    shop_domain: str = "example.myshopify.com"
    access_token: str = ""
    api_version: str = "2024-07"
    request_timeout: float = 30.0

    # Batch fetcher
    fetch_batch_size: int = 40  # Keeps the search query under the length limit
    fetch_concurrency: int = 20
    verify_concurrency: int = 5
    request_delay: float = 0.5  # Seconds before every batch attempt
    verify_delay: float = 0.2
    max_retries: int = 5
    backoff_base: float = 1.0

    # Bulk export
    bulk_poll_interval: float = 5.0
    bulk_timeout: Optional[float] = 1800.0

    # Remediation
    remediation_concurrency: int = 2
    remediation_delay: float = 1.0
    inventory_location_id: Optional[str] = None  # Defaults to the first store location

    # Business rules
    excluded_location_id: str = "gid://shopify/Location/86376317245"
    clearance_template: str = "clearance"

    # Local SQLite cache for bulk export results
    cache_db_path: str = ".cache/bulk_export.db"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "console"

    @property
    def graphql_url(self) -> str:
        """Admin GraphQL endpoint for the configured shop."""
        return f"https://{self.shop_domain}/admin/api/{self.api_version}/graphql.json"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
