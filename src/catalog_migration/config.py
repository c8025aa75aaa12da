"""Configuration management for Catalog Bridge using Pydantic.

This module provides type-safe configuration models for the destination
store, the legacy catalog API, object storage, the credit budget, and
performance tuning.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_VOCABULARIES: list[str] = [
    "metal",
    "stone_type",
    "shape",
    "setting_type",
    "by_recipient",
    "category",
    "colour",
    "certificate",
    "clarity",
    "ring_size",
    "by_occasion",
    "personalised",
    "carat",
    "band_width",
    "style_product",
]


def _validate_http_url(v: str) -> str:
    if not v.startswith(("http://", "https://")):
        raise ValueError("URL must start with http:// or https://")
    return v.rstrip("/")


class DestinationConfig(BaseModel):
    """Configuration for the destination store's GraphQL Admin API."""

    store_url: str = Field(..., description="Store base URL, e.g. https://shop.myshopify.com")
    access_token: str = Field(..., description="Admin API access token")
    api_version: str = Field(default="2025-01", description="Admin API version")
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")
    timeout: int = Field(default=60, ge=1, le=1200, description="Request timeout in seconds")

    @field_validator("store_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate and normalize the store URL."""
        return _validate_http_url(v)

    @field_validator("access_token")
    @classmethod
    def validate_token(cls, v: str) -> str:
        """Validate token is not empty."""
        if not v or v.strip() == "":
            raise ValueError("Access token cannot be empty")
        return v

    @property
    def graphql_path(self) -> str:
        return f"admin/api/{self.api_version}/graphql.json"


class LegacyEndpoints(BaseModel):
    """Route names on the legacy read API."""

    product_detail: str = Field(default="product/product_detail.php")
    stock_listing: str = Field(default="all_stock_product.php")
    stock_detail: str = Field(default="stock_product.php")
    paged_listing: str = Field(default="all_products.php")
    paged_detail: str = Field(default="all_product_pnc.php")


class LegacyConfig(BaseModel):
    """Configuration for the legacy catalog read API."""

    base_url: str = Field(..., description="Legacy API base URL")
    token: str | None = Field(default=None, description="Optional bearer token")
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")
    timeout: int = Field(default=60, ge=1, le=1200, description="Request timeout in seconds")
    endpoints: LegacyEndpoints = Field(default_factory=LegacyEndpoints)
    detail_page_limit: int = Field(
        default=50, ge=1, le=500, description="Records requested per paged detail call"
    )

    @field_validator("base_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _validate_http_url(v)


class ObjectStorageConfig(BaseModel):
    """Object storage listing used by the media compare workflow."""

    bucket: str = Field(..., description="Bucket name")
    region: str = Field(default="us-east-1", description="Bucket region")
    prefix: str = Field(default="", description="Key prefix to list")
    max_keys: int = Field(default=1000, ge=1, le=1000, description="Keys per listing page")
    public_url_template: str = Field(
        default="https://{bucket}.s3.{region}.amazonaws.com/{key}",
        description="Template used to build public URLs from keys",
    )

    def public_url(self, key: str) -> str:
        return self.public_url_template.format(bucket=self.bucket, region=self.region, key=key)


class CreditBudgetConfig(BaseModel):
    """Call-cost allowance parameters mirroring the destination's throttle."""

    capacity: int = Field(default=20000, ge=1, description="Maximum allowance")
    cost_per_call: int = Field(default=40, ge=0, description="Credits debited per call")
    recovery_rate: int = Field(default=1000, ge=1, description="Credits restored per second")
    safe_threshold: int = Field(
        default=2000, ge=0, description="Callers wait while allowance is below this"
    )
    max_wait_seconds: int = Field(
        default=5, ge=1, le=60, description="Longest single regulate() sleep"
    )
    tick_seconds: float = Field(default=1.0, gt=0, le=60, description="Ticking refill period")
    enable_ticking_recovery: bool = Field(
        default=False, description="Run the background ticking refill alongside regulate()"
    )

    @model_validator(mode="after")
    def validate_threshold(self) -> "CreditBudgetConfig":
        if self.safe_threshold > self.capacity:
            raise ValueError("safe_threshold cannot exceed capacity")
        if self.cost_per_call > self.capacity:
            raise ValueError("cost_per_call cannot exceed capacity")
        return self


class PerformanceConfig(BaseModel):
    """Performance tuning configuration."""

    concurrency: int = Field(
        default=5, ge=1, le=50, description="Maximum batches holding a permit at once"
    )
    batch_size: int = Field(default=100, ge=1, le=10000, description="Work items per batch")
    page_size: int = Field(
        default=250, ge=1, le=250, description="GraphQL connection page size"
    )
    collection_batch_size: int = Field(
        default=240, ge=1, le=250, description="Products per collectionAddProducts call"
    )
    metafield_batch_size: int = Field(
        default=25, ge=1, le=25, description="Metafields per metafieldsSet call"
    )
    bulk_poll_interval: float = Field(
        default=20.0, gt=0, le=600, description="Seconds between bulk job status polls"
    )
    bulk_poll_max_attempts: int | None = Field(
        default=None, ge=1, description="Give up polling after this many attempts"
    )
    compare_batch_size: int = Field(
        default=100000, ge=1, description="Object URLs compared per media batch"
    )
    compare_concurrency: int = Field(
        default=5, ge=1, le=50, description="Media compare batches in flight"
    )
    http_max_connections: int = Field(default=50, ge=1, le=200)
    http_max_keepalive_connections: int = Field(default=20, ge=1, le=100)
    retry_attempts: int = Field(
        default=0,
        ge=0,
        le=10,
        description="Retry attempts for transient legacy read failures (0 disables)",
    )
    retry_backoff_min: int = Field(default=2, ge=1, le=60)
    retry_backoff_max: int = Field(default=60, ge=5, le=300)


class StateConfig(BaseModel):
    """Ledger database configuration."""

    db_path: str = Field(
        default="./migration_ledger.db",
        description="SQLite file path or any SQLAlchemy database URL",
    )
    db_pool_size: int = Field(default=5, ge=1, le=50, description="Pool size (PostgreSQL only)")
    db_max_overflow: int = Field(default=10, ge=1, le=100)
    db_pool_timeout: int = Field(default=30, ge=1, le=300)
    db_pool_recycle: int = Field(default=3600, ge=60, le=28800)

    @property
    def database_url(self) -> str:
        if "://" in self.db_path:
            return self.db_path
        return f"sqlite:///{self.db_path}"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="WARNING", description="Console log level")
    file_level: str = Field(default="DEBUG", description="File log level")
    format: str = Field(default="json", description="Log file format (json or console)")
    file: str | None = Field(default="logs/migration.log", description="Log file path")
    disable_progress: bool = Field(default=False, description="Disable progress bars")
    log_payloads: bool = Field(
        default=False,
        description="Log request/response payloads at DEBUG (tokens are redacted)",
    )
    max_payload_size: int = Field(default=10000, ge=100, le=1000000)

    @field_validator("level", "file_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        valid_formats = ["json", "console"]
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Log format must be one of: {', '.join(valid_formats)}")
        return v_lower


class MigrationOptions(BaseModel):
    """Behavioural switches for migration runs."""

    skip_existing: bool = Field(
        default=False,
        description=(
            "Skip items that already have a ledger entry. Off by default: re-running "
            "an id creates a new destination record."
        ),
    )
    vocabularies: list[str] = Field(
        default_factory=lambda: list(DEFAULT_VOCABULARIES),
        description="Metaobject types loaded into the reference cache",
    )
    vendor: str | None = Field(default=None, description="Vendor set on every created product")
    vocabulary_filter_groups: dict[str, str] = Field(
        default_factory=dict,
        description="Legacy filter group id feeding each vocabulary, in addition to product options",
    )
    variant_key_field: str = Field(
        default="tag_no", description="Record field identifying a variant in detail responses"
    )
    paged_variant_key_field: str = Field(
        default="code", description="Record field identifying a variant in paged detail pages"
    )
    supported_media_extensions: list[str] = Field(
        default_factory=lambda: [".avif", ".mp4"],
        description="Object keys considered by the media compare workflow",
    )
    upload_media_extensions: list[str] = Field(
        default_factory=lambda: [
            ".avif", ".png", ".jpg", ".jpeg", ".gif", ".mp4", ".mov", ".glb", ".usdz"
        ],
        description="Object keys the media upload registers as destination files",
    )

    @field_validator("supported_media_extensions", "upload_media_extensions")
    @classmethod
    def normalize_extensions(cls, v: list[str]) -> list[str]:
        return [ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in v]


class MigrationConfig(BaseSettings):
    """Main migration configuration."""

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    destination: DestinationConfig = Field(..., description="Destination store configuration")
    legacy: LegacyConfig = Field(..., description="Legacy catalog API configuration")
    object_storage: ObjectStorageConfig | None = Field(
        default=None, description="Object storage listing (media workflows only)"
    )
    credit_budget: CreditBudgetConfig = Field(default_factory=CreditBudgetConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    migration: MigrationOptions = Field(default_factory=MigrationOptions)


def load_config_from_yaml(config_path: str | Path) -> MigrationConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Loaded configuration

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file is empty or references a missing variable
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        config_data = yaml.safe_load(f)

    if not config_data:
        raise ValueError(f"Empty configuration file: {config_path}")

    return MigrationConfig(**_expand_env_vars(config_data))


def _expand_env_vars(data: Any) -> Any:
    """Recursively replace ``${VAR_NAME}`` values with environment variables."""
    if isinstance(data, dict):
        return {k: _expand_env_vars(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    if isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        var_name = data[2:-1]
        env_value = os.environ.get(var_name)
        if env_value is None:
            raise ValueError(
                f"Environment variable '{var_name}' not found. "
                f"Please set it in your environment or .env file."
            )
        return env_value
    return data
