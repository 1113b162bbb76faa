"""Configuration management using pydantic-settings"""

import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, model_validator, field_validator
from typing import List, Optional

from blobkeeper.services.chunk_planner import MIB, parse_bucket_sizes_mib


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server Configuration
    port: int = 8917
    host: str = "0.0.0.0"
    public_base_url: str = Field(default="http://localhost:8917", description="Base URL used to build permanent file links")

    # Database Configuration
    database_url: str = "sqlite:///./data/blobkeeper.db"
    database_pool_size: int = Field(default=5, description="Connections kept open in the pool")
    database_max_overflow: int = Field(default=10, description="Extra connections allowed above the pool size")
    database_busy_timeout: float = Field(default=30.0, description="Seconds a writer waits for the database lock")

    # Blob Network Configuration
    blob_proxy_url: str = Field(default="http://localhost:3100", description="Base URL of the blob network proxy")
    blob_mode: str = Field(default="memstore", description="Blob network mode: memstore, testnet, mainnet")
    blob_timeout: Optional[float] = Field(default=None, description="Request timeout in seconds (default depends on blob_mode)")
    blob_fetch_retry_attempts: int = Field(default=3, description="Attempts for blob fetches (uploads are never retried)")
    blob_bucket_sizes_mib: str = Field(default="1,2,4,8,16", description="Comma-separated ascending bucket sizes in MiB")
    certificate_prefix: str = Field(default="0x", description="Marker prepended to certificates when addressing blobs")

    # Upload Limits
    max_file_size: int = Field(default=1024 * MIB, description="Maximum aggregate file size in bytes")
    max_duration_days: int = Field(default=365 * 5, description="Maximum paid storage duration")
    default_duration_days: int = Field(default=30, description="Duration used when the caller does not declare one")

    # Payment Configuration
    payment_bypass: bool = Field(default=False, description="Skip payment verification (testing only)")
    ledger_api_url: Optional[str] = Field(default=None, description="Ledger gateway URL (in-process ledger when unset)")
    ledger_api_key: Optional[str] = Field(default=None, description="Bearer token for the ledger gateway")
    ledger_timeout: float = Field(default=30.0, description="Ledger request timeout in seconds")
    storage_price_wei_per_mib_day: int = Field(default=10 ** 13, description="Storage price per started MiB per day")
    base_gas_wei: int = Field(default=10 ** 14, description="Flat gas charge per blob submission")
    default_renewal_cost_wei: int = Field(default=10 ** 15, description="Renewal charge when the file size is unknown")

    # Renewal Configuration
    renewal_enabled: bool = True
    renewal_interval_minutes: int = Field(default=240, description="Minutes between renewal passes")
    renewal_lookahead_hours: int = Field(default=24, description="Renew files expiring within this window")
    renewal_period_days: int = Field(default=14, description="Retention granted by one blob submission")
    renewal_concurrency: int = Field(default=4, description="Files renewed in parallel")
    balance_staleness_minutes: int = Field(default=60, description="Refresh cached balances older than this")
    abandoned_upload_grace_hours: int = Field(default=24, description="Delete incomplete chunked uploads older than this")
    cleanup_interval_minutes: int = Field(default=60, description="Minutes between maintenance passes")

    # Application Configuration
    environment: str = Field(default="production", validation_alias="ENVIRONMENT")
    log_level: str = Field(default="error", description="Log level: debug, info, warning, error (default: error for production)")

    @model_validator(mode="before")
    @classmethod
    def map_node_env(cls, data: dict) -> dict:
        """Map NODE_ENV to ENVIRONMENT if ENVIRONMENT is not set"""
        if isinstance(data, dict):
            node_env = data.get("NODE_ENV") or os.getenv("NODE_ENV")
            if node_env and "ENVIRONMENT" not in data and "environment" not in data:
                data["ENVIRONMENT"] = node_env
            # Empty optional URLs behave as unset
            for key in ("LEDGER_API_URL", "ledger_api_url", "BLOB_TIMEOUT", "blob_timeout"):
                if key in data and data[key] == "":
                    data[key] = None
        return data

    @field_validator("blob_mode")
    @classmethod
    def validate_blob_mode(cls, v: str) -> str:
        mode = v.strip().lower()
        if mode not in ("memstore", "testnet", "mainnet"):
            raise ValueError(f"blob_mode must be memstore, testnet or mainnet, got {v!r}")
        return mode

    @field_validator("blob_bucket_sizes_mib")
    @classmethod
    def validate_bucket_sizes(cls, v: str) -> str:
        """Bucket sizes must be positive and strictly ascending"""
        try:
            sizes = [int(part.strip()) for part in v.split(",") if part.strip()]
        except ValueError:
            raise ValueError(f"blob_bucket_sizes_mib must be a comma-separated list of integers, got {v!r}")
        if not sizes:
            raise ValueError("blob_bucket_sizes_mib must name at least one bucket")
        if any(size <= 0 for size in sizes):
            raise ValueError("bucket sizes must be positive")
        if any(b <= a for a, b in zip(sizes, sizes[1:])):
            raise ValueError("bucket sizes must be strictly ascending")
        return v

    @model_validator(mode="after")
    def validate_renewal_window(self) -> "Settings":
        """A renewal must always push expiry past the lookahead horizon"""
        if self.renewal_period_days * 24 <= self.renewal_lookahead_hours:
            raise ValueError(
                "renewal_period_days must be longer than renewal_lookahead_hours, "
                "otherwise renewed files would be due again immediately"
            )
        if self.renewal_concurrency < 1:
            raise ValueError("renewal_concurrency must be at least 1")
        return self

    @model_validator(mode="after")
    def set_environment_defaults(self) -> "Settings":
        """Set environment-specific defaults for log level"""
        if self.environment == "production" and not os.getenv("LOG_LEVEL"):
            # Default to error in production unless explicitly set
            self.log_level = "error"
        return self

    @property
    def bucket_sizes(self) -> List[int]:
        """Supported bucket sizes in bytes, ascending"""
        return parse_bucket_sizes_mib(self.blob_bucket_sizes_mib)

    @property
    def effective_blob_timeout(self) -> float:
        """Blob network timeout: long for real dispersal, short for the local memstore"""
        if self.blob_timeout is not None:
            return self.blob_timeout
        if self.blob_mode == "memstore":
            return 30.0
        return 20 * 60.0


# Global settings instance
settings = Settings()
