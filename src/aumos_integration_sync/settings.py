"""Service settings for aumos-integration-sync.

Settings use the AUMOS_INTEGRATIONS_ prefix and cover:
- Primary database connection
- Credential vault key
- Sync scheduler cadence and concurrency
- Vendor HTTP client behaviour
"""

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


class Settings(BaseSettings):
    """Settings for aumos-integration-sync.

    Environment variable prefix: AUMOS_INTEGRATIONS_
    """

    service_name: str = "aumos-integration-sync"

    environment: str = Field(
        default="production",
        description="Deployment environment: development | test | staging | production. "
        "Only development may run without an encryption key.",
    )
    log_level: str = Field(
        default="info",
        description="Minimum log level (debug, info, warning, error, critical).",
    )
    log_json: bool = Field(
        default=True,
        description="Render logs as single-line JSON. Disable for console output in development.",
    )

    # -------------------------------------------------------------------------
    # Primary database
    # -------------------------------------------------------------------------

    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/aumos",
        description="SQLAlchemy async URL for the primary PostgreSQL database.",
    )
    db_pool_size: int = Field(
        default=10,
        description="Connection pool size for the primary database.",
    )
    db_max_overflow: int = Field(
        default=5,
        description="Max overflow connections above db_pool_size.",
    )
    db_pool_timeout: int = Field(
        default=30,
        description="Seconds to wait for a database connection before raising an error.",
    )

    # -------------------------------------------------------------------------
    # Credential vault
    # -------------------------------------------------------------------------

    encryption_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("AUMOS_INTEGRATIONS_ENCRYPTION_KEY", "INTEGRATION_ENCRYPTION_KEY"),
        description="AES-256 key for integration credentials as 64 hex characters. "
        "Generate with: openssl rand -hex 32",
    )

    # -------------------------------------------------------------------------
    # Sync scheduling
    # -------------------------------------------------------------------------

    max_concurrent_syncs: int = Field(
        default=3,
        ge=1,
        description="Upper bound on integration syncs running at the same time.",
    )
    scheduler_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between scheduler checks for due integrations.",
    )
    sync_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Hard limit on the vendor-facing part of a single sync. "
        "A sync exceeding it fails and releases its scheduler slot.",
    )
    default_sync_frequency_minutes: int = Field(
        default=60,
        ge=1,
        description="Sync frequency assigned to newly connected integrations.",
    )

    # -------------------------------------------------------------------------
    # Vendor clients
    # -------------------------------------------------------------------------

    http_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-request timeout for vendor HTTP APIs (GitHub, Google Workspace).",
    )
    evidence_validity_hours: int = Field(
        default=24,
        ge=1,
        description="Length of the validity window stamped on generated evidence.",
    )

    model_config = SettingsConfigDict(env_prefix="AUMOS_INTEGRATIONS_", populate_by_name=True)

    @field_validator("encryption_key")
    @classmethod
    def _check_encryption_key(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        if len(value) != 64 or not set(value) <= _HEX_DIGITS:
            raise ValueError("encryption_key must be exactly 64 hex characters (32 bytes)")
        return value

    @property
    def is_development(self) -> bool:
        """Return True when running in a development environment."""
        return self.environment.lower() == "development"
