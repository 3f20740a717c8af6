"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables
  - Fall back to .env file
  - Validate types and constraints at startup
  - Keep the database password out of source control

Algorithm choice and validity periods live here instead of in ambient
state; the composition root hands them to the CA and its workflows.

Architecture: Only AppSettings is a BaseSettings instance. Sub-settings are plain
BaseModel classes populated by AppSettings via env_nested_delimiter="__", so the env
var CA__KEY_ALGORITHM maps to ca.key_algorithm, DATABASE__HOST maps to database.host, etc.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pki_manager.domain.models import KeyAlgorithm, KeySpec

# Resolve the .env file relative to the project root (two levels above this file),
# so settings load correctly regardless of the working directory at runtime.
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"

SUPPORTED_CURVES = ("prime256v1", "secp384r1", "secp521r1")


class DatabaseSettings(BaseModel):
    """
    PostgreSQL connection configuration for the ledger and counters.

    Accepts either a full connection string via DATABASE__DSN or individual
    components (DATABASE__HOST, DATABASE__PORT, DATABASE__NAME,
    DATABASE__USERNAME, DATABASE__PASSWORD). The DSN takes priority when both
    are provided and is always available via `get_dsn()` after construction.

    lock_timeout_ms and connect_timeout_seconds bound every ledger and counter
    operation: contention fails fast as STORAGE_ERROR instead of blocking.
    """

    # Option 1: full connection string (takes priority)
    dsn: SecretStr | None = Field(
        default=None,
        description="Full PostgreSQL connection string (overrides individual fields)",
    )

    # Option 2: individual components
    host: str | None = Field(default=None, description="PostgreSQL host")
    port: int = Field(default=5432, ge=1, le=65535, description="PostgreSQL port")
    name: str | None = Field(default=None, description="PostgreSQL database name")
    username: str | None = Field(default=None, description="PostgreSQL username")
    password: SecretStr | None = Field(default=None, description="PostgreSQL password")

    lock_timeout_ms: int = Field(default=5000, ge=1, description="Row/table lock wait limit")
    connect_timeout_seconds: int = Field(default=10, ge=1, description="Connection wait limit")

    @model_validator(mode="after")
    def resolve_dsn(self) -> DatabaseSettings:
        """
        Ensure `dsn` is always populated.

        If DATABASE__DSN is not set, build the DSN from the individual
        component fields. Raises ValueError at startup if neither a full DSN
        nor all required components are provided.
        """
        if self.dsn is not None:
            return self
        missing = [f for f, v in [
            ("DATABASE__HOST", self.host),
            ("DATABASE__NAME", self.name),
            ("DATABASE__USERNAME", self.username),
            ("DATABASE__PASSWORD", self.password),
        ] if not v]
        if missing:
            raise ValueError(
                "Set DATABASE__DSN or provide all of: "
                + ", ".join(missing)
            )
        dsn_value = (
            f"postgresql://{self.username}:{self.password.get_secret_value()}"  # type: ignore[union-attr]
            f"@{self.host}:{self.port}/{self.name}"
        )
        object.__setattr__(self, "dsn", SecretStr(dsn_value))
        return self

    def get_dsn(self) -> str:
        """Return the active database DSN as a plain string."""
        assert self.dsn is not None  # guaranteed by resolve_dsn validator
        return self.dsn.get_secret_value()


class CaSettings(BaseModel):
    """
    Certificate Authority parameters.

    Defaults reproduce the classic homelab layout: ECC prime256v1 keys,
    O=HomeLab, a ten-year CA, 825-day leaf certificates, a CRL refreshed
    every 30 days, serials starting at 0x1000.

    Files are laid out under storage_dir:
      ca/ca.key, ca/ca.crt, crl/crl.pem, servers/<domain>/, users/<name>/
    """

    storage_dir: Path = Field(default=Path("pki"), description="Root of the PKI tree")
    organization: str = Field(default="HomeLab", min_length=1)
    client_unit: str = Field(default="Users", min_length=1, description="OU for client certs")

    key_algorithm: KeyAlgorithm = Field(default=KeyAlgorithm.ECC)
    ecc_curve: str = Field(default="prime256v1")
    rsa_bits: int = Field(default=2048, ge=2048)

    ca_validity_days: int = Field(default=3650, ge=1)
    leaf_validity_days: int = Field(default=825, ge=1)
    crl_next_update_days: int = Field(default=30, ge=1)
    serial_start: int = Field(default=0x1000, ge=1)

    @field_validator("ecc_curve")
    @classmethod
    def validate_curve(cls, value: str) -> str:
        if value not in SUPPORTED_CURVES:
            raise ValueError(
                f"Unsupported EC curve {value!r}; choose one of {', '.join(SUPPORTED_CURVES)}"
            )
        return value

    @field_validator("rsa_bits")
    @classmethod
    def validate_rsa_bits(cls, value: int) -> int:
        if value % 256:
            raise ValueError(f"RSA key size must be a multiple of 256, got {value}")
        return value

    @property
    def key_spec(self) -> KeySpec:
        return KeySpec(
            algorithm=self.key_algorithm,
            ecc_curve=self.ecc_curve,
            rsa_bits=self.rsa_bits,
        )

    @property
    def ca_dir(self) -> Path:
        return self.storage_dir / "ca"

    @property
    def crl_path(self) -> Path:
        return self.storage_dir / "crl" / "crl.pem"


class SchedulerSettings(BaseModel):
    """
    Periodic CRL refresh using a standard 5-field cron expression.

    Format: minute hour day-of-month month day-of-week
    Examples:
      "0 3 * * *"    — daily at 03:00 (default)
      "0 3 * * 1"    — every Monday at 03:00
      "0 */12 * * *" — every 12 hours

    Any schedule shorter than ca.crl_next_update_days keeps the published
    CRL from going stale.
    """

    cron: str = Field(
        default="0 3 * * *",
        description="Cron expression (5 fields: minute hour dom month dow)",
    )
    run_on_startup: bool = Field(default=True)

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, value: str) -> str:
        """Reject expressions that don't have exactly 5 space-separated fields."""
        fields = value.strip().split()
        if len(fields) != 5:
            raise ValueError(
                f"Cron expression must have exactly 5 fields "
                f"(minute hour dom month dow), got {len(fields)}: {value!r}"
            )
        return value.strip()


class AppSettings(BaseSettings):
    """
    Root application settings — aggregates all sub-settings.

    Load order (highest priority first):
      1. Environment variables
      2. .env file
      3. Default values

    env_nested_delimiter="__" maps DATABASE__DSN → database.dsn,
    CA__STORAGE_DIR → ca.storage_dir, SCHEDULER__CRON → scheduler.cron.
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    database: DatabaseSettings
    ca: CaSettings = Field(default_factory=lambda: CaSettings())
    scheduler: SchedulerSettings = Field(default_factory=lambda: SchedulerSettings())

    log_level: str = Field(default="INFO")
