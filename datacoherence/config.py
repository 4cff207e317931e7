from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from datacoherence.datastructures.type_aliases import DurationSeconds, EntityKind


class DataLayerSettings(BaseSettings):
    """Data layer configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="DATACOHERENCE_", env_file=".env", extra="ignore"
    )

    # Staleness / garbage collection
    default_stale_seconds: DurationSeconds = Field(
        60.0, ge=0, description="Seconds a cached value stays fresh."
    )
    default_gc_seconds: DurationSeconds = Field(
        300.0, ge=0, description="Seconds before an unobserved entry is evicted."
    )
    stale_seconds_by_kind: dict[EntityKind, DurationSeconds] = Field(
        default_factory=lambda: {"cart": 120.0, "stock": 30.0, "products": 600.0},
        description="Per-entity-kind overrides of default_stale_seconds.",
    )
    gc_seconds_by_kind: dict[EntityKind, DurationSeconds] = Field(
        default_factory=lambda: {"cart": 300.0, "products": 1800.0},
        description="Per-entity-kind overrides of default_gc_seconds.",
    )
    gc_interval_seconds: DurationSeconds = Field(
        30.0, gt=0, description="Interval of the background garbage collector."
    )

    # Remote calls
    fetch_timeout_seconds: DurationSeconds = Field(
        10.0, gt=0, description="Timeout for a single remote fetch."
    )
    mutation_timeout_seconds: DurationSeconds = Field(
        10.0, gt=0, description="Timeout for a single remote mutation."
    )
    subscribe_timeout_seconds: DurationSeconds = Field(
        5.0, gt=0, description="Timeout for the realtime subscribe handshake."
    )
    fetch_retries: int = Field(
        2, ge=0, description="Retries for transient (network) fetch failures."
    )
    retry_base_delay_seconds: DurationSeconds = Field(
        0.5, ge=0, description="Base delay of the exponential fetch backoff."
    )
    retry_max_delay_seconds: DurationSeconds = Field(
        30.0, ge=0, description="Upper bound of the fetch backoff delay."
    )

    # Realtime channels
    channel_secret: SecretStr | None = Field(
        None, description="Shared secret used to derive opaque channel names."
    )
    channel_token_length: int = Field(
        32, ge=16, le=64, description="Hex characters kept from the channel HMAC."
    )

    # Calculation mismatch tolerances
    default_calculation_tolerance: float = Field(
        0.01, ge=0, description="Allowed drift between stored and derived values."
    )
    calculation_tolerance_by_kind: dict[EntityKind, float] = Field(
        default_factory=lambda: {"cart": 0.01, "orders": 0.01},
        description="Per-entity-kind overrides of default_calculation_tolerance.",
    )

    # Logging
    log_level: str = Field("INFO", description="Minimum loguru level.")
    debug_scopes: tuple[str, ...] = Field(
        default_factory=tuple, description="Module prefixes logged at DEBUG."
    )
    log_colorize: bool = False

    @model_validator(mode="after")
    def _check_gc_after_stale(self) -> "DataLayerSettings":
        kinds = set(self.stale_seconds_by_kind) | set(self.gc_seconds_by_kind)
        for kind in kinds:
            if self.gc_seconds_for(kind) < self.stale_seconds_for(kind):
                raise ValueError(
                    f"gc_seconds for {kind!r} must be >= its stale_seconds"
                )
        if self.default_gc_seconds < self.default_stale_seconds:
            raise ValueError("default_gc_seconds must be >= default_stale_seconds")
        return self

    def stale_seconds_for(self, kind: EntityKind) -> DurationSeconds:
        return self.stale_seconds_by_kind.get(kind, self.default_stale_seconds)

    def gc_seconds_for(self, kind: EntityKind) -> DurationSeconds:
        return self.gc_seconds_by_kind.get(kind, self.default_gc_seconds)

    def tolerance_for(self, kind: EntityKind) -> float:
        return self.calculation_tolerance_by_kind.get(
            kind, self.default_calculation_tolerance
        )
