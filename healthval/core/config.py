"""
Validation Service Configuration
Process-level defaults for the engine, pipeline, caches and retry ledgers.
Source: https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """
    Validation service configuration settings.

    Values are read from the environment (prefix ``HEALTHVAL_``) or a ``.env``
    file. These are process defaults; the per-validation rule set comes from
    the settings collaborator as a ``ValidationSettings`` snapshot.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_prefix="HEALTHVAL_",
    )

    # =========================================================================
    # Engine
    # =========================================================================
    ENGINE_PARALLEL_VALIDATION: bool = Field(
        default=True,
        description="Run non-structural aspects concurrently",
    )
    ENGINE_MAX_CONCURRENT_VALIDATIONS: int = Field(
        default=10,
        ge=1,
        le=500,
        description="Admission cap on in-flight validate_resource calls",
    )
    ENGINE_DEFAULT_TIMEOUT_MS: int = Field(
        default=90000,
        ge=100,
        description="Upper bound on one validate_resource call, in milliseconds",
    )
    ENGINE_INCLUDE_DEBUG_INFO: bool = Field(
        default=False,
        description="Log per-aspect diagnostics at debug level",
    )
    ENGINE_RESULT_CACHING: bool = Field(
        default=True,
        description="Cache validation results keyed by record and settings",
    )

    # =========================================================================
    # Caches
    # =========================================================================
    CACHE_RESULT_MAX_SIZE: int = Field(default=1000, ge=1)
    CACHE_RESULT_TTL_SECONDS: float = Field(default=300.0, gt=0)
    CACHE_PROFILE_MAX_SIZE: int = Field(default=500, ge=1)
    CACHE_PROFILE_TTL_SECONDS: float = Field(default=3600.0, gt=0)
    CACHE_TERMINOLOGY_MAX_SIZE: int = Field(default=5000, ge=1)
    CACHE_TERMINOLOGY_TTL_SECONDS: float = Field(default=3600.0, gt=0)
    CACHE_REFERENCE_MAX_SIZE: int = Field(default=2000, ge=1)
    CACHE_REFERENCE_TTL_SECONDS: float = Field(default=600.0, gt=0)
    CACHE_BUSINESS_RULE_MAX_SIZE: int = Field(default=1000, ge=1)
    CACHE_BUSINESS_RULE_TTL_SECONDS: float = Field(default=300.0, gt=0)
    CACHE_EVICTION_FRACTION: float = Field(
        default=0.1,
        gt=0.0,
        le=1.0,
        description="Share of entries dropped (LRU first) once a cache is full",
    )

    # =========================================================================
    # Circuit Breaker
    # =========================================================================
    CIRCUIT_BREAKER_THRESHOLD: int = Field(
        default=5,
        ge=1,
        description="Consecutive failures before a service circuit opens",
    )
    CIRCUIT_BREAKER_COOLDOWN_SECONDS: float = Field(
        default=60.0,
        gt=0,
        description="Time an open circuit waits before allowing a trial call",
    )

    # =========================================================================
    # Engine Retry
    # =========================================================================
    RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1, le=20)
    RETRY_INITIAL_DELAY_MS: int = Field(default=1000, ge=0)
    RETRY_BACKOFF_MULTIPLIER: float = Field(default=2.0, ge=1.0)
    RETRY_MAX_DELAY_MS: int = Field(default=10000, ge=0)

    # =========================================================================
    # Pipeline
    # =========================================================================
    PIPELINE_MAX_CONCURRENT: int = Field(default=10, ge=1)
    PIPELINE_TIMEOUT_MS: int = Field(
        default=300000,
        ge=100,
        description="Per-record timeout inside a batch pipeline",
    )
    PIPELINE_CACHE_TTL_MS: int = Field(default=300000, ge=1)
    PIPELINE_CACHE_MAX_SIZE: int = Field(default=1000, ge=1)

    # =========================================================================
    # Cancellation / Retry Ledger
    # =========================================================================
    CANCELLATION_RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    CANCELLATION_RETRY_DELAY_MS: int = Field(default=5000, ge=0)
    CANCELLATION_RETRY_BACKOFF_MULTIPLIER: float = Field(default=2.0, ge=1.0)
    CANCELLATION_RETRY_MAX_DELAY_MS: int = Field(default=60000, ge=0)
    LEDGER_RETENTION_HOURS: float = Field(
        default=24.0,
        gt=0,
        description="Completed ledger entries older than this are purged",
    )
    LEDGER_CLEANUP_INTERVAL_SECONDS: float = Field(default=3600.0, gt=0)

    # =========================================================================
    # Upstream Servers
    # =========================================================================
    FHIR_GATEWAY_TIMEOUT_SECONDS: float = Field(default=15.0, gt=0)
    FHIR_GATEWAY_BASE_URL: Optional[str] = Field(
        default=None,
        description="FHIR server used for reference existence checks",
    )
    FHIR_TERMINOLOGY_URL: Optional[str] = Field(
        default=None,
        description="Terminology server for $validate-code lookups",
    )
    FHIR_PROFILE_URL: Optional[str] = Field(
        default=None,
        description="Server that resolves StructureDefinitions by canonical URL",
    )

    # =========================================================================
    # Logging
    # =========================================================================
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FILE: Optional[str] = Field(default=None)
    LOG_JSON: bool = Field(default=False)

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize log level names."""
        allowed = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}
        level = v.upper()
        if level not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {sorted(allowed)}")
        return level


# Singleton instance
_engine_settings: Optional[EngineSettings] = None


def get_engine_settings() -> EngineSettings:
    """Get or create the process-wide settings singleton."""
    global _engine_settings
    if _engine_settings is None:
        _engine_settings = EngineSettings()
    return _engine_settings


def reset_engine_settings() -> None:
    """Drop the cached settings (used after environment changes)."""
    global _engine_settings
    _engine_settings = None
