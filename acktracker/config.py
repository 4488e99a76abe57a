"""
Tracker Configuration.

Two layers:
- AckTimeoutConfig: immutable timeout policy attached to every record
- Settings: Pydantic Settings v2, loads process defaults from .env / environment
"""

from functools import lru_cache
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
import structlog

from acktracker.exceptions import InvalidConfigError

logger = structlog.get_logger(__name__)

DEFAULT_INITIAL_TIMEOUT_MS = 5 * 60 * 1000
DEFAULT_TIMEOUT_ESCALATION_MS = 10 * 60 * 1000
DEFAULT_SWEEP_INTERVAL_MS = 10 * 1000
DEFAULT_RETENTION_MAX_AGE_MS = 7 * 24 * 60 * 60 * 1000


class AckTimeoutConfig(BaseModel):
    """
    Timeout policy for an acknowledgment record.

    Frozen: a record keeps the policy it was created with, so changing the
    global default never affects records already in flight.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    initial_timeout_ms: int = Field(default=DEFAULT_INITIAL_TIMEOUT_MS, gt=0)
    max_timeouts: int = Field(default=3, ge=1)
    timeout_escalation_ms: int = Field(default=DEFAULT_TIMEOUT_ESCALATION_MS, gt=0)
    auto_resolve_on_timeout: bool = False
    notify_on_timeout: bool = True
    escalate_on_timeout: bool = True

    def merged(
        self,
        overrides: Optional[Union["AckTimeoutConfig", Mapping[str, Any]]] = None,
    ) -> "AckTimeoutConfig":
        """
        Return a new config with ``overrides`` applied on top of this one.

        ``None`` values in a mapping are ignored so callers can pass sparse
        partial updates.

        Raises:
            InvalidConfigError: if the merged values are out of range
        """
        if overrides is None:
            return self
        if isinstance(overrides, AckTimeoutConfig):
            return overrides

        changes = {k: v for k, v in overrides.items() if v is not None}
        if not changes:
            return self
        return build_timeout_config({**self.model_dump(), **changes})


def build_timeout_config(values: Mapping[str, Any]) -> AckTimeoutConfig:
    """Validate raw values into an AckTimeoutConfig, failing fast on bad input."""
    try:
        return AckTimeoutConfig.model_validate(dict(values))
    except PydanticValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        logger.error("ack_timeout_config_invalid", errors=errors)
        raise InvalidConfigError(
            f"Invalid acknowledgment timeout configuration: {'; '.join(errors)}",
            errors=errors,
        ) from e


class Settings(BaseSettings):
    """Process settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Timeout policy defaults ──────────────────────────────────────────
    initial_timeout_ms: int = Field(
        default=DEFAULT_INITIAL_TIMEOUT_MS, alias="ACK_INITIAL_TIMEOUT_MS"
    )
    max_timeouts: int = Field(default=3, alias="ACK_MAX_TIMEOUTS")
    timeout_escalation_ms: int = Field(
        default=DEFAULT_TIMEOUT_ESCALATION_MS, alias="ACK_TIMEOUT_ESCALATION_MS"
    )
    auto_resolve_on_timeout: bool = Field(default=False, alias="ACK_AUTO_RESOLVE_ON_TIMEOUT")
    notify_on_timeout: bool = Field(default=True, alias="ACK_NOTIFY_ON_TIMEOUT")
    escalate_on_timeout: bool = Field(default=True, alias="ACK_ESCALATE_ON_TIMEOUT")

    # ── Engine ────────────────────────────────────────────────────────────
    sweep_interval_ms: int = Field(
        default=DEFAULT_SWEEP_INTERVAL_MS,
        alias="ACK_SWEEP_INTERVAL_MS",
        description="How often the background sweep looks for elapsed deadlines",
    )
    retention_max_age_ms: int = Field(
        default=DEFAULT_RETENTION_MAX_AGE_MS,
        alias="ACK_RETENTION_MAX_AGE_MS",
        description="Default age after which terminal records are cleaned up",
    )

    # ── Observability ──────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="json", alias="LOG_FORMAT")  # json or console

    def timeout_config(self) -> AckTimeoutConfig:
        """Build the validated global default timeout policy."""
        return build_timeout_config(
            {
                "initial_timeout_ms": self.initial_timeout_ms,
                "max_timeouts": self.max_timeouts,
                "timeout_escalation_ms": self.timeout_escalation_ms,
                "auto_resolve_on_timeout": self.auto_resolve_on_timeout,
                "notify_on_timeout": self.notify_on_timeout,
                "escalate_on_timeout": self.escalate_on_timeout,
            }
        )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    settings = Settings()

    logger.info(
        "settings_loaded",
        initial_timeout_ms=settings.initial_timeout_ms,
        max_timeouts=settings.max_timeouts,
        sweep_interval_ms=settings.sweep_interval_ms,
    )

    return settings
