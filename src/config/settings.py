# src/config/settings.py — v2
"""Typed configuration loaded from .env via pydantic-settings.

Single source of truth for deployment-specific settings: cache backend and
limits, cascade ordering, the strategy table location, fetch defaults and
logging.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

OPTIMIZE_CASCADES: dict[str, list[str]] = {
    "cost": ["native", "enhanced"],
    "speed": ["enhanced"],
}


class ConfigurationError(Exception):
    """Raised when configuration is internally inconsistent."""


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === Cache ===
    cache_backend: Literal["memory", "file"] = "memory"
    cache_root: Path = Path("~/.tierfetch/cache")
    cache_max_size_mb: int = 100
    cache_max_items: int = 1000
    cache_default_ttl_s: int = 86400
    cache_cleanup_enabled: bool = False
    cache_cleanup_interval_s: float = 60.0

    # === Strategy cascade ===
    optimize_for: Literal["cost", "speed"] = "cost"
    cascade_order: str = ""
    strategy_store_path: Path | None = None

    # === Fetching ===
    fetch_timeout_s: float = 30.0
    fetch_user_agent: str = "tierfetch/0.1 (+https://github.com/tierfetch/tierfetch)"
    fetch_trust_env: bool = True

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 30

    # --- Validators ---

    @field_validator("cache_max_size_mb", "cache_max_items")
    @classmethod
    def validate_positive_limit(cls, v: int) -> int:  # noqa: N805
        if v <= 0:
            raise ValueError("cache limits must be > 0")
        return v

    @field_validator("cache_default_ttl_s")
    @classmethod
    def validate_ttl(cls, v: int) -> int:  # noqa: N805
        if v < 0:
            raise ValueError("cache_default_ttl_s must be >= 0 (0 = never expires)")
        return v

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Validate cross-field consistency rules."""
        errors: list[str] = []

        if self.fetch_timeout_s <= 0:
            errors.append("FETCH_TIMEOUT_S must be > 0")

        if self.cache_cleanup_enabled and self.cache_cleanup_interval_s <= 0:
            errors.append("CACHE_CLEANUP_INTERVAL_S must be > 0 when cleanup is enabled")

        if not self.cascade_order_list:
            errors.append("CASCADE_ORDER must name at least one strategy")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self

    # --- Helpers ---

    @property
    def max_size_bytes(self) -> int:
        return self.cache_max_size_mb * 1024 * 1024

    @property
    def default_ttl_ms(self) -> int:
        return self.cache_default_ttl_s * 1000

    @property
    def cascade_order_list(self) -> list[str]:
        """Explicit CASCADE_ORDER if set, else the OPTIMIZE_FOR default."""
        if self.cascade_order.strip():
            return [s.strip() for s in self.cascade_order.split(",") if s.strip()]
        return list(OPTIMIZE_CASCADES[self.optimize_for])


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (for testing or per-process config).

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
