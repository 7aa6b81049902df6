"""Configuration management.

Loads from TOML config files + environment variables.
Uses pydantic-settings for validation and env var overriding.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from .enums import DispatchMode


# ---------------------------------------------------------------------------
# Sub-configs
# ---------------------------------------------------------------------------

class DatabaseConfig(BaseModel):
    url: str = "sqlite+aiosqlite:///./mechanic_shop.db"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30  # seconds
    pool_recycle: int = 1800  # seconds
    echo: bool = False
    create_tables: bool = False  # dev/test only


class DispatchConfig(BaseModel):
    mode: DispatchMode = DispatchMode.INLINE
    outbox_batch_size: int = 100
    outbox_max_attempts: int = 5


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "console"


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseSettings):
    """Top-level application settings.

    Loaded from TOML config files, overridden by environment variables.
    """

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    model_config = {"env_prefix": "MECHANIC_SHOP_", "env_nested_delimiter": "__"}

    def validate_dispatch(self) -> None:
        """Reject dispatch settings the outbox drain cannot honour."""
        from .errors import ConfigError

        if self.dispatch.outbox_batch_size < 1:
            raise ConfigError("dispatch.outbox_batch_size must be >= 1")
        if self.dispatch.outbox_max_attempts < 1:
            raise ConfigError("dispatch.outbox_max_attempts must be >= 1")


def load_settings(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Load settings from TOML file + env vars.

    Args:
        config_path: Path to TOML config file (optional).
        overrides: Dict of overrides to apply on top.
    """
    data: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            import tomli

            with open(path, "rb") as f:
                data = tomli.load(f)

    if overrides:
        data.update(overrides)

    settings = Settings(**data)
    settings.validate_dispatch()
    return settings
