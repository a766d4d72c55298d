"""Configuration for the automation engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

The ledger relay URL is optional at load time so that read-only commands
(`stats`, DAO management) work without network access. Commands that submit
transactions validate it through :meth:`EngineSettings.require_ledger`.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from flowfi_automation.engine.errors import ConfigurationError


class EngineSettings(BaseSettings):
    """Settings for the engine runtime.

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `EngineSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_path: Path = Field(
        default=Path("engine_state"),
        validation_alias="ENGINE_STATE_PATH",
        description="Directory where entities and notifications are persisted",
    )

    ledger_url: str = Field(
        default="",
        validation_alias="ENGINE_LEDGER_URL",
        description="Base URL of the transaction relay",
    )
    ledger_token: str = Field(default="", validation_alias="ENGINE_LEDGER_TOKEN")
    ledger_timeout_seconds: float = Field(
        default=30.0, validation_alias="ENGINE_LEDGER_TIMEOUT_SECONDS", gt=0
    )
    ledger_poll_interval_seconds: float = Field(
        default=2.0, validation_alias="ENGINE_LEDGER_POLL_INTERVAL_SECONDS", gt=0
    )
    ledger_seal_timeout_seconds: float = Field(
        default=120.0,
        validation_alias="ENGINE_LEDGER_SEAL_TIMEOUT_SECONDS",
        ge=0,
        description="How long to wait for a submitted transaction to seal (0 waits forever)",
    )

    condition_poll_seconds: float = Field(
        default=60.0, validation_alias="ENGINE_CONDITION_POLL_SECONDS", gt=0
    )
    retry_backoff_seconds: float = Field(
        default=60.0,
        validation_alias="ENGINE_RETRY_BACKOFF_SECONDS",
        gt=0,
        description="Base delay before the first retry; doubles per attempt",
    )
    default_max_retries: int = Field(
        default=3, validation_alias="ENGINE_DEFAULT_MAX_RETRIES", ge=0
    )
    store_conflict_retries: int = Field(
        default=3,
        validation_alias="ENGINE_STORE_CONFLICT_RETRIES",
        ge=1,
        description="Attempts to record an outcome when the store reports a version conflict",
    )
    sweep_interval_seconds: float = Field(
        default=30.0,
        validation_alias="ENGINE_SWEEP_INTERVAL_SECONDS",
        gt=0,
        description="Interval of the payment batch and proposal sweep loop",
    )
    batch_workers: int = Field(default=8, validation_alias="ENGINE_BATCH_WORKERS", ge=1)

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def entities_state_file(self) -> Path:
        """Path where workflows, subscriptions, DAOs and proposals are persisted."""

        return self.state_path / "entities.json"

    @property
    def notifications_file(self) -> Path:
        return self.state_path / "notifications.json"

    def require_ledger(self) -> str:
        if not self.ledger_url.strip():
            raise ConfigurationError("ENGINE_LEDGER_URL is required")
        return self.ledger_url
