"""Configuration for the REST server."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """Settings for the HTTP adapter.

    Engine settings (state path, ledger relay) are read separately through
    :class:`flowfi_automation.engine.config.EngineSettings`.
    """

    start_engine: bool = Field(
        default=False,
        validation_alias="ENGINE_SERVER_START_ENGINE",
        description=(
            "If true, the app arms triggers and runs the sweep loop for its lifetime. "
            "Leave false to serve a read/write API over state owned by a separate `run` process."
        ),
    )

    # Dev-friendly CORS. Override via ENGINE_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="ENGINE_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
