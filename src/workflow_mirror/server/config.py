"""Configuration for the REST adapter."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """Settings for hosting the mirror over HTTP."""

    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        description="Comma-separated list of allowed CORS origins.",
    )
    run_ticker: bool = Field(
        default=True,
        description=(
            "If true, a background thread calls Mirror.tick() on the screenshot interval "
            "to expire pending controls and poll running runs."
        ),
    )
    shutdown_timeout_seconds: float = Field(
        default=5.0,
        ge=0,
        description="How long shutdown waits for an in-flight tick before closing the mirror.",
    )

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_MIRROR_SERVER_",
        env_file=".env",
        extra="ignore",
    )

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
