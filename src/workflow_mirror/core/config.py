"""Core configuration for the workflow mirror."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from workflow_mirror.logging import configure_logging


class FeedConfig(BaseSettings):
    """Configuration for the remote read model and change feed."""

    rest_url: str = Field(
        default="http://localhost:54321/rest/v1",
        description="Base URL of the PostgREST-style read model",
    )
    api_key: str | None = Field(
        default=None,
        description="API key sent with every read model request",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-request timeout for snapshot fetches and writes",
    )

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_MIRROR_FEED_",
        env_file=".env",
        extra="ignore",
    )


class ExecutionConfig(BaseSettings):
    """Configuration for run execution controls."""

    connect_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="How long a run start may wait for the backend to confirm",
    )
    control_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="How long a pause/resume/abort may wait for a confirming update",
    )
    highlight_seconds: float = Field(
        default=2.0,
        ge=0,
        description="How long changed steps stay highlighted",
    )
    screenshot_interval_seconds: float = Field(
        default=0.3,
        gt=0,
        description="Polling interval for run screenshots",
    )
    screenshot_history: int = Field(
        default=30,
        gt=0,
        description="Screenshots kept per run",
    )

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_MIRROR_EXECUTION_",
        env_file=".env",
        extra="ignore",
    )


class MirrorConfig(BaseSettings):
    """Main configuration for the workflow mirror."""

    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    feed: FeedConfig = Field(
        default_factory=FeedConfig,
        description="Read model and change feed configuration",
    )
    execution: ExecutionConfig = Field(
        default_factory=ExecutionConfig,
        description="Execution control configuration",
    )

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_MIRROR_",
        env_file=".env",
        extra="ignore",
    )

    def setup_logging(self) -> None:
        """Configure logging based on settings."""
        configure_logging("DEBUG" if self.debug else self.log_level)
