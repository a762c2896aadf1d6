"""Pydantic models for configuration validation."""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class QueueConfig(BaseModel):
    """Queue storage and dispatch parameters."""

    db_path: str = Field(default="queue.db", description="SQLite database path")
    default_limit: int = Field(
        default=1000, gt=0, description="Maximum queue items claimed per dispatch run"
    )
    bulk_chunk_size: int = Field(
        default=50, gt=0, description="Items committed per transaction during bulk enqueue"
    )
    page_size: int = Field(
        default=10, gt=0, description="Items held in memory at once during dispatch"
    )
    stuck_after_s: int = Field(
        default=3600, gt=0, description="Processing horizon after which an item is reported stuck"
    )
    lock_retries: int = Field(
        default=3, ge=1, description="Attempts to acquire the SQLite write lock"
    )


class NotificationConfig(BaseModel):
    """Failure notification channel."""

    webhook_url: Optional[str] = Field(
        default=None, description="Chat webhook URL (None = log notifications only)"
    )
    timeout_s: float = Field(default=10.0, gt=0.0, description="Webhook request timeout")

    @field_validator("webhook_url")
    @classmethod
    def url_has_scheme(cls, v: Optional[str]) -> Optional[str]:
        if v and not v.startswith(("http://", "https://")):
            raise ValueError(f"webhook_url must be an http(s) URL, got: {v}")
        return v or None


class LoggingConfig(BaseModel):
    """structlog output settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    format: Literal["console", "json"] = Field(default="console")


class AppConfig(BaseModel):
    """Complete application configuration with validation."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    processors: List[str] = Field(
        default_factory=list,
        description="Ordered 'module:attribute' paths registered at startup",
    )

    @classmethod
    def from_dict(cls, data: dict) -> "AppConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "AppConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db") is not None:
            config_dict["queue"]["db_path"] = cli_args["db"]
        if cli_args.get("limit") is not None:
            config_dict["queue"]["default_limit"] = cli_args["limit"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]
        if cli_args.get("webhook_url") is not None:
            config_dict["notifications"]["webhook_url"] = cli_args["webhook_url"]
        if cli_args.get("processors"):
            config_dict["processors"] = list(cli_args["processors"])

        return AppConfig.from_dict(config_dict)
