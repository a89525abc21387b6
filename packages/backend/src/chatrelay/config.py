"""Application configuration via environment variables.

Uses pydantic-settings to load config from env vars with CHATRELAY_ prefix.
No YAML files, no file-based config — just env vars (12-factor app style).
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All app configuration. Set via CHATRELAY_* env vars."""

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    channel_prefix: str = "chatrelay:"
    message_event_name: str = "message"
    pmessage_event_name: str = "pmessage"
    reconnect_delay_seconds: float = 1.0

    # Server
    environment: str = "development"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 4000
    log_level: str = "INFO"

    # CORS
    cors_origins: list[str] = [
        "http://localhost:5173",
    ]

    model_config = {"env_prefix": "CHATRELAY_"}

    @model_validator(mode="after")
    def validate_reconnect_delay(self):
        """A zero delay would spin the reader loop while Redis is down."""
        if self.reconnect_delay_seconds <= 0:
            raise ValueError("CHATRELAY_RECONNECT_DELAY_SECONDS must be positive")
        return self


# Singleton — import this everywhere
settings = Settings()
