"""Configuration management for the inbox engine.

Settings are loaded with Pydantic settings from environment variables or a
.env file.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the INBOX_ENGINE_ prefix (e.g., INBOX_ENGINE_DATABASE_URL).
    """

    model_config = SettingsConfigDict(
        env_prefix="INBOX_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Store
    database_url: str = Field(
        default="sqlite:///inbox_engine.sqlite3",
        description="SQLAlchemy URL of the store holding accounts, conversations and messages",
    )

    # Realtime fan-out
    redis_url: str | None = Field(
        default=None,
        description=(
            "Redis URL used as the shared event broker. Leave unset to fan out "
            "in-process only (single serving process)."
        ),
    )
    session_queue_size: int = Field(
        default=256,
        description="Maximum number of undelivered events buffered per live session",
    )

    # Delivery
    delivery_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for a single hand-off to the mail delivery service",
    )

    # Attachments
    attachment_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL prepended to relative attachment storage locators",
    )

    # Conversation list / display
    conversation_list_limit: int = Field(
        default=50,
        description="Default number of conversations returned by a list request",
    )
    snippet_length: int = Field(
        default=120,
        description="Number of characters kept in conversation/message snippets",
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"],
        description="Origins allowed to call the HTTP API from a browser",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
