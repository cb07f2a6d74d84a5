"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files.
Validates bounds and provides typed access to settings.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from skumirror.exceptions import ConfigurationError

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Storage:
        IMAGES_DIR: Directory holding mirrored image files
        PUBLIC_PREFIX: URL prefix under which stored files are served
        IMAGE_EXTENSION: Extension given to every stored file

    Remote fetching:
        FETCH_TIMEOUT_SECONDS: Timeout applied to every remote fetch
        MAX_ATTEMPTS: Fetch attempts per materialize wave
        BACKOFF_MIN_SECONDS / BACKOFF_MAX_SECONDS: Exponential backoff bounds
        MAX_CONCURRENT_FETCHES: Global outbound fetch limit
        MAX_IMAGE_BYTES: Largest payload accepted
        USER_AGENT: User-Agent sent to remote hosts

    Client side:
        SERVICE_URL: Base URL of the mirror service
        CLIENT_TIMEOUT_SECONDS: Timeout for calls to the mirror service

    Logging:
        LOG_LEVEL: Logging level
        LOG_FILE: Optional JSON-lines log file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    IMAGES_DIR: Path = Field(
        default=Path("server/public/images/products"),
        description="Directory holding mirrored image files",
    )
    PUBLIC_PREFIX: str = Field(
        default="/images/products",
        description="URL prefix under which stored files are served",
    )
    IMAGE_EXTENSION: str = Field(
        default=".jpg", description="Extension given to every stored file"
    )

    # Remote fetching
    FETCH_TIMEOUT_SECONDS: float = Field(
        default=15.0, gt=0.0, le=300.0, description="Timeout for each remote fetch"
    )
    MAX_ATTEMPTS: int = Field(
        default=3, ge=1, le=10, description="Fetch attempts per materialize wave"
    )
    BACKOFF_MIN_SECONDS: float = Field(
        default=0.5, ge=0.0, description="Shortest wait between attempts"
    )
    BACKOFF_MAX_SECONDS: float = Field(
        default=8.0, ge=0.0, description="Longest wait between attempts"
    )
    MAX_CONCURRENT_FETCHES: int = Field(
        default=8, ge=1, le=128, description="Maximum concurrent remote fetches"
    )
    MAX_IMAGE_BYTES: int = Field(
        default=10 * 1024 * 1024, ge=1, description="Largest payload accepted"
    )
    USER_AGENT: str = Field(
        default=DEFAULT_USER_AGENT, description="User-Agent sent to remote hosts"
    )

    # Client side
    SERVICE_URL: str = Field(
        default="http://127.0.0.1:8000", description="Base URL of the mirror service"
    )
    CLIENT_TIMEOUT_SECONDS: float = Field(
        default=5.0, gt=0.0, description="Timeout for calls to the mirror service"
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON-lines log file")

    @field_validator("IMAGE_EXTENSION")
    @classmethod
    def validate_image_extension(cls, v: str) -> str:
        """Extension must look like '.jpg'."""
        if not v.startswith(".") or not v[1:].isalnum():
            raise ValueError("IMAGE_EXTENSION must be a dot followed by letters/digits")
        return v.lower()

    @field_validator("PUBLIC_PREFIX")
    @classmethod
    def validate_public_prefix(cls, v: str) -> str:
        """Prefix must be absolute; trailing slash is dropped."""
        if not v.startswith("/"):
            raise ValueError("PUBLIC_PREFIX must start with '/'")
        return v.rstrip("/") or "/"

    @model_validator(mode="after")
    def validate_backoff_bounds(self) -> Settings:
        """Ensure the backoff window is not inverted."""
        if self.BACKOFF_MAX_SECONDS < self.BACKOFF_MIN_SECONDS:
            raise ValueError("BACKOFF_MAX_SECONDS must be >= BACKOFF_MIN_SECONDS")
        return self

    def ensure_directories(self) -> None:
        """Create the images directory if it doesn't exist.

        Raises:
            ConfigurationError: If IMAGES_DIR cannot be used as a directory.
        """
        try:
            self.IMAGES_DIR.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                "IMAGES_DIR is not a usable directory",
                context={"path": str(self.IMAGES_DIR), "error": str(e)},
            ) from e

    def display(self) -> dict[str, str | int | float | None]:
        """Return settings as a flat dict for display."""
        return {
            "IMAGES_DIR": str(self.IMAGES_DIR),
            "PUBLIC_PREFIX": self.PUBLIC_PREFIX,
            "IMAGE_EXTENSION": self.IMAGE_EXTENSION,
            "FETCH_TIMEOUT_SECONDS": self.FETCH_TIMEOUT_SECONDS,
            "MAX_ATTEMPTS": self.MAX_ATTEMPTS,
            "BACKOFF_MIN_SECONDS": self.BACKOFF_MIN_SECONDS,
            "BACKOFF_MAX_SECONDS": self.BACKOFF_MAX_SECONDS,
            "MAX_CONCURRENT_FETCHES": self.MAX_CONCURRENT_FETCHES,
            "MAX_IMAGE_BYTES": self.MAX_IMAGE_BYTES,
            "USER_AGENT": self.USER_AGENT,
            "SERVICE_URL": self.SERVICE_URL,
            "CLIENT_TIMEOUT_SECONDS": self.CLIENT_TIMEOUT_SECONDS,
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If settings are invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
