"""Application configuration.

Settings are read from environment variables prefixed with ``ORIGIN_``
(e.g. ``ORIGIN_DEFAULT_HOST=192.168.1.50``) or from a local ``.env`` file.

Usage:
    from origin_bridge.core.config import get_settings
    settings = get_settings()
    print(settings.connection_timeout)
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _documents_dir() -> Path:
    documents = Path.home() / "Documents"
    return documents if documents.is_dir() else Path.home()


class Settings(BaseSettings):
    """Origin bridge configuration."""

    model_config = SettingsConfigDict(env_prefix="ORIGIN_", env_file=".env", extra="ignore")

    # Device endpoint
    default_host: Optional[str] = Field(default=None, description="Telescope host used by the API when none is given")
    default_port: int = Field(default=80, description="Control channel port")

    # Protocol timing (seconds)
    connection_timeout: float = Field(default=10.0, description="WebSocket handshake timeout")
    status_interval: float = Field(default=5.0, description="Period of the status query rotation")
    ping_interval: float = Field(default=15.0, description="Period of keep-alive pings")
    pending_command_ttl: float = Field(default=60.0, description="Age after which unanswered commands are evicted")

    # Persistence
    log_dir: Path = Field(default_factory=lambda: _documents_dir() / "CelestronOriginLogs")
    image_dir: Path = Field(default_factory=lambda: _documents_dir() / "CelestronOriginImages")
    session_log_enabled: bool = Field(default=True, description="Write the wire-level session log")
    save_images: bool = Field(default=True, description="Save every downloaded image with a metadata sidecar")

    log_level: str = Field(default="INFO")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging for the API process."""
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
