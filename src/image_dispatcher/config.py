"""Configuration and settings helpers for the image dispatcher."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="IMAGE_DISPATCHER_",
        env_file=(".env",),
        extra="ignore",
    )

    environment: Literal["dev", "prod"] = "dev"
    host: str = "127.0.0.1"
    port: int = 8000
    reload: bool = False
    log_level: str = "INFO"

    data_dir: Path = Field(default_factory=lambda: Path.cwd() / ".image_dispatcher")
    log_subdir: str = "logs"
    database_url: str | None = None

    github_token: SecretStr | None = None
    github_api_url: str = "https://api.github.com"
    github_web_url: str = "https://github.com"
    registry_host: str = "ghcr.io"
    workflow_file: str = "docker-publish.yml"

    default_platforms: str = "linux/amd64"
    default_dockerfile: str = "Dockerfile"
    default_context: str = "."

    http_timeout_seconds: float = 30.0
    git_default_timeout: int = 120
    poll_interval_seconds: float = 10.0
    run_discovery_timeout_seconds: float = 120.0
    run_timeout_seconds: float = 3600.0
    verify_registry: bool = True

    api_token: str | None = None
    dispatch_workers: int = 1

    @property
    def platform_list(self) -> list[str]:
        """Comma-separated ``default_platforms`` as a list."""
        return [part.strip() for part in self.default_platforms.split(",") if part.strip()]

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir / 'image_dispatcher.db'}"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / self.log_subdir

    @property
    def token(self) -> str | None:
        """Plain GitHub token, or ``None`` when not configured."""
        if self.github_token is None:
            return None
        return self.github_token.get_secret_value() or None

    def ensure_dirs(self) -> None:
        """Create all filesystem directories required by the service."""
        for label, path in {
            "data": self.data_dir,
            "logs": self.log_dir,
        }.items():
            path.mkdir(parents=True, exist_ok=True)
            logger.debug("Ensured %s directory exists at %s", label, path)


@lru_cache
def get_settings() -> Settings:
    """Load and cache the :class:`Settings` instance."""
    settings = Settings()
    settings.ensure_dirs()
    logger.debug("Settings loaded (environment=%s)", settings.environment)
    return settings


settings = get_settings()
