"""Client configuration."""

import platform
from dataclasses import dataclass, field, replace
from typing import Dict, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .retry import RetryConfig

DEFAULT_BASE_URL = "http://localhost:8000/api"


class Settings(BaseSettings):
    """Client configuration loaded from ``KIDSPOINTS_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="KIDSPOINTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_url: str = DEFAULT_BASE_URL
    api_timeout: float = Field(default=10.0, gt=0)  # seconds
    api_retries: int = Field(default=3, ge=0)
    api_retry_delay: float = Field(default=1.0, ge=0)  # seconds

    enable_logging: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = False

    # Where JsonFileStorage keeps the session
    session_file: str = "~/.kidspoints/session.json"


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get the global settings instance."""
    return settings


def _default_user_agent() -> str:
    return f"KidsPointsApp/{platform.system().lower() or 'python'}"


@dataclass
class APIConfig:
    """Configuration for a single ApiClient instance."""

    base_url: str = DEFAULT_BASE_URL

    # Per-attempt deadline (in seconds)
    timeout: float = 10.0

    # Additional attempts beyond the first, and backoff base (in seconds)
    retries: int = 3
    retry_delay: float = 1.0
    backoff_factor: float = 2.0
    max_retry_delay: float = 60.0
    jitter: bool = False

    # Diagnostic logging, never includes token values
    enable_logging: bool = False

    refresh_path: str = "/auth/refresh"
    user_agent: str = field(default_factory=_default_user_agent)
    default_headers: Optional[Dict[str, str]] = None

    # Connection settings
    max_connections: int = 10
    max_keepalive_connections: int = 5
    keepalive_expiry: float = 30.0

    def __post_init__(self):
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.retries < 0:
            raise ValueError("retries must be zero or more")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must be zero or more")
        if self.default_headers is None:
            self.default_headers = {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": self.user_agent,
            }

    @property
    def retry_config(self) -> RetryConfig:
        """Retry policy derived from ``retries`` and ``retry_delay``."""
        return RetryConfig.from_retries(
            self.retries,
            self.retry_delay,
            backoff_factor=self.backoff_factor,
            max_delay=self.max_retry_delay,
            jitter=self.jitter,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "APIConfig":
        settings = settings or get_settings()
        return cls(
            base_url=settings.api_url,
            timeout=settings.api_timeout,
            retries=settings.api_retries,
            retry_delay=settings.api_retry_delay,
            enable_logging=settings.enable_logging,
        )

    def with_base_url(self, base_url: str) -> "APIConfig":
        """Create a new config with different base URL."""
        return replace(self, base_url=base_url, default_headers=dict(self.default_headers))

    def with_headers(self, headers: Dict[str, str]) -> "APIConfig":
        """Create a new config with additional headers."""
        new_headers = dict(self.default_headers)
        new_headers.update(headers)
        return replace(self, default_headers=new_headers)

    def with_retries(self, retries: int, retry_delay: Optional[float] = None) -> "APIConfig":
        """Create a new config with a different retry budget."""
        return replace(
            self,
            retries=retries,
            retry_delay=self.retry_delay if retry_delay is None else retry_delay,
            default_headers=dict(self.default_headers),
        )
