"""Application-wide configuration management using Pydantic settings."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration shared by the intake API, the processor and the CLI.

    Environment variables are prefixed with ``INTAKE_`` and may also be
    supplied through a local ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="INTAKE_", env_nested_delimiter="__", extra="ignore"
    )

    environment: str = "development"
    service_name: str = "spool-intake"
    log_level: str = "INFO"
    log_json: bool = True

    # Persistence
    database_url: str = "sqlite:///./spool_intake.db"
    upload_dir: Path = Path("./public")
    max_upload_files: int = 50
    max_upload_file_size_bytes: int = 10 * 1024 * 1024

    # Vision inference service (OpenAI-compatible chat completions)
    vision_base_url: str = "https://api.openai.com/v1"
    vision_api_key: Optional[str] = None
    vision_default_model: str = "gpt-4o"
    vision_timeout_seconds: float = 60.0
    vision_max_tokens: int = 1000
    vision_temperature: float = 0.2

    # Preprocessing
    image_max_dimension: int = 1536
    image_jpeg_quality: int = 85

    # Batch orchestration
    batch_concurrency: int = Field(3, ge=1)
    batch_window_pause_seconds: float = 0.2
    batch_retries: int = Field(0, ge=0)

    # Upload sessions
    session_ttl_minutes: int = 30
    public_base_url: str = "http://localhost:5001"

    # Normalization rule tables (None = bundled defaults)
    rules_path: Optional[Path] = None

    # Reviewing device
    discovery_interval_seconds: float = 3.0
    result_interval_seconds: float = 2.0
    review_cache_dir: Path = Path("~/.spool-intake").expanduser()
    review_min_confidence: float = 0.3


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()


settings = get_settings()

__all__ = ["Settings", "get_settings", "settings"]
