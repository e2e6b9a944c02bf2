"""
Configuration loader for the cutout service.

Tunables are centralized here so the coordinator, worker and compositor stay
focused on their own logic. Values come from ``CUTOUT_*`` environment
variables or a local ``.env`` file.
"""

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CUTOUT_",
        env_file=".env",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Input limits
    max_dimension: int = 4096
    max_file_size: int = 20 * 1024 * 1024
    allowed_mime_types: List[str] = Field(
        default_factory=lambda: ["image/jpeg", "image/png", "image/webp"]
    )
    output_suffix: str = "_no_bg"

    # Worker transport
    channel_capacity: int = 64

    # Model + preprocessing
    model_path: Path = Path.home() / ".cache" / "cutout_service" / "modnet.torchscript"
    model_url: Optional[str] = None
    max_long_edge: int = 1024
    download_chunk_size: int = 8192
    request_timeout_seconds: int = 30

    log_level: str = "INFO"

    @field_validator("max_dimension", "max_long_edge", "channel_capacity", "download_chunk_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("allowed_mime_types")
    @classmethod
    def validate_mime_types(cls, v: List[str]) -> List[str]:
        normalized = [item.strip().lower() for item in v if item.strip()]
        if not normalized:
            raise ValueError("at least one MIME type must be allowed")
        return normalized


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()
