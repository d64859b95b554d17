"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storefront origin used to resolve site-relative resource URLs
    site_base_url: Optional[str] = None

    # Cache settings
    cache_directory: Path = Path("./cache")
    cache_names: List[str] = ["default", "images", "api"]   # also the <name>.db file names
    cache_persist: bool = False
    cache_format_version: str = "1.0.0"
    cache_preload_ttl_seconds: Optional[int] = 1800   # 30 minutes
    cache_cleanup_interval_seconds: int = 300         # 0 disables the sweep

    # Critical resources warmed on startup and by POST /cache/preload
    critical_resources: List[str] = [
        "/images/logo.png",
        "/images/favicon.png",
        "/manifest.json",
    ]
    preload_on_startup: bool = False

    # Fetching
    fetch_timeout_seconds: float = 10.0
    fetch_max_attempts: int = 3
    preload_max_workers: int = 4

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
