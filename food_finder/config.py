from __future__ import annotations

from functools import lru_cache

from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """App configuration (env-friendly).

    Tip: create a .env file (it is already in .gitignore) and override settings there.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "Food Finder API"
    version: str = "0.1.0"
    log_level: str = "INFO"

    overpass_base_url: AnyHttpUrl = "https://overpass-api.de/api/interpreter"

    # Overpass asks clients to identify themselves.
    user_agent: str = "food-finder/0.1.0 (food resource locator)"

    http_timeout_s: float = 25.0

    # In-memory tier is short lived; the sqlite tier survives restarts.
    memory_cache_ttl_s: float = 30 * 60
    memory_cache_max_size: int = 512
    persistent_cache_ttl_s: float = 24 * 3600
    hours_cache_ttl_s: float = 24 * 3600
    cache_db_path: str = "data/food_finder_cache.sqlite"

    # Bump cache_version when the stored Place shape changes.
    cache_key_precision: int = 4
    cache_version: str = "v2"

    min_request_interval_s: float = 2.0
    retry_limit: int = 3
    rate_limit_backoff_s: float = 2.0
    retry_backoff_s: float = 1.0

    hours_workers: int = 2
    hours_pacing_s: float = 0.35

    max_results: int = 50
    default_radius_km: float = 5.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
