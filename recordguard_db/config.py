from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0
    jitter: float = 1.0
    sqlite_path: str = "recordguard.db"
    postgrest_url: Optional[str] = None
    postgrest_api_key: Optional[str] = None
    request_timeout: float = 10.0

    model_config = SettingsConfigDict(env_prefix="RECORDGUARD_")


@lru_cache
def get_settings() -> Settings:
    return Settings()
