from functools import lru_cache
from typing import Literal

import pydantic
from pydantic_settings import BaseSettings, SettingsConfigDict

from errors import ConfigurationError


class Settings(BaseSettings):
    tmdb_api_key: str
    database_path: str = "data/catalog.db"
    country: str = "IN"
    language: str = "en"
    ingest_schedule: str = "0 3 * * *"
    ingest_max_pages: int = 20
    ingest_page_size: int = 50
    page_delay_seconds: float = 0.5
    page_fetch_retries: int = 2
    unmatched_policy: Literal["retain", "purge"] = "retain"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()
    except pydantic.ValidationError as exc:
        missing = ", ".join(str(err["loc"][0]).upper() for err in exc.errors() if err["loc"])
        raise ConfigurationError(f"Invalid or missing configuration: {missing}") from exc
