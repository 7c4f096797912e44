from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"
    CORS_ORIGIN_REGEX: Optional[str] = None
    LOG_LEVEL: str = "INFO"

    # Lobbies, games and idle players are reaped after this much inactivity.
    SESSION_TIMEOUT_SECONDS: int = 30 * 60
    SWEEP_INTERVAL_SECONDS: int = 60

    LOBBY_MAX_PLAYERS: int = 4
    TOPIC_COUNT: int = 15
    EVENT_PAGE_LIMIT: int = 200


@lru_cache
def get_settings() -> Settings:
    return Settings()
