from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_PROMPT_CITIES = [
    "Madrid",
    "Paris",
    "New York",
    "Tokyo",
    "Buenos Aires",
    "Cairo",
    "Sydney",
    "Moscow",
    "Barcelona",
    "Lisbon",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Match pacing (seconds)
    TURNS_TOTAL: int = 5
    TURN_DURATION_SEC: float = 20
    INTER_ROUND_DELAY_SEC: float = 0
    MATCH_START_DELAY_SEC: float = 0
    MAX_PLAYERS: int = 2
    PROMPT_CITIES: List[str] = list(DEFAULT_PROMPT_CITIES)

    # Facts lookup
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    FACTS_TIMEOUT_SEC: float = 15
    FAKE_FACTS: bool = False

    # HTTP surface
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8080"
    CORS_ORIGIN_REGEX: Optional[str] = None
    PUBLIC_BASE_URL: str = "http://localhost:5173"
    LOG_LEVEL: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
