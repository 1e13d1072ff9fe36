from __future__ import annotations

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")
LEVEL_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}


# Runtime configuration for the license server, read from ENV or .env.
class Settings(BaseSettings):
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    ADMIN_TOKEN: str = ""  # seeds a fresh store; generated when empty
    SERVER_FILE: Path = Path("server.json")
    CHECK_INTERVAL_SEC: int = 30
    LOG_LEVEL: str = "INFO"

    @field_validator("ADMIN_TOKEN", mode="before")
    @classmethod
    def _strip_token(cls, v):
        return (v or "").strip()

    @field_validator("CHECK_INTERVAL_SEC")
    @classmethod
    def _positive_interval(cls, v: int) -> int:
        if v < 1:
            raise ValueError("CHECK_INTERVAL_SEC must be at least 1")
        return v

    # Names understood by both logging.basicConfig and uvicorn.
    @field_validator("LOG_LEVEL")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = v.strip().upper()
        level = LEVEL_ALIASES.get(level, level)
        if level not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")
        return level

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
