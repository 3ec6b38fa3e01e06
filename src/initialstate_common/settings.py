"""
Streamer settings sourced from the environment and .env with stable lookup.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_API_BASE_URL = "https://groker.init.st/api/"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _find_env_file() -> Optional[Path]:
    cwd = Path.cwd().resolve()
    for parent in [cwd, *cwd.parents]:
        candidate = parent / ".env"
        if candidate.exists():
            return candidate

    here = Path(__file__).resolve()
    for parent in [here, *here.parents]:
        candidate = parent / ".env"
        if candidate.exists():
            return candidate

    return None


_ENV_PATH = _find_env_file()
if _ENV_PATH is not None:
    load_dotenv(dotenv_path=_ENV_PATH, override=False)


class Credentials(BaseModel):
    """Keys identifying the account and the destination bucket."""

    access_key: str
    bucket_key: str


class Settings(BaseSettings):
    """Unified settings model."""

    model_config = SettingsConfigDict(
        env_file=str(_ENV_PATH) if _ENV_PATH is not None else None,
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    api_base_url: str = Field(
        default=DEFAULT_API_BASE_URL,
        validation_alias=AliasChoices("IS_API_BASE_URL", "INITIALSTATE_API_BASE_URL"),
    )
    access_key: str = Field(
        default="",
        validation_alias=AliasChoices("IS_ACCESS_KEY", "INITIALSTATE_ACCESS_KEY"),
    )
    bucket_key: str = Field(
        default="",
        validation_alias=AliasChoices("IS_BUCKET_KEY", "INITIALSTATE_BUCKET_KEY"),
    )
    bucket_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("IS_BUCKET_NAME", "INITIALSTATE_BUCKET_NAME"),
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        validation_alias=AliasChoices("IS_TIMEOUT_SECONDS", "INITIALSTATE_TIMEOUT_SECONDS"),
    )
    create_bucket_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        validation_alias=AliasChoices(
            "IS_CREATE_BUCKET_TIMEOUT_SECONDS", "INITIALSTATE_CREATE_BUCKET_TIMEOUT_SECONDS"
        ),
    )
    log_level: str = Field(
        default="INFO",
        validation_alias=AliasChoices("IS_LOG_LEVEL", "INITIALSTATE_LOG_LEVEL"),
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _known_level(cls, v: Any) -> str:
        # unknown names (e.g. "trace") fall back to INFO
        level = str(v).strip().upper()
        return level if level in LOG_LEVELS else "INFO"

    @property
    def has_credentials(self) -> bool:
        return bool(self.access_key and self.bucket_key)

    @property
    def credentials(self) -> Credentials:
        if not self.has_credentials:
            raise RuntimeError(
                "IS_ACCESS_KEY and IS_BUCKET_KEY are required (set them in .env or environment)"
            )
        return Credentials(access_key=self.access_key, bucket_key=self.bucket_key)


@lru_cache()
def get_settings() -> Settings:
    """Return a cached settings instance."""
    return Settings()
