from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    database_url: str = Field(..., alias="DATABASE_URL")
    tz: str = Field("UTC", alias="TZ")

    app_name: str = Field("Split-it", alias="APP_NAME")
    site_url: str = Field("http://localhost:3000", alias="SITE_URL")

    resend_api_key: Optional[str] = Field(None, alias="RESEND_API_KEY")
    invite_from: str = Field("Split-it <no-reply@example.com>", alias="INVITE_FROM")
    invite_ttl_days: int = Field(7, alias="INVITE_TTL_DAYS", ge=1)
    invite_sweep_minutes: int = Field(10, alias="INVITE_SWEEP_MINUTES", ge=1)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]
