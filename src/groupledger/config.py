from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from groupledger.db.models import ResidualPolicy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    database_url: str = Field(..., alias="DATABASE_URL")
    balance_cache_enabled: bool = Field(True, alias="BALANCE_CACHE_ENABLED")
    balance_cache_ttl_seconds: float = Field(300.0, gt=0, alias="BALANCE_CACHE_TTL_SECONDS")
    balance_cache_max_size: int = Field(1000, ge=1, alias="BALANCE_CACHE_MAX_SIZE")
    residual_policy: ResidualPolicy = Field(ResidualPolicy.FIRST_MEMBER, alias="RESIDUAL_POLICY")
    log_level: str = Field("INFO", alias="LOG_LEVEL")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]
