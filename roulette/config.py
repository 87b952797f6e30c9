from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    bot_token: str = Field(default="", validation_alias="BOT_TOKEN")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./roulette.db",
        validation_alias="DATABASE_URL",
    )

    round_duration_sec: int = Field(default=30, gt=0, validation_alias="ROUND_DURATION_SEC")
    commission_rate: float = Field(default=0.05, ge=0, lt=1, validation_alias="COMMISSION_RATE")
    starting_balance: int = Field(default=1000, ge=0, validation_alias="STARTING_BALANCE")
    allow_top_up: bool = Field(default=True, validation_alias="ALLOW_TOP_UP")

    sweep_interval_sec: int = Field(default=5, ge=1, validation_alias="SWEEP_INTERVAL_SEC")
    store_retry_attempts: int = Field(default=5, ge=1, validation_alias="STORE_RETRY_ATTEMPTS")
    history_limit: int = Field(default=10, ge=1, le=50, validation_alias="HISTORY_LIMIT")
    init_data_max_age_sec: int = Field(default=86400, validation_alias="INIT_DATA_MAX_AGE_SEC")

    web_host: str = Field(default="0.0.0.0", validation_alias="WEB_HOST")
    web_port: int = Field(default=8080, validation_alias="WEB_PORT")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        extra="ignore",
    )

    @property
    def clean_bot_token(self) -> str:
        return self.bot_token.strip().strip('"').strip("'")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
