from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import List


class Settings(BaseSettings):
    # Core
    app_name: str = Field(default="tally-bot")
    environment: str = Field(default="dev")  # dev|staging|prod
    log_json: bool = Field(default=True)
    log_level: str = Field(default="INFO")

    # Data
    database_url: str | None = Field(default=None)
    redis_url: str | None = Field(default=None)
    session_ttl_seconds: int | None = Field(default=None, ge=60)

    # Telegram
    telegram_bot_token: str | None = Field(default=None)
    telegram_api_base: str = Field(default="https://api.telegram.org")
    telegram_webhook_secret: str | None = Field(default=None)
    telegram_timeout_seconds: int = Field(default=30, ge=5, le=120)

    # OpenAI vision
    openai_api_key: str | None = Field(default=None)
    openai_vision_model: str = Field(default="gpt-4.1")
    openai_vision_max_output_tokens: int = Field(default=4000)
    openai_request_timeout_seconds: int = Field(default=90, ge=30, le=300)

    # Extraction / batching
    extraction_timeout_seconds: int = Field(default=120, ge=10, le=600)
    extraction_repair_max_names: int = Field(default=25, ge=1)
    extraction_repair_tolerance: float = Field(default=0.26, ge=0)
    extraction_zero_total_threshold: float = Field(default=0.1, ge=0)
    single_shot_text_reports: bool = Field(default=False)

    # API
    cors_allowed_origins: List[str] = Field(default_factory=lambda: ["*"])

    # Observability
    sentry_dsn: str | None = Field(default=None)
    sentry_traces_sample_rate: float = Field(default=0.0)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def _csv_to_list(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
