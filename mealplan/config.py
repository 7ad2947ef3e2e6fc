from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import List


class Settings(BaseSettings):
    # Core
    app_name: str = Field(default="mealplan-server")
    environment: str = Field(default="dev")  # dev|staging|prod
    log_json: bool = Field(default=True)
    log_level: str = Field(default="INFO")

    # Auth (any OIDC issuer publishing a JWKS)
    auth_issuer: str | None = Field(default=None)
    auth_jwks_url: str | None = Field(default=None)
    auth_audience: str | None = Field(default=None)
    auth_disable_verification: bool = Field(default=False)

    # Data
    database_url: str | None = Field(default=None)

    # API
    cors_allowed_origins: List[str] = Field(default_factory=lambda: ["*"])

    # OpenAI
    openai_api_key: str | None = Field(default=None)
    openai_ingredients_model: str = Field(default="gpt-5-mini")
    openai_ingredients_max_output_tokens: int = Field(default=4000)
    openai_meals_model: str = Field(default="gpt-5")
    openai_meals_max_output_tokens: int = Field(default=32000)
    openai_prep_model: str = Field(default="gpt-5")
    openai_prep_max_output_tokens: int = Field(default=64000)
    openai_batch_prep_model: str = Field(default="gpt-5")
    openai_batch_prep_max_output_tokens: int = Field(default=64000)
    openai_reasoning_effort: str = Field(default="low")
    openai_request_timeout_seconds: int = Field(default=240, ge=30, le=900)

    # Pipeline
    generation_test_mode: bool = Field(default=False)
    batch_prep_max_concurrency: int = Field(default=5, ge=1, le=50)
    recent_theme_window: int = Field(default=3, ge=0)
    recent_meal_plan_window: int = Field(default=3, ge=0)
    fanout_max_attempts: int = Field(default=3, ge=1)
    job_stale_after_minutes: int = Field(default=30, ge=1)

    # Email (Resend)
    resend_api_key: str | None = Field(default=None)
    email_from: str = Field(default="notifications@mealplan.app")
    email_reply_to: str | None = Field(default=None)
    app_public_url: str = Field(default="https://mealplan.app")

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
