"""Application configuration."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables."""

    auth_provider: Literal["mock", "firebase"] = "firebase"
    firebase_project_id: str | None = None
    firebase_audience: str | None = None
    admin_secret: str | None = None

    database_url: str | None = None
    quota_policy: Literal["commit_on_success", "decrement_on_admission"] = "commit_on_success"
    refund_on_failure: bool = False
    auto_provision_accounts: bool = False
    free_tier_units: int = Field(default=5, ge=0)

    job_provider: Literal["mock", "remote"] = "remote"
    poll_interval_seconds: float = Field(default=5.0, ge=0)
    max_wait_seconds: float = Field(default=1800.0, gt=0)
    max_poll_errors: int = Field(default=5, ge=0)
    poll_error_backoff_seconds: float = Field(default=2.0, ge=0)
    poll_error_backoff_max_seconds: float = Field(default=30.0, ge=0)
    sweep_interval_seconds: float = Field(default=60.0, gt=0)
    sweep_grace_seconds: float = Field(default=60.0, ge=0)
    job_retention_seconds: float = Field(default=3600.0, ge=0)
    upload_dir: Path = Path("downloads")

    assemblyai_api_key: str | None = None
    assemblyai_base_url: str = "https://api.assemblyai.com"
    groq_api_key: str | None = None
    groq_base_url: str = "https://api.groq.com"
    groq_model: str = "llama-3.3-70b-versatile"
    summary_max_tokens: int = 1500
    summary_temperature: float = 0.3
    http_timeout_seconds: float = 60.0
    ffmpeg_binary: str = "ffmpeg"
    mock_polls_until_complete: int = Field(default=2, ge=1)

    model_config = SettingsConfigDict(env_prefix="LECTERN_", extra="ignore")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
