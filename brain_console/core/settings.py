from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


PROJECT_ROOT = Path(__file__).resolve().parents[2]
ROOT_ENV = PROJECT_ROOT / ".env"
ROOT_ENV_LOCAL = PROJECT_ROOT / ".env.local"


class Settings(BaseSettings):
    """
    Brain Console - Client Configuration Registry
    Centralizes backend endpoints, timeouts and upload limits using Pydantic Settings.
    """

    model_config = SettingsConfigDict(
        env_file=(str(ROOT_ENV), str(ROOT_ENV_LOCAL)),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Backend
    BACKEND_BASE_URL: str = "http://localhost:3000"
    BACKEND_API_KEY: Optional[str] = None
    BACKEND_TIMEOUT_SECONDS: float = 30.0
    JOB_STREAM_TIMEOUT_SECONDS: float = 300.0

    # Endpoints
    JOB_SUBMIT_PATH: str = "/api/jd/analyze"
    UPLOAD_AUTHORIZATION_PATH: str = "/api/upload/presigned-url"
    ENTITY_PATH_TEMPLATE: str = "/api/business-brain/{entity_id}"
    PERSIST_PATH_TEMPLATE: str = "/api/business-brain/{entity_id}/update"
    REGENERATE_PATH: str = "/api/business-brain/generate-cards"
    SYNTHESIZE_PATH_TEMPLATE: str = "/api/business-brain/{entity_id}/synthesize-knowledge"
    COMPLETION_ANALYSIS_PATH: str = "/api/business-brain/calculate-completion"

    # Uploads
    UPLOAD_TIMEOUT_SECONDS: float = 120.0
    UPLOAD_MAX_PARALLEL: int = Field(4, ge=1)
    UPLOAD_DEFAULT_MAX_SIZE_BYTES: int = 10 * 1024 * 1024

    # Caching
    ANALYSIS_CACHE_TTL_SECONDS: int = 0  # 0 = only force_refresh invalidates

    # Runtime
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"

    @field_validator("BACKEND_BASE_URL", mode="before")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str:
        return str(value or "").strip().rstrip("/")

    @field_validator("ENVIRONMENT", mode="before")
    @classmethod
    def _normalize_environment_label(cls, value: str | None) -> str:
        return str(value or "").strip().lower()

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: str | None) -> str:
        return str(value or "INFO").strip().upper()

    @property
    def is_deployed_environment(self) -> bool:
        return self.ENVIRONMENT in {"staging", "production", "prod"}


settings = Settings()  # type: ignore[call-arg]
