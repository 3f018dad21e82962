"""Application settings loaded from the environment."""
from functools import lru_cache
from typing import Optional
from uuid import UUID

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Reserved identifier of the root SuperAdmin (may delete other SuperAdmins)
DEFAULT_ROOT_SUPERADMIN_ID = UUID(int=1)


class Settings(BaseSettings):
    """
    Runtime configuration.
    
    Every field can be overridden by an environment variable of the same
    name in upper case (e.g. DATABASE_URL, LOG_LEVEL) or from a local
    .env file.
    """
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
    
    database_url: str = "sqlite:///./tiktok_accounts.db"
    secret_key: str = "change-me"
    log_level: str = "INFO"
    
    root_superadmin_id: UUID = DEFAULT_ROOT_SUPERADMIN_ID
    
    # External metric source (TikTok user-info HTTP API)
    metric_source_base_url: str = "https://tiktok-api23.p.rapidapi.com/api"
    metric_source_api_key: Optional[str] = None
    metric_source_timeout_seconds: float = Field(default=15.0, gt=0)
    
    # Batch refresh
    refresh_max_attempts: int = Field(default=2, ge=1)
    refresh_max_workers: int = Field(default=4, ge=1)
    
    # Dashboard
    dashboard_top_n: int = Field(default=5, ge=0)
    dashboard_growth_days: int = Field(default=7, ge=1)


@lru_cache()
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
