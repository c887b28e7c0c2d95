"""Application settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "rds-recovery-orchestrator"
    app_env: str = "dev"
    log_level: str = "INFO"
    storage_backend: Literal["memory", "postgres"] = "postgres"
    database_url: str = ""
    provider_base_url: str = ""
    provider_region: str = "cn-shenzhen"
    provider_timeout_s: float = Field(default=10.0, ge=0.1)
    default_instance_class: str = "mysql.n1.micro.1"
    default_storage_size: int = Field(default=20, ge=1)
    # Recovery pipeline timings.
    poll_interval_s: float = Field(default=30.0, ge=0.0)
    instance_ready_timeout_s: float = Field(default=30 * 60, gt=0.0)
    # Scheduler timings.
    scheduler_enabled: bool = True
    stuck_task_timeout_s: float = Field(default=2 * 60 * 60, gt=0.0)
    due_task_interval_s: float = Field(default=60 * 60, gt=0.0)
    stuck_sweep_interval_s: float = Field(default=10 * 60, gt=0.0)

    model_config = SettingsConfigDict(
        env_prefix="RECOVERY_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
