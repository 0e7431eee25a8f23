from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional
import os

class Settings(BaseSettings):
    # API Keys
    openai_api_key: str = ""
    vision_model: str = "gpt-4o"
    chat_model: str = "gpt-4o-mini"
    vision_timeout_seconds: float = 60.0
    chat_timeout_seconds: float = 45.0

    # Test Mode - inference returns canned data instead of calling OpenAI
    test_mode: bool = False

    # Database - DATABASE_URL from the platform, fallback to SQLite for local
    database_url: Optional[str] = None

    # Redis (optional) - worker wake-up signal and nothing else depends on it
    redis_url: str = ""

    # Object storage for uploaded images
    aws_s3_bucket: str = "pantry-uploads"
    aws_s3_region: str = "us-east-1"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None

    # Auth
    jwt_secret: str = ""

    # Queue / worker tuning
    run_worker_in_process: bool = True
    worker_concurrency: int = 2
    worker_poll_interval: float = 2.0
    worker_max_idle_interval: float = 10.0
    job_lease_seconds: float = 120.0
    handler_timeout_seconds: float = 300.0
    job_max_attempts: int = 3
    stall_sweep_interval: float = 30.0
    job_retention_hours: int = 72

    # App Settings
    app_name: str = "PantryJobs"
    app_version: str = "1.0.0"
    debug: bool = False
    allowed_origins: str = "http://localhost:5173,http://localhost:3000"

    # API Settings
    backend_host: str = "0.0.0.0"
    backend_port: int = int(os.getenv("PORT", "8000"))

    class Config:
        env_file = ".env"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.database_url is None:
            self.database_url = "sqlite+aiosqlite:///./pantry_jobs.db"
        # Platforms hand out postgres:// URLs, SQLAlchemy async needs postgresql+asyncpg://
        elif self.database_url.startswith("postgres://"):
            self.database_url = self.database_url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif self.database_url.startswith("postgresql://"):
            self.database_url = self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

@lru_cache()
def get_settings() -> Settings:
    return Settings()
