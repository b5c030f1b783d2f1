from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional
import os

class Settings(BaseSettings):
    # Provider credentials (fallbacks when a user has none stored)
    volcengine_access_key: str = ""
    volcengine_secret_key: str = ""
    openai_api_key: str = ""
    openai_base_url: Optional[str] = None
    openai_image_model: str = "gpt-image-1"
    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    gemini_model: str = "gemini-2.5-flash-image"

    # Test Mode - providers echo the input image instead of calling out
    test_mode: bool = False

    # Database - Railway provides DATABASE_URL, fallback to SQLite for local
    database_url: Optional[str] = None

    # File Storage
    upload_dir: str = "./uploads"
    public_base_url: str = "http://localhost:8000"

    # App Settings
    app_name: str = "imgflow"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"
    allowed_origins: str = "http://localhost:3000"

    # API Settings
    backend_host: str = "0.0.0.0"
    backend_port: int = int(os.getenv("PORT", "8000"))
    internal_api_secret: str = ""

    # Task queue
    task_timeout_seconds: float = 600.0  # 10 minutes per attempt
    max_concurrent_tasks: int = 1  # upstream providers enforce concurrency limits
    default_max_retries: int = 3
    batch_max_tasks: int = 5
    batch_max_rounds: int = 10
    retry_validation_errors: bool = False

    # Worker
    worker_enabled: bool = False
    worker_poll_interval: float = 2.0
    worker_max_idle_interval: float = 10.0
    recover_on_startup: bool = True
    cleanup_max_age_hours: int = 72

    class Config:
        env_file = ".env"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Auto-detect database URL
        hosted_db = self.database_url or os.getenv("DATABASE_URL")
        if hosted_db:
            # Hosted Postgres URLs come as postgres:// or postgresql://,
            # SQLAlchemy async needs postgresql+asyncpg://
            if hosted_db.startswith("postgres://"):
                self.database_url = hosted_db.replace("postgres://", "postgresql+asyncpg://", 1)
            elif hosted_db.startswith("postgresql://"):
                self.database_url = hosted_db.replace("postgresql://", "postgresql+asyncpg://", 1)
            else:
                self.database_url = hosted_db
        else:
            # Fallback to local SQLite
            self.database_url = "sqlite+aiosqlite:///./database/imgflow.db"

@lru_cache()
def get_settings() -> Settings:
    return Settings()
