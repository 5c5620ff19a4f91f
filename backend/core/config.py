"""
Tent Migrate - Configuration
"""
from pydantic_settings import BaseSettings
from typing import List, Optional

class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./tent_migrate.db"
    DATABASE_ECHO: bool = False

    # Public URL of this service (registered as the Tent app URL)
    HOST_DOMAIN: str = "http://localhost:8000"
    NOTIFICATION_URL: Optional[str] = None

    # Fernet key used to encrypt MAC keys at rest
    ENCRYPTION_KEY: Optional[str] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    # Sentry
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    # Migration pipeline
    # Apps and groups must exist before the permissions and posts that reference them
    MIGRATION_CATEGORY_ORDER: List[str] = [
        "profile",
        "apps",
        "groups",
        "permissions",
        "followings",
        "followers",
        "secrets",
        "posts",
    ]
    MIGRATION_MAX_ATTEMPTS: int = 5
    MIGRATION_BACKOFF_BASE: float = 0.5
    MIGRATION_BACKOFF_MAX: float = 30.0
    MIGRATION_PAGE_SIZE: int = 50
    MIGRATION_HTTP_TIMEOUT: float = 30.0
    MIGRATION_SEND_IDEMPOTENCY_KEYS: bool = True

    # Work queue / worker pool
    MIGRATION_WORKER_CONCURRENCY: int = 4
    MIGRATION_QUEUE_POLL_INTERVAL: float = 2.0
    MIGRATION_QUEUE_LEASE_SECONDS: int = 300
    MIGRATION_WORKERS_ENABLED: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
