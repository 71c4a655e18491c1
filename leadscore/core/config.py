from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    PROJECT_NAME: str = "LeadScore API"
    OPENAI_API_KEY: str | None = None
    APIFY_API_TOKEN: str | None = None
    DATABASE_URL: str = "" # Logic: If set, use Postgres. Else, use SQLite.
    SQLITE_PATH: str = "leadscore.db"
    REDIS_URL: str = "redis://localhost:6379/0" # Default local Redis
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "60/minute"
    RATE_LIMIT_STORAGE_URI: str = "memory://"
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"

    # ⚠ SECURITY WARNING: These defaults are for local development ONLY.
    # In production, you MUST override CORS_ORIGINS via environment variable to restrict access.
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000,http://localhost:8080"

    # ─── Execution ───────────────────────────────────────────────────────
    TASK_BACKEND: str = "celery"     # "celery" (queue) or "inline" (in-process asyncio task)
    STATE_BACKEND: str = "redis"     # "redis" or "memory" (cache + progress state)
    TASK_MAX_RETRIES: int = 3
    TASK_VISIBILITY_TIMEOUT_SEC: int = 600

    # ─── Progress Tracking ───────────────────────────────────────────────
    PROGRESS_RETENTION_SEC: int = 86400  # 24 hours

    # ─── Data Providers ──────────────────────────────────────────────────
    APIFY_BASE_URL: str = "https://api.apify.com/v2/acts"

    # ─── Generation ──────────────────────────────────────────────────────
    GENERATION_TIMEOUT_SEC: float = 60.0
    GENERATION_MAX_API_RETRIES: int = 3

    # ─── Compensation ────────────────────────────────────────────────────
    REFUND_MAX_ATTEMPTS: int = 3
    REFUND_BASE_DELAY_SEC: float = 0.5

    class Config:
        env_file = ".env"

settings = Settings()
