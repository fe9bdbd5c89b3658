from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    APP_NAME: str = "Field Attendance Engine"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "postgresql://attendance_user:attendance_pass@db:5432/attendance_db"

    # Local wall clock used for every attendance boundary
    TIMEZONE: str = "Asia/Kolkata"

    # Department timing cache
    TIMING_CACHE_TTL_SECONDS: int = 5 * 60  # 5 minutes

    # Auto-checkout
    AUTO_CHECKOUT_GRACE_HOURS: float = 2.0
    DAILY_CLEANUP_TIME: str = "23:55"
    SWEEP_INTERVAL_MINUTES: int = 15
    SCHEDULER_ENABLED: bool = True

    # Fallback timing when a department has no configured record
    DEFAULT_CHECK_IN_TIME: str = "09:00"
    DEFAULT_CHECK_OUT_TIME: str = "18:00"
    DEFAULT_WORKING_HOURS: float = 8.0

    # Seed the standard department timings on startup if missing
    SEED_DEFAULT_DEPARTMENTS: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
