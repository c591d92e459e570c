from datetime import date
from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # App
    APP_NAME: str = "Coaching Commission Core"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "postgresql://commission_user:commission_pass@db:5432/commission_db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_ECHO: bool = False

    # Redis (Celery broker for scheduled batch callers)
    REDIS_URL: str = "redis://redis:6379/0"

    # Global commission rates (fallback when an earner has no override)
    COMPANY_LEAD_RATE: Decimal = Decimal("0.50")  # company keeps 50%
    SELF_GEN_RATE: Decimal = Decimal("0.70")  # company keeps 30%

    # Payroll calendar: bi-weekly periods starting on the anchor, paid on Friday
    PAYROLL_ANCHOR_DATE: date = date(2024, 12, 16)
    PAYROLL_PERIOD_LENGTH_DAYS: int = 14
    PAYROLL_PAYOUT_WEEKDAY: int = 4  # Monday=0 ... Friday=4

    # Batch reporting / retry
    BATCH_ERROR_LIMIT: int = 10
    PERSISTENCE_RETRY_ATTEMPTS: int = 2

    # Optional outbound notification webhook
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None
    NOTIFICATION_WEBHOOK_TIMEOUT: int = 15

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
