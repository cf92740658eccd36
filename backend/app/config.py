from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./dev.db"
    APP_HOST: str = "127.0.0.1"
    APP_PORT: int = 8000
    FRONTEND_ORIGINS: List[str] = ["http://localhost:3000"]
    LOG_LEVEL: str = "INFO"

    # return lifecycle windows
    RETURN_WINDOW_DAYS: int = 15
    SHOP_RESPONSE_DEADLINE_DAYS: int = 3
    # VND has no minor unit; set to 2 for fractional currencies
    CURRENCY_MINOR_UNITS: int = 0

    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    OUTBOX_DRAIN_INTERVAL_SECONDS: int = 30
    OUTBOX_MAX_ATTEMPTS: int = 5
    OUTBOX_BATCH_SIZE: int = 100
    SLA_REPORT_INTERVAL_SECONDS: int = 300

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
