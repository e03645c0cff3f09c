from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./food_delivery.db"

    LOG_LEVEL: str = "INFO"

    # Business rules are expressed in local wall-clock time (UTC+7)
    LOCAL_UTC_OFFSET_HOURS: int = 7

    SCHEDULER_ENABLED: bool = True

    PENDING_ORDER_CHECK_INTERVAL_SECONDS: int = 300
    READY_ORDER_CHECK_INTERVAL_SECONDS: int = 300
    DELIVERED_ORDER_CHECK_INTERVAL_SECONDS: int = 3600
    PAYMENT_TIMEOUT_CHECK_INTERVAL_SECONDS: int = 300

    PENDING_ORDER_TIMEOUT_MINUTES: int = 30
    READY_ORDER_TIMEOUT_MINUTES: int = 30
    DELIVERED_ORDER_COMPLETE_HOURS: int = 8
    PAYMENT_TIMEOUT_MINUTES: int = 15

    VOUCHER_CODE_LENGTH: int = 8

    class Config:
        env_file = ".env"

settings = Settings()
