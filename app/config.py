from pydantic_settings import BaseSettings
from pydantic import field_validator
from decimal import Decimal
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./storefront.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes
    SQLITE_BUSY_TIMEOUT: int = 30  # Seconds a SQLite writer waits for the lock

    # App Settings
    APP_NAME: str = "Storefront Order Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Order numbering
    ORDER_NUMBER_PREFIX: str = "ORD"
    ORDER_NUMBER_PADDING: int = 6  # ORD-000001

    # Automatic order transitions (minutes after order creation)
    ORDER_PENDING_TO_PROCESSING_MINUTES: int = 1
    ORDER_PROCESSING_TO_DELIVERING_MINUTES: int = 31

    # Order status scheduler
    ORDER_SCHEDULER_ENABLED: bool = True
    ORDER_SCHEDULER_INTERVAL_SECONDS: int = 60
    ORDER_SCHEDULER_BATCH_SIZE: int = 100  # Max orders per transition per tick
    ORDER_SCHEDULER_CACHE_SIZE: int = 1000  # Processed-transition keys kept in memory
    SCHEDULER_TIMEZONE: str = "UTC"

    # Delivery estimate (business days after order creation)
    DELIVERY_MIN_BUSINESS_DAYS: int = 2
    DELIVERY_MAX_BUSINESS_DAYS: int = 4
    DELIVERY_HOLIDAYS: list[str] = ["01-01", "04-30", "05-01", "09-02"]  # MM-DD, every year

    # Stock
    DEFAULT_LOW_STOCK_THRESHOLD: int = 10
    CRITICAL_STOCK_LEVEL: int = 5

    # Checkout pricing (used when the client does not send totals)
    ORDER_TAX_RATE: Decimal = Decimal("0")  # e.g. 0.10 for 10%
    FREE_SHIPPING_THRESHOLD: Decimal = Decimal("200000")
    DEFAULT_SHIPPING_PRICE: Decimal = Decimal("20000")

    # Audit
    AUDIT_HISTORY_LIMIT: int = 50

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin for origin in self.CORS_ORIGINS if origin]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
