from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from pydantic import field_validator

from app.common.money import Currency


class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'caja_user'
    POSTGRES_PASSWORD: str = 'caja_pass'
    POSTGRES_DB: str = 'caja_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432
    DATABASE_URL: Optional[str] = None  # Sobrescribe POSTGRES_* (tests, sqlite)

    # Redis settings
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # JWT settings
    APP_SECRET_STRING: str = 'your-super-secret-key-here-change-in-production-2024'
    ALGORITHM: str = 'HS256'

    # Import limits
    MAX_IMPORT_FILE_SIZE: int = 10 * 1024 * 1024  # 10MB

    # Pagination
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    # Caja
    DEFAULT_CURRENCY: Currency = Currency.ARS
    LOCK_TIMEOUT_SECONDS: float = 10.0

    # Conciliación de liquidaciones
    SETTLEMENT_MATCH_WINDOW_DAYS: int = 3
    SETTLEMENT_AMOUNT_TOLERANCE_MINOR: int = 0  # Coincidencia exacta de importe
    SETTLEMENT_LOOKUP_RETRIES: int = 2
    SETTLEMENT_LOOKUP_BACKOFF_SECONDS: float = 0.5
    PAYMENT_STORE_TIMEOUT_SECONDS: float = 5.0
    SETTLEMENT_MATCH_LEASE_SECONDS: int = 15 * 60  # marca de conciliación abandonada por un worker caído

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", mode="before")
    @classmethod
    def parse_debug(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("DEFAULT_CURRENCY", mode="before")
    @classmethod
    def parse_currency(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("SETTLEMENT_MATCH_WINDOW_DAYS", "SETTLEMENT_AMOUNT_TOLERANCE_MINOR", "SETTLEMENT_LOOKUP_RETRIES")
    @classmethod
    def non_negative(cls, v):
        if v < 0:
            raise ValueError("El valor no puede ser negativo")
        return v

settings = Settings()
