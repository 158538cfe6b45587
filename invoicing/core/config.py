from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from decimal import Decimal
from functools import lru_cache
from pydantic import field_validator

class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'invoicing_user'
    POSTGRES_PASSWORD: str = 'invoicing_pass'
    POSTGRES_DB: str = 'invoicing_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432
    DATABASE_URL: Optional[str] = None  # Sobrescribe la URL de Postgres (ej. sqlite)

    # Moneda y vencimiento
    INVOICE_CURRENCY: str = 'USD'
    INVOICE_DUE_DATE_DAYS: int = 30
    INVOICE_RECURRING_DUE_DAYS: int = 30

    # Numeración: INV-20240115-0001
    INVOICE_NUMBER_PREFIX: str = 'INV-'
    INVOICE_NUMBER_DATE_FORMAT: str = '%Y%m%d'
    INVOICE_NUMBER_PADDING: int = 4
    INVOICE_NUMBER_MAX_ATTEMPTS: int = 5

    # Validación estricta contra el monto declarado por el invoiceable
    INVOICE_STRICT_VALIDATION: bool = True
    INVOICE_AMOUNT_TOLERANCE: Decimal = Decimal('0.01')

    # Callbacks y bitácora
    INVOICE_CALLBACKS_ENABLED: bool = True
    INVOICE_ACTIVITY_LOG_ENABLED: bool = True
    INVOICE_AUTO_INVOICEABLE_ITEM: bool = False

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    model_config = SettingsConfigDict(
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        frozen=True
    )

    @field_validator(
        "DEBUG",
        "INVOICE_STRICT_VALIDATION",
        "INVOICE_CALLBACKS_ENABLED",
        "INVOICE_ACTIVITY_LOG_ENABLED",
        "INVOICE_AUTO_INVOICEABLE_ITEM",
        mode="before"
    )
    @classmethod
    def parse_bool(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("INVOICE_NUMBER_PADDING", "INVOICE_NUMBER_MAX_ATTEMPTS")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError('El valor debe ser mayor o igual a 1')
        return v


@lru_cache
def get_settings() -> Settings:
    """Configuración global del proceso (inmutable)."""
    return Settings()


settings = get_settings()
