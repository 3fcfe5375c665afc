from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str
    REDIS_URL: str = "redis://redis:6379/0"
    DB_CREATE_SCHEMA: bool = False  # Solo desarrollo/tests: crear tablas al iniciar

    JWT_SECRET: str = "dev-secret"
    JWT_ALGORITHM: str = "HS256"

    # Secret para cifrar y firmar los tokens QR de tickets
    QR_SECRET: str = "dev-qr"
    TOKEN_VALIDITY_HOURS: int = 24 * 365  # Sin fecha de evento, vigencia desde emisión
    TOKEN_GRACE_HOURS: int = 24  # Con fecha de evento, vigencia hasta evento + gracia

    # Callbacks de la pasarela de pago (redirect + webhook)
    PAYMENT_WEBHOOK_SECRET: str = "dev-webhook-secret"
    PAYMENT_PROVIDER: str = "gateway"
    CALLBACK_WINDOW_SECONDS: int = 15 * 60
    CALLBACK_CLOCK_SKEW_SECONDS: int = 60

    # Ledger de replay: "sql" (tabla replay_records) o "redis" (SET NX)
    REPLAY_LEDGER_BACKEND: str = "sql"
    REPLAY_RETENTION_SECONDS: int = 24 * 3600

    # Límite por operación contra el datastore
    STORE_TIMEOUT_SECONDS: float = 2.0
    STORE_RETRY_ATTEMPTS: int = 2

    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_STORAGE_URI: Optional[str] = None  # Default: REDIS_URL

    STATS_CACHE_SECONDS: int = 30
    CELERY_OUTCOMES_ENABLED: bool = False

    APP_ENV: str = "development"
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignorar campos extra en .env que no están en el modelo

settings = Settings()
