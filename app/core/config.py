from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except ValueError:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="classifieds", alias="MONGODB_DB_NAME")

    # Redis (ARQ worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Payment channel (mobile money / SMS relay)
    payment_webhook_secret: str = Field(default="", alias="PAYMENT_WEBHOOK_SECRET")
    payment_merchant_name: str = Field(default="Classifieds", alias="PAYMENT_MERCHANT_NAME")
    payment_merchant_number: str = Field(default="", alias="PAYMENT_MERCHANT_NUMBER")
    payment_currency: str = Field(default="UGX", alias="PAYMENT_CURRENCY")
    payment_reference_prefix: str = Field(default="CR", alias="PAYMENT_REFERENCE_PREFIX")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Ledger concurrency
    ledger_lock_timeout_seconds: float = 5.0
    ledger_lock_lease_seconds: float = 30.0
    ledger_lock_poll_interval_seconds: float = 0.05
    ledger_retry_attempts: int = 3
    ledger_retry_max_wait_seconds: float = 1.0

    # Purchases left PENDING longer than this are failed as expired
    purchase_pending_ttl_hours: int = 24

    # Reconciliation cron (UTC hour)
    reconciliation_hour: int = 2


@lru_cache
def get_settings() -> Settings:
    return Settings()
