import os
from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()

DEFAULT_PAYSTACK_IPS = ("52.31.139.75", "52.49.173.169", "52.214.14.220")


def _is_truthy(value: str) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in (raw or "").split(",") if item.strip())


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
        if value < minimum:
            raise ValueError
        return value
    except ValueError:
        return default


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or "").strip()


def _database_url() -> str:
    url = _env_str("DATABASE_URL", "sqlite:///./subscriptions.db")
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


@dataclass(frozen=True)
class Settings:
    environment: str = "development"
    database_url: str = "sqlite:///./subscriptions.db"

    paystack_secret_key: str = ""
    paystack_webhook_secret: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    paystack_timeout_seconds: int = 15
    paystack_allowed_ips: tuple[str, ...] = DEFAULT_PAYSTACK_IPS
    allow_development_ips: bool = True

    currency: str = "ZAR"
    max_retries: int = 3
    retry_interval_minutes: int = 1440
    grace_period_minutes: int = 10080
    transaction_max_age_minutes: int = 60
    trial_days: int = 7
    app_url: str = "http://localhost:8000"

    secret_key: str = ""
    algorithm: str = "HS256"
    admin_user_ids: tuple[str, ...] = field(default_factory=tuple)

    webhook_rate_limit: int = 100
    webhook_rate_window_seconds: int = 60
    initialize_rate_limit: int = 8
    initialize_rate_window_seconds: int = 900
    rate_limit_backend: str = "memory"
    trust_proxy_headers: bool = False
    trusted_proxy_ips: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def retry_interval(self) -> timedelta:
        return timedelta(minutes=self.retry_interval_minutes)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(minutes=self.grace_period_minutes)

    @classmethod
    def from_env(cls) -> "Settings":
        environment = _env_str("ENVIRONMENT", "development").lower() or "development"
        secret_key = _env_str("PAYSTACK_SECRET_KEY")
        allowed_ips = _parse_csv(os.getenv("PAYSTACK_ALLOWED_IPS", "")) or DEFAULT_PAYSTACK_IPS
        currency = _env_str("PAYMENT_CURRENCY", "ZAR").upper() or "ZAR"

        return cls(
            environment=environment,
            database_url=_database_url(),
            paystack_secret_key=secret_key,
            # Paystack signs webhooks with the account secret unless a dedicated one is set.
            paystack_webhook_secret=_env_str("PAYSTACK_WEBHOOK_SECRET") or secret_key,
            paystack_base_url=_env_str("PAYSTACK_BASE_URL", "https://api.paystack.co").rstrip("/"),
            paystack_timeout_seconds=_env_int("PAYSTACK_TIMEOUT_SECONDS", 15),
            paystack_allowed_ips=allowed_ips,
            allow_development_ips=_is_truthy(os.getenv("ALLOW_DEVELOPMENT_IPS", "true")),
            currency=currency,
            max_retries=_env_int("PAYMENT_MAX_RETRIES", 3),
            retry_interval_minutes=_env_int("PAYMENT_RETRY_INTERVAL_MINUTES", 1440),
            grace_period_minutes=_env_int("PAYMENT_GRACE_PERIOD_MINUTES", 10080),
            transaction_max_age_minutes=_env_int("TRANSACTION_MAX_AGE_MINUTES", 60),
            trial_days=_env_int("TRIAL_DAYS", 7),
            app_url=_env_str("APP_URL", "http://localhost:8000").rstrip("/"),
            secret_key=_env_str("SECRET_KEY"),
            algorithm=_env_str("ALGORITHM", "HS256") or "HS256",
            admin_user_ids=_parse_csv(os.getenv("ADMIN_USER_IDS", "")),
            webhook_rate_limit=_env_int("WEBHOOK_RATE_LIMIT", 100),
            webhook_rate_window_seconds=_env_int("WEBHOOK_RATE_WINDOW_SECONDS", 60),
            initialize_rate_limit=_env_int("INITIALIZE_RATE_LIMIT", 8),
            initialize_rate_window_seconds=_env_int("INITIALIZE_RATE_WINDOW_SECONDS", 900),
            rate_limit_backend=_env_str("RATE_LIMIT_BACKEND", "memory").lower() or "memory",
            trust_proxy_headers=_is_truthy(os.getenv("TRUST_PROXY_HEADERS", "false")),
            trusted_proxy_ips=_parse_csv(os.getenv("TRUSTED_PROXY_IPS", "")),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
