import os
from dataclasses import dataclass, fields
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    data_file: str = os.getenv("LIBRARY_DATA_FILE", "library.db")
    database_busy_timeout: float = float(os.getenv("DATABASE_BUSY_TIMEOUT", "30"))

    # Lending policy
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "7"))
    restriction_threshold: str = os.getenv("RESTRICTION_THRESHOLD", "60.00")
    default_book_price: str = os.getenv("DEFAULT_BOOK_PRICE", "50.00")
    return_resubmission_window_hours: int = int(os.getenv("RETURN_RESUBMISSION_WINDOW_HOURS", "24"))

    # Idempotency
    idempotency_ttl_seconds: int = int(os.getenv("IDEMPOTENCY_TTL_SECONDS", "86400"))  # 24 hours
    derived_idempotency_ttl_seconds: int = int(os.getenv("DERIVED_IDEMPOTENCY_TTL_SECONDS", "300"))

    # Notifications
    outbox_max_attempts: int = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5"))
    outbox_batch_size: int = int(os.getenv("OUTBOX_BATCH_SIZE", "50"))
    email_relay_url: Optional[str] = os.getenv("EMAIL_RELAY_URL")
    email_relay_timeout: float = float(os.getenv("EMAIL_RELAY_TIMEOUT", "10"))
    smtp_from_email: str = os.getenv("SMTP_FROM_EMAIL", "noreply@library.com")
    smtp_from_name: str = os.getenv("SMTP_FROM_NAME", "Library System")

    # Payments
    payment_webhook_secret: Optional[str] = os.getenv("PAYMENT_WEBHOOK_SECRET")
    payment_currency: str = os.getenv("PAYMENT_CURRENCY", "usd")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Lending Ledger")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Monitoring
    prometheus_enabled: bool = _env_flag("PROMETHEUS_ENABLED", "False")


@dataclass(frozen=True)
class FeatureFlags:
    """Snapshot of the feature flags, resolved once per request or job run.

    Operations receive the snapshot explicitly instead of reading the
    environment mid-flight, so a flag flip never changes behaviour halfway
    through a transaction.
    """

    reserve_on_request: bool = False
    enable_notify: bool = True
    enable_overdue: bool = True
    enable_background_jobs: bool = True
    enable_idempotency: bool = True
    enable_audit_logs: bool = True
    enable_email_notifications: bool = True

    @classmethod
    def from_env(cls) -> "FeatureFlags":
        return cls(
            reserve_on_request=_env_flag("FEATURE_RESERVE_ON_REQUEST", "False"),
            enable_notify=_env_flag("FEATURE_ENABLE_NOTIFY", "True"),
            enable_overdue=_env_flag("FEATURE_ENABLE_OVERDUE", "True"),
            enable_background_jobs=_env_flag("FEATURE_ENABLE_BACKGROUND_JOBS", "True"),
            enable_idempotency=_env_flag("FEATURE_ENABLE_IDEMPOTENCY", "True"),
            enable_audit_logs=_env_flag("FEATURE_ENABLE_AUDIT_LOGS", "True"),
            enable_email_notifications=_env_flag("FEATURE_ENABLE_EMAIL_NOTIFICATIONS", "True"),
        )

    def is_enabled(self, flag_name: str) -> bool:
        """Look up a flag by name (``ENABLE_NOTIFY`` and ``enable_notify`` both work)."""
        name = flag_name.lower()
        known = {f.name for f in fields(self)}
        if name not in known:
            raise KeyError(f"Unknown feature flag: {flag_name}")
        return bool(getattr(self, name))


settings = Settings()
