from dataclasses import dataclass
from typing import Optional
import os

from dotenv import load_dotenv


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///data/app.db"
    jwt_secret: str = "devsecret"
    session_ttl_hours: int = 12
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_price_id: Optional[str] = None
    billing_timeout_seconds: float = 10.0
    webhook_retention_days: int = 30
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    contact_email: str = "hello@localhost"
    admin_email: str = "admin@localhost"
    public_url: str = "http://localhost:8000"
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Read settings from the environment (and .env, if present)."""
    load_dotenv()
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///data/app.db"),
        jwt_secret=os.getenv("JWT_SECRET", "devsecret"),
        session_ttl_hours=int(os.getenv("SESSION_TTL_HOURS", "12")),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
        stripe_price_id=os.getenv("STRIPE_PRICE_ID"),
        billing_timeout_seconds=float(os.getenv("BILLING_TIMEOUT_SECONDS", "10")),
        webhook_retention_days=int(os.getenv("WEBHOOK_RETENTION_DAYS", "30")),
        smtp_host=os.getenv("SMTP_HOST") or None,
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        smtp_username=os.getenv("SMTP_USERNAME") or None,
        smtp_password=os.getenv("SMTP_PASSWORD") or None,
        smtp_use_tls=_flag("SMTP_USE_TLS", "true"),
        contact_email=os.getenv("CONTACT_EMAIL", "hello@localhost"),
        admin_email=os.getenv("ADMIN_EMAIL", "admin@localhost"),
        public_url=os.getenv("PUBLIC_URL", "http://localhost:8000").rstrip("/"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
