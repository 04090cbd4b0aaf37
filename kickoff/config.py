from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Optional


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    if v is None or v.strip() == "":
        return default
    return v.strip()


# ----------------------------
# Settings
# ----------------------------
@dataclass
class Settings:
    database_url: str = "sqlite:///./kickoff.db"
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None

    supabase_url: str = ""
    supabase_service_key: str = ""

    public_base_url: str = "http://localhost:8000"
    qr_bucket: str = "imageBank"
    signed_url_ttl: int = 60

    mpesa_consumer_key: Optional[str] = None
    mpesa_consumer_secret: Optional[str] = None
    mpesa_passkey: Optional[str] = None
    mpesa_shortcode: Optional[str] = None
    mpesa_base_url: str = "https://sandbox.safaricom.co.ke"
    mpesa_callback_base: Optional[str] = None

    vip_price: int = 2000  # KSh
    vip_interval_days: int = 30
    shipping_fee: int = 199  # KSh

    tasks_backend: str = "pg"  # 'pg' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 64
    task_max_attempts: int = 5
    task_retry_base_seconds: int = 30

    stale_payment_seconds: int = 3600

    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"

    log_level: str = "INFO"

    @property
    def mpesa_configured(self) -> bool:
        return all((
            self.mpesa_consumer_key,
            self.mpesa_consumer_secret,
            self.mpesa_passkey,
            self.mpesa_shortcode,
        ))

    @property
    def callback_url(self) -> str:
        base = (self.mpesa_callback_base or self.public_base_url).rstrip("/")
        return f"{base}/payments/mpesa/webhook"

    def friendly_url(self, path: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/{path.lstrip('/')}"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=_env("DATABASE_URL", cls.database_url),
            db_pool_size=int(_env("DB_POOL_SIZE", "10")),
            db_max_overflow=int(_env("DB_MAX_OVERFLOW", "10")),
            db_pool_timeout=int(_env("DB_POOL_TIMEOUT", "30")),
            db_gate_limit=(
                int(_env("DB_GATE_LIMIT")) if _env("DB_GATE_LIMIT") else None
            ),
            supabase_url=(_env("SUPABASE_URL", "") or "").rstrip("/"),
            supabase_service_key=_env("SUPABASE_SERVICE_ROLE_KEY", ""),
            public_base_url=_env("PUBLIC_BASE_URL", cls.public_base_url),
            qr_bucket=_env("QR_BUCKET", cls.qr_bucket),
            signed_url_ttl=int(_env("SIGNED_URL_TTL", "60")),
            mpesa_consumer_key=_env("MPESA_CONSUMER_KEY"),
            mpesa_consumer_secret=_env("MPESA_CONSUMER_SECRET"),
            mpesa_passkey=_env("MPESA_PASSKEY"),
            mpesa_shortcode=_env("MPESA_SHORTCODE"),
            mpesa_base_url=_env("MPESA_BASE_URL", cls.mpesa_base_url),
            mpesa_callback_base=_env("MPESA_CALLBACK_BASE"),
            vip_price=int(_env("VIP_PRICE", "2000")),
            vip_interval_days=int(_env("VIP_INTERVAL_DAYS", "30")),
            shipping_fee=int(_env("SHIPPING_FEE", "199")),
            tasks_backend=_env("TASKS_BACKEND", "pg").lower(),
            redis_url=_env("REDIS_URL", cls.redis_url),
            redis_max_conn=int(_env("REDIS_MAX_CONN", "64")),
            task_max_attempts=int(_env("TASK_MAX_ATTEMPTS", "5")),
            task_retry_base_seconds=int(_env("TASK_RETRY_BASE_SECONDS", "30")),
            stale_payment_seconds=int(_env("STALE_PAYMENT_SECONDS", "3600")),
            session_secret=_env("SESSION_SECRET", cls.session_secret),
            admin_username=_env("ADMIN_USERNAME", cls.admin_username),
            admin_password=_env("ADMIN_PASSWORD", cls.admin_password),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
        )
