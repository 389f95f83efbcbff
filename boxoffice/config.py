# boxoffice/config.py
from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

# Safaricom's published STK callback origins, plus loopback for local tunnels
DEFAULT_MPESA_ALLOWED_IPS = (
    "196.201.214.200",
    "196.201.214.206",
    "196.201.213.114",
    "196.201.214.207",
    "196.201.214.208",
    "196.201.213.44",
    "196.201.212.127",
    "196.201.212.138",
    "196.201.212.129",
    "196.201.212.136",
    "196.201.212.74",
    "196.201.212.69",
    "127.0.0.1",
    "::1",
)

CURRENCY = "KES"


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(p.strip() for p in value.split(",") if p.strip())


def _opt_int(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    return int(value)


@dataclass(frozen=True)
class Settings:
    database_url: str
    app_env: str = "development"

    # webhook security envelope
    callback_secret: str = "dev-callback-secret"
    allowed_ips: Tuple[str, ...] = field(
        default_factory=lambda: DEFAULT_MPESA_ALLOWED_IPS
    )

    # reservation lifecycle
    reservation_ttl_seconds: int = 5 * 60
    sweep_interval_seconds: float = 30.0
    sweep_batch_size: int = 500
    default_max_per_order: Optional[int] = None

    ticket_secret: str = "dev-ticket-secret"
    mock_webhook_url: str = (
        "http://localhost:8000/payments/mpesa-callback/dev-callback-secret"
    )

    log_level: str = "INFO"
    log_file: Optional[str] = None

    # pool / DB gate
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None

    @property
    def production(self) -> bool:
        return self.app_env.lower() == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL is required")

        app_env = os.getenv("APP_ENV", "development")
        if app_env.lower() == "production":
            # the dev defaults are public, so they are as good as no secret
            missing = [name for name in ("MPESA_CALLBACK_SECRET",
                                         "TICKET_SECRET")
                       if not os.getenv(name)]
            if missing:
                raise RuntimeError(
                    f"{', '.join(missing)} required in production"
                )

        secret = os.getenv("MPESA_CALLBACK_SECRET", "dev-callback-secret")
        allowed = _split_csv(os.getenv("MPESA_ALLOWED_IPS"))
        return cls(
            database_url=database_url,
            app_env=app_env,
            callback_secret=secret,
            allowed_ips=allowed or DEFAULT_MPESA_ALLOWED_IPS,
            reservation_ttl_seconds=int(
                os.getenv("RESERVATION_TTL_SECONDS", "300")
            ),
            sweep_interval_seconds=float(
                os.getenv("SWEEP_INTERVAL_SECONDS", "30")
            ),
            sweep_batch_size=int(os.getenv("SWEEP_BATCH_SIZE", "500")),
            default_max_per_order=_opt_int(
                os.getenv("DEFAULT_MAX_PER_ORDER")
            ),
            ticket_secret=os.getenv("TICKET_SECRET", "dev-ticket-secret"),
            mock_webhook_url=os.getenv(
                "MOCK_WEBHOOK_URL",
                f"http://localhost:8000/payments/mpesa-callback/{secret}",
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE") or None,
            db_pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
            db_max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            db_pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            db_gate_limit=_opt_int(os.getenv("DB_GATE_LIMIT")),
        )
