import time
import hashlib
import hmac
import uuid
from datetime import datetime, timezone
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def new_order_id() -> str:
    return uuid.uuid4().hex


def new_correlation_token() -> str:
    # same shape as the CheckoutRequestID values Daraja hands out
    return f"ws_CO_{uuid.uuid4().hex}"


def sha256_hex(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()
