# boxoffice/gateway.py
"""
M-Pesa STK callback gateway: decides whether an inbound webhook is
authentic and well formed, and normalizes it for reconciliation.

Checks run in order and stop at the first failure:
  1) source IP allowlist (production only)
  2) shared secret in the callback URL path
  3) payload shape: Body.stkCallback with CheckoutRequestID, ResultCode and
     a receipt id

Whatever the verdict, the HTTP layer answers the provider with a 200 and
an acknowledgement body. A non-2xx makes Daraja retry the same callback
over and over, so rejection is reported internally (logs) and never on
the wire.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence, Union

import orjson

from .helpers import ct_equal, sha256_hex

RESULT_SUCCESS = 0


class RejectionReason(str, Enum):
    IP_NOT_ALLOWED = "ip_not_allowed"
    BAD_SECRET = "bad_secret"
    MALFORMED = "malformed_payload"


@dataclass(frozen=True)
class Rejection:
    reason: RejectionReason
    detail: str = ""


@dataclass(frozen=True)
class RawCallback:
    body: bytes
    path_secret: str
    headers: Mapping[str, str] = field(default_factory=dict)
    peer_ip: Optional[str] = None


@dataclass(frozen=True)
class NormalizedCallback:
    correlation_token: str
    receipt_id: str
    result_code: int
    result_desc: str
    raw_digest: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result_code == RESULT_SUCCESS


def source_ip(raw: RawCallback) -> Optional[str]:
    headers = {k.lower(): v for k, v in raw.headers.items()}
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (headers.get("x-real-ip") or "").strip()
    return real_ip or raw.peer_ip


def _metadata_items(stk: Mapping[str, Any]) -> Dict[str, Any]:
    meta = stk.get("CallbackMetadata")
    if not isinstance(meta, Mapping):
        return {}
    items = meta.get("Item")
    if not isinstance(items, list):
        return {}
    out: Dict[str, Any] = {}
    for item in items:
        if isinstance(item, Mapping) and isinstance(item.get("Name"), str):
            out[item["Name"]] = item.get("Value")
    return out


def _result_code(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def parse_stk_callback(body: bytes) -> Union[NormalizedCallback, Rejection]:
    try:
        data = orjson.loads(body)
    except orjson.JSONDecodeError:
        return Rejection(RejectionReason.MALFORMED, "invalid JSON")

    body_obj = data.get("Body") if isinstance(data, dict) else None
    stk = body_obj.get("stkCallback") if isinstance(body_obj, dict) else None
    if not isinstance(stk, dict):
        return Rejection(RejectionReason.MALFORMED,
                         "missing Body.stkCallback")

    token = stk.get("CheckoutRequestID")
    if not isinstance(token, str) or not token.strip():
        return Rejection(RejectionReason.MALFORMED,
                         "missing CheckoutRequestID")

    code = _result_code(stk.get("ResultCode"))
    if code is None:
        return Rejection(RejectionReason.MALFORMED, "missing ResultCode")

    metadata = _metadata_items(stk)
    # failed pushes carry no receipt; the merchant request id is still
    # unique per push attempt
    receipt = metadata.get("MpesaReceiptNumber") or stk.get(
        "MerchantRequestID"
    )
    if receipt is None or not str(receipt).strip():
        return Rejection(RejectionReason.MALFORMED, "missing receipt id")

    desc = stk.get("ResultDesc")
    return NormalizedCallback(
        correlation_token=token.strip(),
        receipt_id=str(receipt).strip(),
        result_code=code,
        result_desc=desc if isinstance(desc, str) else "",
        raw_digest=sha256_hex(body),
        metadata=metadata,
    )


def validate(
    raw: RawCallback,
    *,
    production: bool,
    allowed_ips: Sequence[str],
    secret: str,
) -> Union[NormalizedCallback, Rejection]:
    if production:
        ip = source_ip(raw)
        if not ip or ip not in allowed_ips:
            return Rejection(RejectionReason.IP_NOT_ALLOWED,
                             f"source {ip or '-'} not allowlisted")

    if not secret or not ct_equal(raw.path_secret or "", secret):
        return Rejection(RejectionReason.BAD_SECRET,
                         "callback path secret mismatch")

    return parse_stk_callback(raw.body)


def acknowledgement(desc: str = "Accepted") -> Dict[str, Any]:
    return {"ResultCode": 0, "ResultDesc": desc}
