import random
import string
import time
import uuid
from typing import Any, Dict, Optional

import httpx
import orjson

# kind -> (ResultCode, ResultDesc) as Daraja reports them
MOCK_RESULTS = {
    "succeeded": (0, "The service request is processed successfully."),
    "failed": (1, "The balance is insufficient for the request."),
    "canceled": (1032, "Request cancelled by user."),
}


def _receipt_number() -> str:
    return "".join(random.choices(string.ascii_uppercase + string.digits,
                                  k=10))


def _transaction_date(ts: float) -> int:
    return int(time.strftime("%Y%m%d%H%M%S", time.localtime(ts)))


# ----------------------------
# MockPay: STK push callbacks
# ----------------------------
def build_stk_callback(
    correlation_token: str,
    kind: str,
    *,
    amount: int,
    phone: str = "254708374149",
    receipt: Optional[str] = None,
    merchant_request_id: Optional[str] = None,
) -> Dict[str, Any]:
    if kind not in MOCK_RESULTS:
        raise ValueError(f"unknown callback kind {kind!r}")
    code, desc = MOCK_RESULTS[kind]
    stk: Dict[str, Any] = {
        "MerchantRequestID": merchant_request_id or f"mr_{uuid.uuid4().hex}",
        "CheckoutRequestID": correlation_token,
        "ResultCode": code,
        "ResultDesc": desc,
    }
    if code == 0:
        stk["CallbackMetadata"] = {"Item": [
            {"Name": "Amount", "Value": amount},
            {"Name": "MpesaReceiptNumber",
             "Value": receipt or _receipt_number()},
            {"Name": "TransactionDate",
             "Value": _transaction_date(time.time())},
            {"Name": "PhoneNumber", "Value": int(phone)},
        ]}
    return {"Body": {"stkCallback": stk}}


async def emit_callback(
    http: httpx.AsyncClient, webhook_url: str, event: Dict[str, Any]
) -> httpx.Response:
    return await http.post(
        webhook_url,
        content=orjson.dumps(event),
        headers={"content-type": "application/json"},
    )
