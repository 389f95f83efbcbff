import dataclasses

import httpx
import orjson
import pytest
from fastapi.testclient import TestClient

from boxoffice.mockpay import build_stk_callback
from boxoffice.server import create_app

from conftest import BrokenStore

CALLBACK = "/payments/mpesa-callback/dev-callback-secret"


@pytest.fixture
def app(settings):
    settings = dataclasses.replace(
        settings,
        mock_webhook_url=f"http://testserver{CALLBACK}",
    )
    app = create_app(settings)
    # mock provider posts back into this same app
    app.state.http = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    )
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def _category(client, capacity=5, price=1500, **extra):
    r = client.post("/api/admin/categories", json={
        "id": "regular", "name": "Regular", "price": price,
        "capacity": capacity, **extra,
    })
    assert r.status_code == 201, r.text
    return r.json()


def _reserve(client, quantity=2, buyer="b1"):
    return client.post("/api/reservations", json={
        "buyerId": buyer, "categoryId": "regular", "quantity": quantity,
    })


def _callback(client, token, kind="succeeded", receipt="QGR7ABC123",
              path=CALLBACK):
    event = build_stk_callback(token, kind, amount=3000, receipt=receipt,
                               merchant_request_id="mr-1")
    return client.post(path, content=orjson.dumps(event),
                       headers={"content-type": "application/json"})


def test_reserve_pay_and_poll(client):
    _category(client)
    r = _reserve(client)
    assert r.status_code == 201
    body = r.json()
    assert body["status"] == "reserved"
    assert body["amount"] == 3000
    assert body["currency"] == "KES"
    assert body["correlationToken"].startswith("ws_CO_")

    order = client.get(f"/api/orders/{body['orderId']}").json()
    assert order["status"] == "reserved"
    assert order["final"] is False
    assert order["expiresAt"] is not None
    assert order["tickets"] == []

    ack = _callback(client, body["correlationToken"])
    assert ack.status_code == 200
    assert ack.json() == {"ResultCode": 0,
                          "ResultDesc": "Callback processed successfully"}

    order = client.get(f"/api/orders/{body['orderId']}").json()
    assert order["status"] == "paid"
    assert order["final"] is True
    assert order["receiptId"] == "QGR7ABC123"
    assert order["expiresAt"] is None
    assert len(order["tickets"]) == 2
    assert all(t["code"].startswith("TCK-") for t in order["tickets"])

    inv = client.get("/api/inventory/regular").json()
    assert (inv["available"], inv["reserved"], inv["sold"]) == (3, 0, 2)


def test_duplicate_callback_acknowledged(client):
    _category(client)
    token = _reserve(client).json()["correlationToken"]
    _callback(client, token)
    again = _callback(client, token)
    assert again.status_code == 200
    assert again.json()["ResultDesc"] == "Duplicate callback ignored"
    assert client.get("/api/inventory/regular").json()["sold"] == 2


@pytest.mark.parametrize("body", [b"garbage", b"{}", b'{"Body": 1}'])
def test_malformed_callback_still_acked(client, body):
    r = client.post(CALLBACK, content=body)
    assert r.status_code == 200
    assert r.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}


def test_wrong_secret_acked_but_ignored(client):
    _category(client)
    body = _reserve(client).json()
    r = _callback(client, body["correlationToken"],
                  path="/payments/mpesa-callback/wrong")
    assert r.status_code == 200
    assert r.json()["ResultCode"] == 0
    assert client.get(f"/api/orders/{body['orderId']}").json()[
        "status"] == "reserved"


def test_callback_for_unknown_order_acked_and_queued(client):
    r = _callback(client, "ws_CO_unknown")
    assert r.status_code == 200
    assert r.json()["ResultCode"] == 0
    items = client.get("/api/admin/conflicts").json()["items"]
    assert [i["kind"] for i in items] == ["order_not_found"]


def test_callback_liveness(client):
    r = client.get("/payments/mpesa-callback")
    assert r.status_code == 200
    assert "active" in r.json()["message"]


def test_out_of_stock_is_409(client):
    _category(client, capacity=1)
    assert _reserve(client, 1).status_code == 201
    r = _reserve(client, 1, buyer="b2")
    assert r.status_code == 409
    assert r.json() == {
        "error": "out_of_stock",
        "detail": "not enough tickets left in regular for 1",
        "retryable": False,
    }


def test_reservation_validation(client):
    _category(client, maxPerOrder=2)
    assert _reserve(client, 3).json()["error"] == "quantity_exceeds_limit"
    assert _reserve(client, 0).json()["error"] == "invalid_quantity"
    r = client.post("/api/reservations", json={"buyerId": "b1",
                                               "categoryId": "regular",
                                               "quantity": "two"})
    assert r.status_code == 400
    r = client.post("/api/reservations", json={"categoryId": "regular",
                                               "quantity": 1})
    assert r.status_code == 400


def test_unknown_category_and_order_are_404(client):
    assert _reserve(client).status_code == 404
    r = client.get("/api/orders/ghost")
    assert r.status_code == 404
    assert r.json()["error"] == "order_not_found"
    assert client.get("/api/inventory/ghost").status_code == 404


def test_duplicate_category_is_409(client):
    _category(client)
    r = client.post("/api/admin/categories", json={
        "id": "regular", "name": "Again", "price": 1, "capacity": 1,
    })
    assert r.status_code == 409


def test_failed_payment_releases_tickets(client):
    _category(client)
    body = _reserve(client).json()
    _callback(client, body["correlationToken"], kind="canceled")
    assert client.get(f"/api/orders/{body['orderId']}").json()[
        "status"] == "failed"
    assert client.get("/api/inventory/regular").json()["available"] == 5


def test_admin_sweep_and_conflict_resolution(client, app):
    _category(client, capacity=2)
    body = _reserve(client).json()

    # nothing is old enough yet
    assert client.post("/api/admin/sweep").json()["expired"] == []

    # pay twice with different receipts: second one is a duplicate payment
    _callback(client, body["correlationToken"], receipt="R1")
    _callback(client, body["correlationToken"], receipt="R2")
    items = client.get("/api/admin/conflicts").json()["items"]
    assert [i["kind"] for i in items] == ["duplicate_payment"]

    cid = items[0]["id"]
    r = client.post(f"/api/admin/conflicts/{cid}/resolve")
    assert r.json() == {"id": cid, "resolved": True}
    assert client.post(
        f"/api/admin/conflicts/{cid}/resolve").status_code == 404
    assert client.get("/api/admin/conflicts").json()["items"] == []

    kinds = {t["kind"] for t in client.get("/api/admin/timings").json()[
        "items"]}
    assert "reconciliation.apply" in kinds


def test_mockpay_emits_through_webhook(client):
    _category(client)
    body = _reserve(client).json()
    r = client.post(f"/mockpay/{body['correlationToken']}/emit",
                    data={"t": "succeeded"})
    assert r.status_code == 200
    out = r.json()
    assert out["ok"] is True
    assert out["orderId"] == body["orderId"]
    assert out["ack"]["ResultCode"] == 0
    assert client.get(f"/api/orders/{body['orderId']}").json()[
        "status"] == "paid"


def test_mockpay_rejects_bad_input(client):
    _category(client)
    token = _reserve(client).json()["correlationToken"]
    assert client.post(f"/mockpay/{token}/emit",
                       data={"t": "bogus"}).status_code == 400
    assert client.post("/mockpay/ws_CO_none/emit",
                       data={"t": "failed"}).status_code == 404


def test_mockpay_disabled_in_production(settings):
    app = create_app(dataclasses.replace(settings, app_env="production"))
    with TestClient(app) as c:
        r = c.post("/mockpay/ws_CO_x/emit", data={"t": "succeeded"})
        assert r.status_code == 404


@pytest.mark.parametrize("path", [
    "/payments/mpesa-callback",
    "/payments/mpesa-callback/dev-callback-secret/extra",
])
def test_callback_on_misconfigured_url_acked_but_ignored(client, path):
    _category(client)
    body = _reserve(client).json()
    r = _callback(client, body["correlationToken"], path=path)
    assert r.status_code == 200
    assert r.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    assert client.get(f"/api/orders/{body['orderId']}").json()[
        "status"] == "reserved"
    assert client.get("/api/admin/conflicts").json()["items"] == []


def test_callback_without_checkout_request_id_changes_nothing(client):
    _category(client)
    body = _reserve(client).json()
    event = {"Body": {"stkCallback": {"MerchantRequestID": "mr",
                                      "ResultCode": 0}}}
    r = client.post(CALLBACK, content=orjson.dumps(event),
                    headers={"content-type": "application/json"})
    assert r.status_code == 200
    assert r.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    assert client.get(f"/api/orders/{body['orderId']}").json()[
        "status"] == "reserved"
    inv = client.get("/api/inventory/regular").json()
    assert (inv["available"], inv["reserved"], inv["sold"]) == (3, 2, 0)


def test_huge_quantity_is_out_of_stock(client):
    _category(client)
    r = _reserve(client, 10**20)
    assert r.status_code == 409
    assert r.json()["error"] == "out_of_stock"
    assert client.get("/api/inventory/regular").json()["available"] == 5


def test_store_outage_is_503_and_retryable(client, app):
    _category(client)
    real = app.state.store
    app.state.store = BrokenStore(real, fail_on_call=1)
    try:
        r = _reserve(client)
    finally:
        app.state.store = real
    assert r.status_code == 503
    assert r.json()["error"] == "store_unavailable"
    assert r.json()["retryable"] is True
    assert client.get("/api/inventory/regular").json()["reserved"] == 0


def test_store_outage_during_callback_acked_and_redelivery_applies(client,
                                                                    app):
    _category(client)
    body = _reserve(client).json()
    real = app.state.store
    # callback record is written, the order lookup loses the connection
    app.state.store = BrokenStore(real, fail_on_call=2)
    try:
        r = _callback(client, body["correlationToken"])
    finally:
        app.state.store = real
    assert r.status_code == 200
    assert r.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    assert client.get(f"/api/orders/{body['orderId']}").json()[
        "status"] == "reserved"
    assert client.get("/api/inventory/regular").json()["sold"] == 0

    # nothing was committed, so the redelivery is processed from scratch
    again = _callback(client, body["correlationToken"])
    assert again.json()["ResultDesc"] == "Callback processed successfully"
    assert client.get(f"/api/orders/{body['orderId']}").json()[
        "status"] == "paid"
