import hashlib
import hmac
import json
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from checkout_service import crud
from checkout_service.dependencies import get_gateway, get_paystack_client
from checkout_service.main import app
from checkout_service.order_commit import CommitLine, OrderCommitStep
from checkout_service.pricing import compute_totals
from mocks import StubGateway, StubPopup

BUYER = {
    "email": "ama@example.com",
    "full_name": "Ama Mensah",
    "phone": "0240000000",
    "region": "Greater Accra",
}


@pytest.fixture
def gateway(client):
    stub = StubGateway(StubPopup())
    app.dependency_overrides[get_gateway] = lambda: stub
    return stub


@pytest.fixture
def paystack(client):
    provider = MagicMock()
    app.dependency_overrides[get_paystack_client] = lambda: provider
    return provider


def _flagged_order(session_factory, reference, total="141.00"):
    db = session_factory()
    try:
        return crud.create_order_header(
            db,
            {
                "order_number": "ORD-2026-000099",
                "customer_id": "buyer-1",
                "subtotal": Decimal("100"),
                "shipping_fee": Decimal("20"),
                "tax": Decimal("21"),
                "total": Decimal(total),
                "payment_method": "card",
                "payment_status": "pending",
                "order_status": "pending",
                "payment_reference": reference,
                "requires_review": True,
            },
        )
    finally:
        db.close()


# --- Test service endpoints --- #


def test_root_and_health(client):
    assert client.get("/").json()["status"] == "running"
    assert client.get("/health").json() == {"status": "healthy", "service": "checkout-service"}


# --- Test stock endpoints --- #


def test_check_stock_endpoint(client, make_product):
    product = make_product(stock=4)
    body = client.get(f"/stock/{product.id}", params={"quantity": 5}).json()
    assert body == {"product_id": product.id, "available": False, "current_stock": 4, "requested": 5}


def test_check_stock_unknown_product(client):
    resp = client.get("/stock/9999")
    assert resp.status_code == 404
    assert resp.json()["detail"]["error"] == "not_found"


def test_reserve_endpoint_conflict_on_insufficient(client, make_product):
    product = make_product(stock=1)
    resp = client.post("/stock/reserve", json={"product_id": product.id, "quantity": 2})
    assert resp.status_code == 409
    assert resp.json()["detail"]["error"] == "insufficient"
    assert resp.json()["detail"]["current_stock"] == 1


def test_reserve_multiple_endpoint(client, make_product, stock_of):
    first = make_product(stock=3)
    second = make_product(stock=3)
    resp = client.post(
        "/stock/reserve-multiple",
        json={"items": [{"product_id": first.id, "quantity": 1}, {"product_id": second.id, "quantity": 2}]},
    )
    assert resp.status_code == 200
    assert stock_of(first.id) == 2
    assert stock_of(second.id) == 1


def test_admin_endpoints_require_admin(client, current_user):
    assert client.post("/stock/cleanup").status_code == 403
    current_user["is_admin"] = True
    assert client.post("/stock/cleanup").json() == {"expired": 0}


def test_low_stock_alerts_endpoint(client, current_user, make_product):
    current_user["is_admin"] = True
    low = make_product(name="Low", stock=2)
    make_product(name="Plenty", stock=50)
    body = client.get("/stock/alerts/low").json()
    assert [p["id"] for p in body] == [low.id]


# --- Test checkout endpoints --- #


def test_checkout_summary(client, make_product):
    product = make_product(price="100.00", stock=1)
    body = client.post(
        "/checkout/summary",
        json={"items": [{"product_id": product.id, "quantity": 2}], "region": "Greater Accra"},
    ).json()

    assert body["state"] == "blocked"
    assert Decimal(body["totals"]["total"]) == Decimal("258.50")
    assert body["issues"][0]["kind"] == "insufficient"


def test_checkout_summary_empty_cart(client):
    resp = client.post("/checkout/summary", json={"items": []})
    assert resp.status_code == 400
    assert resp.json()["detail"]["redirect"] == "/cart"


def test_start_and_complete_card_checkout(client, gateway, make_product, stock_of):
    product = make_product(price="100.00", stock=5)
    start = client.post(
        "/checkout/start",
        json={"items": [{"product_id": product.id, "quantity": 1}], "buyer": BUYER, "payment_method": "card"},
    )
    assert start.status_code == 201
    payment = start.json()
    assert payment["amount_minor"] == 14100
    assert stock_of(product.id) == 4

    callback = {"reference": payment["reference"], "status": "success", "transaction": "T-9"}
    done = client.post(f"/checkout/{payment['reference']}/complete", json=callback)
    assert done.status_code == 200
    outcome = done.json()
    assert outcome["payment_status"] == "paid"

    # retrying the same callback returns the same order
    again = client.post(f"/checkout/{payment['reference']}/complete", json=callback).json()
    assert again["order_id"] == outcome["order_id"]

    order = client.get(outcome["confirmation_path"]).json()
    assert order["order_number"] == outcome["order_number"]
    assert order["items"][0]["quantity"] == 1


def test_complete_with_unverified_payment(client, gateway, make_product, stock_of, order_count):
    gateway.verified = False
    product = make_product(stock=5)
    payment = client.post(
        "/checkout/start",
        json={"items": [{"product_id": product.id, "quantity": 2}], "buyer": BUYER},
    ).json()

    resp = client.post(
        f"/checkout/{payment['reference']}/complete",
        json={"reference": payment["reference"], "status": "success"},
    )

    assert resp.status_code == 402
    assert resp.json()["detail"]["error"] == "verification_failed"
    assert order_count() == 0
    assert stock_of(product.id) == 5


def test_start_out_of_stock(client, gateway, make_product):
    product = make_product(name="Batik Shirt", stock=0)
    resp = client.post(
        "/checkout/start",
        json={"items": [{"product_id": product.id, "quantity": 1}], "buyer": BUYER},
    )
    assert resp.status_code == 409
    assert resp.json()["detail"]["error"] == "out_of_stock"


def test_cod_order_and_cancel(client, make_product, stock_of):
    product = make_product(stock=5)
    resp = client.post(
        "/checkout/cod",
        json={"items": [{"product_id": product.id, "quantity": 2}], "buyer": BUYER, "payment_method": "cod"},
    )
    assert resp.status_code == 201
    order_id = resp.json()["order_id"]
    assert stock_of(product.id) == 3

    first = client.post(f"/orders/{order_id}/cancel", json={"reason": "ordered twice"})
    second = client.post(f"/orders/{order_id}/cancel", json={"reason": "ordered twice"})

    assert first.json()["order_status"] == "cancelled"
    assert second.status_code == 200
    assert stock_of(product.id) == 5


def test_orders_are_private(client, current_user, make_product):
    product = make_product(stock=5)
    order_id = client.post(
        "/checkout/cod",
        json={"items": [{"product_id": product.id, "quantity": 1}], "buyer": BUYER},
    ).json()["order_id"]

    current_user["id"] = "buyer-2"
    assert client.get(f"/orders/{order_id}").status_code == 404


def test_status_update_requires_admin(client, current_user, make_product):
    product = make_product(stock=5)
    order_id = client.post(
        "/checkout/cod",
        json={"items": [{"product_id": product.id, "quantity": 1}], "buyer": BUYER},
    ).json()["order_id"]

    assert client.patch(f"/orders/{order_id}/status", json={"status": "processing"}).status_code == 403
    current_user["is_admin"] = True
    resp = client.patch(f"/orders/{order_id}/status", json={"status": "processing"})
    assert resp.json()["order_status"] == "processing"
    assert client.patch(f"/orders/{order_id}/status", json={"status": "delivered"}).status_code == 400


# --- Test payment endpoints --- #


def test_verify_requires_token(client, paystack):
    resp = client.post("/payments/verify", json={"reference": "SHOPUP-1"})
    assert resp.status_code == 401


def test_verify_success_records_audit(client, paystack, session_factory):
    paystack.verify_transaction.return_value = (
        200,
        {"status": True, "data": {"status": "success", "amount": 14100, "channel": "card"}},
    )
    with patch("checkout_service.auth.PAYMENT_VERIFY_TOKEN", "verify-token"):
        resp = client.post(
            "/payments/verify",
            json={"reference": "SHOPUP-1", "amount": 141.0},
            headers={"Authorization": "Bearer verify-token"},
        )

    body = resp.json()
    assert resp.status_code == 200
    assert body["verified"] is True
    assert Decimal(str(body["amount"])) == Decimal("141.00")
    paystack.verify_transaction.assert_called_once_with("SHOPUP-1")


def test_verify_amount_mismatch(client, paystack):
    paystack.verify_transaction.return_value = (
        200,
        {"status": True, "data": {"status": "success", "amount": 100}},
    )
    with patch("checkout_service.auth.PAYMENT_VERIFY_TOKEN", "verify-token"):
        body = client.post(
            "/payments/verify",
            json={"reference": "SHOPUP-1", "amount": 141.0},
            headers={"Authorization": "Bearer verify-token"},
        ).json()

    assert body["verified"] is False
    assert body["status"] == "amount_mismatch"


def test_verify_rejected_by_provider(client, paystack):
    paystack.verify_transaction.return_value = (400, {"status": False, "message": "Transaction reference not found"})
    with patch("checkout_service.auth.PAYMENT_VERIFY_TOKEN", "verify-token"):
        resp = client.post(
            "/payments/verify",
            json={"reference": "SHOPUP-404"},
            headers={"Authorization": "Bearer verify-token"},
        )

    assert resp.status_code == 400
    assert resp.json()["error"] == "Transaction reference not found"


def _signed(payload, secret="sk_test_abc"):
    raw = json.dumps(payload).encode("utf-8")
    return raw, hmac.new(secret.encode("utf-8"), raw, hashlib.sha512).hexdigest()


def test_webhook_rejects_bad_signature(client):
    raw, _ = _signed({"event": "charge.success", "data": {"reference": "SHOPUP-1"}})
    with patch("checkout_service.paystack.PAYSTACK_SECRET_KEY", "sk_test_abc"):
        resp = client.post(
            "/payments/paystack/webhook",
            content=raw,
            headers={"x-paystack-signature": "0" * 128},
        )
    assert resp.status_code == 401


def test_webhook_settles_flagged_order(client, session_factory):
    order = _flagged_order(session_factory, "SHOPUP-77")
    raw, signature = _signed({"event": "charge.success", "data": {"reference": "SHOPUP-77", "amount": 14100}})

    with patch("checkout_service.paystack.PAYSTACK_SECRET_KEY", "sk_test_abc"):
        resp = client.post(
            "/payments/paystack/webhook",
            content=raw,
            headers={"x-paystack-signature": signature, "Content-Type": "application/json"},
        )

    assert resp.status_code == 200
    assert resp.json()["settled"] == [order.id]
    db = session_factory()
    try:
        settled = crud.get_order(db, order.id)
        assert settled.payment_status == "paid"
        assert settled.order_status == "confirmed"
        assert settled.requires_review is False
    finally:
        db.close()


def test_webhook_charge_failed_cancels_and_returns_stock(client, session_factory, manager, make_product, stock_of):
    product = make_product(stock=5)
    hold = manager.reserve_stock(product.id, 2, "buyer-1")
    order = OrderCommitStep(session_factory, manager, publish=lambda *a, **kw: None).commit(
        customer_id="buyer-1",
        lines=[CommitLine(
            product_id=product.id,
            product_name=product.name,
            quantity=2,
            unit_price=Decimal("100.00"),
            reservation_id=hold.reservation_id,
            stock_held=True,
        )],
        totals=compute_totals(Decimal("200"), shipping=Decimal("20")),
        payment_method="card",
        payment_status="pending",
        payment_reference="SHOPUP-9",
        requires_review=True,
    )
    assert stock_of(product.id) == 3
    raw, signature = _signed({"event": "charge.failed", "data": {"reference": "SHOPUP-9"}})

    with patch("checkout_service.paystack.PAYSTACK_SECRET_KEY", "sk_test_abc"):
        resp = client.post("/payments/paystack/webhook", content=raw, headers={"x-paystack-signature": signature})

    assert resp.json()["settled"] == [order.id]
    db = session_factory()
    try:
        failed = crud.get_order(db, order.id)
        assert failed.payment_status == "failed"
        assert failed.order_status == "cancelled"
        assert failed.cancellation_reason == "payment_failed"
    finally:
        db.close()
    assert stock_of(product.id) == 5
