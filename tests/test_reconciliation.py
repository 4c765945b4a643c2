import datetime as dt
import time
from decimal import Decimal

from checkout_service import crud
from checkout_service.models import utcnow
from checkout_service.reconciliation import (
    reconcile_partial_orders,
    run_sweep,
    start_reservation_sweeper,
)


def _header(session_factory, number, *, minutes_ago, payment_status="paid"):
    db = session_factory()
    try:
        return crud.create_order_header(
            db,
            {
                "order_number": number,
                "customer_id": "buyer-1",
                "subtotal": Decimal("100"),
                "shipping_fee": Decimal("20"),
                "tax": Decimal("21"),
                "total": Decimal("141"),
                "payment_method": "card",
                "payment_status": payment_status,
                "order_status": "confirmed",
                "payment_reference": f"SHOPUP-{number}",
                "created_at": utcnow() - dt.timedelta(minutes=minutes_ago),
            },
        )
    finally:
        db.close()


def _order(session_factory, order_id):
    db = session_factory()
    try:
        return crud.get_order(db, order_id)
    finally:
        db.close()


# --- Test reconcile_partial_orders --- #


def test_orphan_headers_are_voided(session_factory):
    """A paid header without lines is cancelled and flagged for review."""
    orphan = _header(session_factory, "ORD-2026-000001", minutes_ago=30)

    assert reconcile_partial_orders(session_factory, grace_minutes=10) == [orphan.id]

    voided = _order(session_factory, orphan.id)
    assert voided.order_status == "cancelled"
    assert voided.cancellation_reason == "partial_commit"
    assert voided.requires_review is True


def test_unpaid_orphan_is_not_flagged(session_factory):
    orphan = _header(session_factory, "ORD-2026-000002", minutes_ago=30, payment_status="pending")

    reconcile_partial_orders(session_factory, grace_minutes=10)

    assert _order(session_factory, orphan.id).requires_review is False


def test_recent_and_complete_orders_are_left_alone(session_factory, make_product):
    recent = _header(session_factory, "ORD-2026-000003", minutes_ago=1)
    complete = _header(session_factory, "ORD-2026-000004", minutes_ago=30)
    product = make_product()
    db = session_factory()
    try:
        crud.create_order_items(
            db,
            complete.id,
            [{
                "product_id": product.id,
                "seller_id": 1,
                "product_name": product.name,
                "quantity": 1,
                "unit_price": Decimal("100"),
                "line_total": Decimal("100"),
            }],
        )
    finally:
        db.close()

    assert reconcile_partial_orders(session_factory, grace_minutes=10) == []
    assert _order(session_factory, recent.id).order_status == "confirmed"
    assert _order(session_factory, complete.id).order_status == "confirmed"


def test_reconcile_is_repeatable(session_factory):
    _header(session_factory, "ORD-2026-000005", minutes_ago=30)
    assert len(reconcile_partial_orders(session_factory, grace_minutes=10)) == 1
    assert reconcile_partial_orders(session_factory, grace_minutes=10) == []


# --- Test sweeper --- #


def _expired_hold(session_factory, product_id, quantity):
    db = session_factory()
    try:
        crud.conditional_decrement_stock(db, product_id, crud.get_stock_quantity(db, product_id), quantity)
        crud.create_reservation(
            db,
            product_id=product_id,
            customer_id="buyer-1",
            quantity=quantity,
            expires_at=utcnow() - dt.timedelta(minutes=1),
        )
    finally:
        db.close()


def test_run_sweep(session_factory, make_product, stock_of):
    product = make_product(stock=10)
    _expired_hold(session_factory, product.id, 3)
    assert stock_of(product.id) == 7

    assert run_sweep(session_factory) == {"expired_reservations": 1, "voided_orders": 0}
    assert stock_of(product.id) == 10


def test_background_sweeper_returns_expired_stock(session_factory, make_product, stock_of):
    product = make_product(stock=10)
    _expired_hold(session_factory, product.id, 4)

    stop = start_reservation_sweeper(session_factory, interval=0.05)
    try:
        deadline = time.monotonic() + 5
        while stock_of(product.id) != 10 and time.monotonic() < deadline:
            time.sleep(0.05)
    finally:
        stop.set()

    assert stock_of(product.id) == 10
