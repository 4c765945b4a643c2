"""Record-store primitives used by the reservation, commit and payment steps.

Each function is one store call: it runs its statement(s) and commits. Stock
is only ever decremented through ``conditional_decrement_stock``, which
applies only if the stored quantity still equals the value the caller read.
"""

import datetime as dt
from typing import Any, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import (
    Order,
    OrderItem,
    OrderSequence,
    PaymentAttempt,
    PaymentVerification,
    Product,
    StockReservation,
    utcnow,
)

_NO_SYNC = {"synchronize_session": False}


# -----------------------------
# Products
# -----------------------------

def get_product(db: Session, product_id: int) -> Optional[Product]:
    return db.query(Product).filter(Product.id == product_id).first()


def get_products_by_ids(db: Session, product_ids: Iterable[int]) -> list[Product]:
    ids = sorted({int(pid) for pid in product_ids})
    if not ids:
        return []
    return db.query(Product).filter(Product.id.in_(ids)).all()


def get_stock_quantity(db: Session, product_id: int) -> Optional[int]:
    value = db.execute(
        select(Product.stock_quantity).where(Product.id == product_id)
    ).scalar_one_or_none()
    return None if value is None else int(value)


def conditional_decrement_stock(db: Session, product_id: int, expected: int, quantity: int) -> int:
    """Decrement only if stock still equals ``expected``; return affected rows.

    The extra ``stock_quantity > quantity - 1`` guard keeps the result
    non-negative even if a caller passes an expected value below ``quantity``.
    """
    stmt = (
        update(Product)
        .where(
            Product.id == product_id,
            Product.stock_quantity == expected,
            Product.stock_quantity > quantity - 1,
        )
        .values(stock_quantity=expected - quantity, updated_at=utcnow())
        .execution_options(**_NO_SYNC)
    )
    result = db.execute(stmt)
    db.commit()
    return int(result.rowcount or 0)


def increment_stock(db: Session, product_id: int, quantity: int) -> int:
    stmt = (
        update(Product)
        .where(Product.id == product_id)
        .values(stock_quantity=Product.stock_quantity + quantity, updated_at=utcnow())
        .execution_options(**_NO_SYNC)
    )
    result = db.execute(stmt)
    db.commit()
    return int(result.rowcount or 0)


def get_low_stock_products(db: Session, threshold: int) -> list[Product]:
    return (
        db.query(Product)
        .filter(
            Product.stock_quantity <= threshold,
            Product.stock_quantity > 0,
            Product.status == "active",
        )
        .order_by(Product.stock_quantity.asc(), Product.id.asc())
        .all()
    )


# -----------------------------
# Reservations
# -----------------------------

def create_reservation(
    db: Session,
    *,
    product_id: int,
    customer_id: str,
    quantity: int,
    expires_at: dt.datetime,
    checkout_reference: Optional[str] = None,
) -> StockReservation:
    reservation = StockReservation(
        product_id=product_id,
        customer_id=str(customer_id),
        quantity=quantity,
        status="pending",
        checkout_reference=checkout_reference,
        created_at=utcnow(),
        expires_at=expires_at,
    )
    db.add(reservation)
    db.commit()
    db.refresh(reservation)
    return reservation


def get_reservation(db: Session, reservation_id: int) -> Optional[StockReservation]:
    return db.query(StockReservation).filter(StockReservation.id == reservation_id).first()


def get_reservations(db: Session, reservation_ids: Iterable[int]) -> list[StockReservation]:
    ids = [int(r) for r in reservation_ids]
    if not ids:
        return []
    return db.query(StockReservation).filter(StockReservation.id.in_(ids)).all()


def get_expired_pending_reservations(db: Session, now: dt.datetime) -> list[StockReservation]:
    return (
        db.query(StockReservation)
        .filter(StockReservation.status == "pending", StockReservation.expires_at < now)
        .order_by(StockReservation.id.asc())
        .all()
    )


def transition_reservation(
    db: Session,
    reservation_id: int,
    *,
    from_status: str,
    to_status: str,
    **values: Any,
) -> int:
    """Move a reservation between statuses only if it is still in ``from_status``."""
    stmt = (
        update(StockReservation)
        .where(StockReservation.id == reservation_id, StockReservation.status == from_status)
        .values(status=to_status, **values)
        .execution_options(**_NO_SYNC)
    )
    result = db.execute(stmt)
    db.commit()
    return int(result.rowcount or 0)


# -----------------------------
# Orders
# -----------------------------

def create_order_header(db: Session, order_data: dict) -> Order:
    db_order = Order(**order_data)
    db.add(db_order)
    db.commit()
    db.refresh(db_order)
    return db_order


def create_order_items(db: Session, order_id: int, items_data: list[dict]) -> list[OrderItem]:
    rows = [OrderItem(order_id=order_id, **item) for item in items_data]
    db.add_all(rows)
    db.commit()
    for row in rows:
        db.refresh(row)
    return rows


def get_order(db: Session, order_id: int) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id).first()


def get_orders_by_payment_reference(db: Session, reference: str) -> list[Order]:
    return db.query(Order).filter(Order.payment_reference == reference).all()


def get_order_lines(db: Session, order_id: int) -> list[OrderItem]:
    return (
        db.query(OrderItem)
        .filter(OrderItem.order_id == order_id)
        .order_by(OrderItem.id.asc())
        .all()
    )


def mark_order_item_settled(db: Session, item_id: int) -> int:
    stmt = (
        update(OrderItem)
        .where(OrderItem.id == item_id)
        .values(stock_settled=True)
        .execution_options(**_NO_SYNC)
    )
    result = db.execute(stmt)
    db.commit()
    return int(result.rowcount or 0)


def cancel_order_header(db: Session, order_id: int, *, reason: Optional[str], blocked_statuses: Iterable[str]) -> int:
    now = utcnow()
    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.order_status.notin_(list(blocked_statuses)))
        .values(
            order_status="cancelled",
            cancelled_at=now,
            cancellation_reason=reason,
            updated_at=now,
        )
        .execution_options(**_NO_SYNC)
    )
    result = db.execute(stmt)
    db.commit()
    return int(result.rowcount or 0)


def transition_order_status(db: Session, order_id: int, *, from_status: str, to_status: str) -> int:
    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.order_status == from_status)
        .values(order_status=to_status, updated_at=utcnow())
        .execution_options(**_NO_SYNC)
    )
    result = db.execute(stmt)
    db.commit()
    return int(result.rowcount or 0)


def update_order_payment(db: Session, order_id: int, **values: Any) -> int:
    stmt = (
        update(Order)
        .where(Order.id == order_id)
        .values(updated_at=utcnow(), **values)
        .execution_options(**_NO_SYNC)
    )
    result = db.execute(stmt)
    db.commit()
    return int(result.rowcount or 0)


def get_orders_without_lines(db: Session, created_before: dt.datetime) -> list[Order]:
    line_count = (
        select(func.count(OrderItem.id))
        .where(OrderItem.order_id == Order.id)
        .scalar_subquery()
    )
    return (
        db.query(Order)
        .filter(
            Order.created_at < created_before,
            Order.order_status != "cancelled",
            line_count == 0,
        )
        .order_by(Order.id.asc())
        .all()
    )


def next_order_sequence(db: Session, year: int, max_attempts: int = 5) -> Optional[int]:
    """Advance the per-year order counter; None if every attempt lost a race."""
    for _ in range(max_attempts):
        current = db.execute(
            select(OrderSequence.value).where(OrderSequence.year == year)
        ).scalar_one_or_none()

        if current is None:
            try:
                db.add(OrderSequence(year=year, value=1))
                db.commit()
                return 1
            except IntegrityError:
                db.rollback()
                continue

        stmt = (
            update(OrderSequence)
            .where(OrderSequence.year == year, OrderSequence.value == current)
            .values(value=current + 1)
            .execution_options(**_NO_SYNC)
        )
        result = db.execute(stmt)
        db.commit()
        if result.rowcount == 1:
            return int(current) + 1
    return None


# -----------------------------
# Payment attempts / verifications
# -----------------------------

def create_payment_attempt(db: Session, attempt_data: dict) -> PaymentAttempt:
    attempt = PaymentAttempt(**attempt_data)
    db.add(attempt)
    db.commit()
    db.refresh(attempt)
    return attempt


def get_payment_attempt(db: Session, reference: str) -> Optional[PaymentAttempt]:
    return db.query(PaymentAttempt).filter(PaymentAttempt.reference == reference).first()


def transition_payment_attempt(
    db: Session,
    reference: str,
    *,
    from_status: str,
    to_status: str,
    **values: Any,
) -> int:
    stmt = (
        update(PaymentAttempt)
        .where(PaymentAttempt.reference == reference, PaymentAttempt.status == from_status)
        .values(status=to_status, updated_at=utcnow(), **values)
        .execution_options(**_NO_SYNC)
    )
    result = db.execute(stmt)
    db.commit()
    return int(result.rowcount or 0)


def create_payment_verification(db: Session, verification_data: dict) -> PaymentVerification:
    row = PaymentVerification(**verification_data)
    db.add(row)
    db.commit()
    db.refresh(row)
    return row
