import datetime as dt

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    category = Column(String(50), index=True)
    price = Column(Numeric(10, 2), nullable=False)
    stock_quantity = Column(Integer, nullable=False, default=0)
    seller_id = Column(Integer, nullable=False, index=True)
    status = Column(String(20), nullable=False, default="active")
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class StockReservation(Base):
    """A time-bounded record that stock was taken for one checkout attempt.

    The product's stock_quantity is already decremented when this row is
    written; the row exists so that the expiry sweep can give the stock back
    if the checkout never completes.
    """

    __tablename__ = "stock_reservations"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservation_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    customer_id = Column(String(64), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)
    checkout_reference = Column(String(100), index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    confirmed_at = Column(DateTime(timezone=True))


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(40), nullable=False, unique=True, index=True)
    customer_id = Column(String(64), nullable=False, index=True)
    seller_id = Column(Integer, index=True)
    customer_email = Column(String(255))
    delivery_region = Column(String(50))
    currency = Column(String(3), nullable=False, default="GHS")
    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping_fee = Column(Numeric(12, 2), nullable=False)
    tax = Column(Numeric(12, 2), nullable=False)
    total = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String(30), nullable=False)
    payment_status = Column(String(20), nullable=False, default="unpaid")
    order_status = Column(String(20), nullable=False, default="pending", index=True)
    payment_reference = Column(String(100), index=True)
    requires_review = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    cancelled_at = Column(DateTime(timezone=True))
    cancellation_reason = Column(String(255))

    items = relationship("OrderItem", back_populates="order", lazy="selectin")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False, index=True)
    seller_id = Column(Integer)
    product_name = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    line_total = Column(Numeric(12, 2), nullable=False)
    # set once this line's units are out of stock; cancellation returns only these
    stock_settled = Column(Boolean, nullable=False, default=False)

    order = relationship("Order", back_populates="items")


class PaymentAttempt(Base):
    """One buyer attempt to pay, keyed by the client-generated reference."""

    __tablename__ = "payment_attempts"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(100), nullable=False, unique=True, index=True)
    customer_id = Column(String(64), nullable=False, index=True)
    email = Column(String(255), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="GHS")
    payment_method = Column(String(30), nullable=False)
    region = Column(String(50))
    status = Column(String(20), nullable=False, default="initiated")
    totals = Column(JSON, nullable=False)
    lines = Column(JSON, nullable=False)
    holds = Column(JSON, nullable=False)
    failure_reason = Column(String(100))
    order_id = Column(Integer)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class PaymentVerification(Base):
    """Audit row written by the server-side verification endpoint."""

    __tablename__ = "payment_verifications"

    id = Column(Integer, primary_key=True, index=True)
    payment_reference = Column(String(100), nullable=False, index=True)
    verification_status = Column(String(30), nullable=False)
    amount = Column(Numeric(12, 2))
    verified_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    provider_response = Column(JSON)


class OrderSequence(Base):
    __tablename__ = "order_sequences"

    year = Column(Integer, primary_key=True)
    value = Column(Integer, nullable=False, default=0)
