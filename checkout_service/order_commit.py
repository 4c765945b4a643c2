"""Persist a checked-out cart as an order, then settle its stock.

The header and its lines are two separate writes with no transaction
spanning them. If the second write fails the header is left behind and
``PartialCommit`` carries its id; ``reconciliation.reconcile_partial_orders``
voids such headers later.
"""

from __future__ import annotations

import itertools
import secrets
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Iterable, Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud
from .config import CONFLICT_MAX_RETRIES, CURRENCY
from .errors import InvalidRequest, NotFound, PartialCommit
from .logger import get_logger
from .messaging import emit
from .models import Order, utcnow
from .pricing import Totals, to_money
from .reservations import StockReservationManager
from .schemas import OrderStatus, ReservationStatus

logger = get_logger(__name__)

_local_counter = itertools.count()

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING.value: {OrderStatus.PROCESSING.value, OrderStatus.CONFIRMED.value},
    OrderStatus.CONFIRMED.value: {OrderStatus.PROCESSING.value, OrderStatus.SHIPPED.value},
    OrderStatus.PROCESSING.value: {OrderStatus.SHIPPED.value},
    OrderStatus.SHIPPED.value: {OrderStatus.DELIVERED.value},
}

NOT_CANCELLABLE = [
    OrderStatus.CANCELLED.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
]


def local_order_number(now=None) -> str:
    """Order number built without the store: ORD-{year}-{ts6}{counter3}{rand2}."""
    now = now or utcnow()
    ts = int(now.timestamp() * 1000) % 1_000_000
    seq = next(_local_counter) % 1000
    return f"ORD-{now.year}-{ts:06d}{seq:03d}{secrets.randbelow(100):02d}"


@dataclass
class CommitLine:
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    seller_id: Optional[int] = None
    reservation_id: Optional[int] = None
    # stock was already taken for this line (reservation row may be missing)
    stock_held: bool = False

    @property
    def line_total(self) -> Decimal:
        return to_money(Decimal(str(self.unit_price)) * self.quantity)


class OrderCommitStep:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        reservations: StockReservationManager,
        *,
        max_retries: int = CONFLICT_MAX_RETRIES,
        publish: Callable[[str, dict], Any] = emit,
    ):
        self.session_factory = session_factory
        self.reservations = reservations
        self.max_retries = max_retries
        self.publish = publish

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def _load(self, order_id: int) -> Optional[Order]:
        with self._session() as db:
            return crud.get_order(db, order_id)

    # -----------------------------
    # Order numbers
    # -----------------------------

    def generate_order_number(self) -> str:
        year = utcnow().year
        try:
            with self._session() as db:
                seq = crud.next_order_sequence(db, year)
        except SQLAlchemyError:
            logger.warning("order sequence unavailable, using local order number", exc_info=True)
            seq = None
        if seq is None:
            return local_order_number()
        return f"ORD-{year}-{seq:06d}"

    # -----------------------------
    # Commit
    # -----------------------------

    def commit(
        self,
        *,
        customer_id: str,
        lines: Iterable[CommitLine],
        totals: Totals,
        payment_method: str,
        payment_status: str,
        order_status: str = OrderStatus.PENDING.value,
        payment_reference: Optional[str] = None,
        customer_email: Optional[str] = None,
        region: Optional[str] = None,
        requires_review: bool = False,
        currency: str = CURRENCY,
    ) -> Order:
        lines = list(lines)
        if not lines:
            raise InvalidRequest("Cannot place an order without items.")

        header = {
            "order_number": self.generate_order_number(),
            "customer_id": str(customer_id),
            "seller_id": lines[0].seller_id,
            "customer_email": customer_email,
            "delivery_region": region,
            "currency": currency,
            "subtotal": totals.subtotal,
            "shipping_fee": totals.shipping_fee,
            "tax": totals.vat,
            "total": totals.total,
            "payment_method": payment_method,
            "payment_status": payment_status,
            "order_status": order_status,
            "payment_reference": payment_reference,
            "requires_review": requires_review,
        }
        with self._session() as db:
            order = crud.create_order_header(db, header)
        order_id, order_number = order.id, order.order_number

        items = [
            {
                "product_id": line.product_id,
                "seller_id": line.seller_id,
                "product_name": line.product_name,
                "quantity": line.quantity,
                "unit_price": to_money(line.unit_price),
                "line_total": line.line_total,
            }
            for line in lines
        ]
        try:
            with self._session() as db:
                rows = crud.create_order_items(db, order_id, items)
        except SQLAlchemyError as e:
            logger.error(
                "order %s (%s) written without its lines; reference %s",
                order_id, order_number, payment_reference,
                exc_info=True,
            )
            raise PartialCommit(order_id=order_id, order_number=order_number) from e

        # the order is durable from here on; later failures flag it for review instead of raising
        try:
            unsettled = self._settle_stock(lines, [row.id for row in rows])
        except Exception:
            logger.error("order %s committed but stock settlement failed", order_number, exc_info=True)
            unsettled = lines
        if unsettled:
            logger.error(
                "order %s committed but stock could not be settled for products %s",
                order_number, [line.product_id for line in unsettled],
            )
            requires_review = True
            self._flag_for_review(order_id)

        logger.info("order %s committed (%s, %s)", order_number, payment_method, payment_status)
        try:
            self.publish(
                "order.committed",
                {
                    "order_id": order_id,
                    "order_number": order_number,
                    "customer_id": str(customer_id),
                    "total": str(totals.total),
                    "payment_status": payment_status,
                    "items": [{"product_id": i["product_id"], "quantity": i["quantity"]} for i in items],
                },
            )
        except Exception:
            logger.warning("order.committed not published for %s", order_number, exc_info=True)

        try:
            committed = self._load(order_id)
        except SQLAlchemyError:
            logger.warning("could not reload order %s after commit", order_number, exc_info=True)
            committed = None
        if committed is None:
            order.requires_review = requires_review
            return order
        return committed

    def _flag_for_review(self, order_id: int) -> None:
        try:
            with self._session() as db:
                crud.update_order_payment(db, order_id, requires_review=True)
        except SQLAlchemyError:
            logger.error("could not flag order %s for review", order_id, exc_info=True)

    def _reservation_status(self, reservation_id: int) -> Optional[str]:
        with self._session() as db:
            reservation = crud.get_reservation(db, reservation_id)
        return reservation.status if reservation is not None else None

    def _settle_stock(self, lines: list[CommitLine], item_ids: list[int]) -> list[CommitLine]:
        """Take each line's units out of stock and mark its order item; returns the lines left unsettled."""
        unsettled = []
        for line, item_id in zip(lines, item_ids):
            if not self._settle_line(line):
                unsettled.append(line)
                continue
            try:
                with self._session() as db:
                    crud.mark_order_item_settled(db, item_id)
            except SQLAlchemyError:
                logger.error("stock taken for order item %s but not recorded", item_id, exc_info=True)
                unsettled.append(line)
        return unsettled

    def _settle_line(self, line: CommitLine) -> bool:
        if line.reservation_id is not None:
            status = self._reservation_status(line.reservation_id)
            if status == ReservationStatus.PENDING.value:
                if self.reservations.confirm_order(line.reservation_id):
                    return True
                # the sweep or a rollback may have claimed it since the read
                status = self._reservation_status(line.reservation_id)
            if status in (ReservationStatus.PENDING.value, ReservationStatus.CONFIRMED.value):
                return True
            logger.warning(
                "reservation %s for product %s is %s at commit; taking stock again",
                line.reservation_id, line.product_id, status,
            )
        elif line.stock_held:
            return True
        return self.decrement_stock(line.product_id, line.quantity)

    def decrement_stock(self, product_id: int, quantity: int) -> bool:
        """Guarded conditional decrement, retried on conflict."""
        for _ in range(self.max_retries + 1):
            with self._session() as db:
                current = crud.get_stock_quantity(db, product_id)
                if current is None or current < quantity:
                    return False
                if crud.conditional_decrement_stock(db, product_id, current, quantity):
                    return True
        return False

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def cancel_order(self, order_id: int, reason: Optional[str] = None) -> Order:
        order = self._load(order_id)
        if order is None:
            raise NotFound("Order not found.", order_id=order_id)

        with self._session() as db:
            flipped = crud.cancel_order_header(
                db, order_id, reason=reason, blocked_statuses=NOT_CANCELLABLE
            )

        if not flipped:
            current = self._load(order_id)
            if current.order_status == OrderStatus.CANCELLED.value:
                return current
            raise InvalidRequest(
                "This order can no longer be cancelled.",
                order_id=order_id,
                order_status=current.order_status,
            )

        units = self.reservations.cancel_order(order_id)
        logger.info("order %s cancelled, %s unit(s) returned to stock", order.order_number, units)
        self.publish(
            "order.cancelled",
            {"order_id": order_id, "order_number": order.order_number, "reason": reason},
        )
        return self._load(order_id)

    def advance_status(self, order_id: int, new_status: str) -> Order:
        new_status = OrderStatus(new_status).value
        order = self._load(order_id)
        if order is None:
            raise NotFound("Order not found.", order_id=order_id)
        if new_status == OrderStatus.CANCELLED.value:
            return self.cancel_order(order_id)

        if new_status not in ALLOWED_TRANSITIONS.get(order.order_status, set()):
            raise InvalidRequest(
                f"Cannot move an order from {order.order_status} to {new_status}.",
                order_id=order_id,
            )
        with self._session() as db:
            moved = crud.transition_order_status(
                db, order_id, from_status=order.order_status, to_status=new_status
            )
        if not moved:
            raise InvalidRequest("The order was updated elsewhere. Please reload it.", order_id=order_id)
        return self._load(order_id)
