"""Oversell prevention: check, reserve, release, expire and batch-reserve stock.

The only correctness-critical step is the conditional decrement in
``crud.conditional_decrement_stock``: it applies only if the product row
still holds the quantity we read, so when two buyers race for the same row
the first writer wins and the other observes a conflict. There is no
in-process lock; buyers in other processes hit the same store.

Reservation rows are bookkeeping layered on top of the decrement. Writing
them may fail without undoing the stock change; the expiry sweep hands the
stock back for reservations that never reach an order.
"""

from __future__ import annotations

import datetime as dt
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterable, Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud
from .config import CONFLICT_MAX_RETRIES, LOW_STOCK_THRESHOLD, RESERVATION_HOLD_MINUTES
from .errors import InvalidRequest, NotFound
from .logger import get_logger
from .messaging import emit
from .models import Product, utcnow
from .schemas import ReservationStatus

logger = get_logger(__name__)

INSUFFICIENT = "insufficient"
CONFLICT = "conflict"


@dataclass
class StockCheck:
    product_id: int
    available: bool
    current_stock: int
    requested: int


@dataclass
class ReservationResult:
    success: bool
    product_id: int
    quantity: int
    new_stock: Optional[int] = None
    reservation_id: Optional[int] = None
    reason: Optional[str] = None
    current_stock: Optional[int] = None
    attempts: int = 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReservationResult":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__ if k in data})


@dataclass
class BatchReservationResult:
    success: bool
    results: list[ReservationResult] = field(default_factory=list)
    failed: list[ReservationResult] = field(default_factory=list)

    @property
    def reserved(self) -> list[ReservationResult]:
        return [r for r in self.results if r.success]


def _line_fields(item: Any) -> tuple[int, int]:
    if isinstance(item, dict):
        return int(item["product_id"]), int(item["quantity"])
    return int(item.product_id), int(item.quantity)


class StockReservationManager:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        hold_minutes: int = RESERVATION_HOLD_MINUTES,
        max_retries: int = CONFLICT_MAX_RETRIES,
    ):
        self.session_factory = session_factory
        self.hold = dt.timedelta(minutes=hold_minutes)
        self.max_retries = max_retries

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def _read_stock(self, product_id: int) -> int:
        with self._session() as db:
            current = crud.get_stock_quantity(db, product_id)
        if current is None:
            raise NotFound("This product is no longer available.", product_id=product_id)
        return current

    # -----------------------------
    # Single product
    # -----------------------------

    def check_stock(self, product_id: int, quantity: int) -> StockCheck:
        current = self._read_stock(product_id)
        return StockCheck(
            product_id=product_id,
            available=current >= quantity,
            current_stock=current,
            requested=quantity,
        )

    def reserve_stock(
        self,
        product_id: int,
        quantity: int,
        buyer_id: str,
        checkout_reference: Optional[str] = None,
    ) -> ReservationResult:
        if quantity <= 0:
            raise InvalidRequest("Quantity must be at least 1.", product_id=product_id)

        attempts = 0
        current: Optional[int] = None
        while attempts <= self.max_retries:
            attempts += 1
            # Always start from a fresh read; a stale baseline would just conflict again.
            current = self._read_stock(product_id)
            if current < quantity:
                return ReservationResult(
                    success=False,
                    product_id=product_id,
                    quantity=quantity,
                    reason=INSUFFICIENT,
                    current_stock=current,
                    attempts=attempts,
                )

            with self._session() as db:
                applied = crud.conditional_decrement_stock(db, product_id, current, quantity)

            if applied:
                reservation_id = self._record_reservation(
                    product_id, quantity, buyer_id, checkout_reference
                )
                logger.info(
                    "reserved %s x product %s for buyer %s (stock %s -> %s)",
                    quantity, product_id, buyer_id, current, current - quantity,
                )
                return ReservationResult(
                    success=True,
                    product_id=product_id,
                    quantity=quantity,
                    new_stock=current - quantity,
                    reservation_id=reservation_id,
                    attempts=attempts,
                )

            logger.info(
                "stock conflict on product %s (read %s), attempt %s", product_id, current, attempts
            )

        return ReservationResult(
            success=False,
            product_id=product_id,
            quantity=quantity,
            reason=CONFLICT,
            current_stock=current,
            attempts=attempts,
        )

    def _record_reservation(
        self,
        product_id: int,
        quantity: int,
        buyer_id: str,
        checkout_reference: Optional[str],
    ) -> Optional[int]:
        try:
            with self._session() as db:
                reservation = crud.create_reservation(
                    db,
                    product_id=product_id,
                    customer_id=str(buyer_id),
                    quantity=quantity,
                    expires_at=utcnow() + self.hold,
                    checkout_reference=checkout_reference,
                )
                return reservation.id
        except SQLAlchemyError:
            logger.warning(
                "could not record reservation for product %s; stock stays decremented",
                product_id,
                exc_info=True,
            )
            return None

    def release_stock(self, product_id: int, quantity: int) -> bool:
        if quantity <= 0:
            raise InvalidRequest("Quantity must be at least 1.", product_id=product_id)
        with self._session() as db:
            updated = crud.increment_stock(db, product_id, quantity)
        if not updated:
            raise NotFound("This product is no longer available.", product_id=product_id)
        logger.info("released %s x product %s", quantity, product_id)
        return True

    # -----------------------------
    # Batch (saga with compensating releases)
    # -----------------------------

    def reserve_multiple(
        self,
        items: Iterable[Any],
        buyer_id: str,
        checkout_reference: Optional[str] = None,
    ) -> BatchReservationResult:
        results: list[ReservationResult] = []
        failed: list[ReservationResult] = []

        try:
            for item in items:
                product_id, quantity = _line_fields(item)
                result = self.reserve_stock(product_id, quantity, buyer_id, checkout_reference)
                results.append(result)
                if not result.success:
                    failed.append(result)
                    break
        except Exception:
            self.release_holds([r for r in results if r.success])
            raise

        if failed:
            logger.info(
                "rolling back %s reservation(s) after product %s failed (%s)",
                len(results) - 1, failed[0].product_id, failed[0].reason,
            )
            self.release_holds([r for r in results if r.success])
            return BatchReservationResult(success=False, results=results, failed=failed)

        return BatchReservationResult(success=True, results=results)

    def release_holds(self, holds: Iterable[Any]) -> int:
        """Give back stock for holds taken by this caller and not yet committed.

        A hold with a reservation row is claimed (pending -> released) before
        its stock is returned, so a concurrent sweep cannot return it twice.
        Returns the number of units released.
        """
        units = 0
        for hold in holds:
            if isinstance(hold, dict):
                hold = ReservationResult.from_dict(hold)
            if not hold.success:
                continue
            try:
                if hold.reservation_id is not None:
                    with self._session() as db:
                        claimed = crud.transition_reservation(
                            db,
                            hold.reservation_id,
                            from_status=ReservationStatus.PENDING.value,
                            to_status=ReservationStatus.RELEASED.value,
                        )
                    if not claimed:
                        continue
                self.release_stock(hold.product_id, hold.quantity)
                units += hold.quantity
            except Exception:
                logger.error(
                    "rollback failed for product %s x %s (reservation %s)",
                    hold.product_id, hold.quantity, hold.reservation_id,
                    exc_info=True,
                )
        return units

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def cleanup_expired_reservations(self, now: Optional[dt.datetime] = None) -> int:
        now = now or utcnow()
        with self._session() as db:
            expired = crud.get_expired_pending_reservations(db, now)

        count = 0
        for reservation in expired:
            with self._session() as db:
                claimed = crud.transition_reservation(
                    db,
                    reservation.id,
                    from_status=ReservationStatus.PENDING.value,
                    to_status=ReservationStatus.EXPIRED.value,
                )
            if not claimed:
                continue
            try:
                self.release_stock(reservation.product_id, reservation.quantity)
            except Exception:
                logger.error(
                    "expired reservation %s claimed but stock not released", reservation.id,
                    exc_info=True,
                )
                continue
            count += 1

        if count:
            logger.info("cleaned up %s expired reservations", count)
            emit("reservations.expired", {"count": count})
        return count

    def confirm_order(self, reservation_id: int) -> bool:
        try:
            with self._session() as db:
                updated = crud.transition_reservation(
                    db,
                    reservation_id,
                    from_status=ReservationStatus.PENDING.value,
                    to_status=ReservationStatus.CONFIRMED.value,
                    confirmed_at=utcnow(),
                )
            return bool(updated)
        except SQLAlchemyError:
            logger.warning("could not confirm reservation %s", reservation_id, exc_info=True)
            return False

    def confirm_reservations(self, reservation_ids: Iterable[Optional[int]]) -> list[int]:
        """Confirm each reservation; returns the ids that could not be confirmed."""
        return [rid for rid in reservation_ids if rid is not None and not self.confirm_order(rid)]

    def release_reservations(self, reservation_ids: Iterable[int]) -> int:
        ids = [rid for rid in reservation_ids if rid is not None]
        with self._session() as db:
            rows = crud.get_reservations(db, ids)
        holds = [
            ReservationResult(
                success=True,
                product_id=r.product_id,
                quantity=r.quantity,
                reservation_id=r.id,
            )
            for r in rows
        ]
        return self.release_holds(holds)

    def cancel_order(self, order_id: int) -> int:
        """Return stock for every settled line of an order; returns units released."""
        with self._session() as db:
            if crud.get_order(db, order_id) is None:
                raise NotFound("Order not found.", order_id=order_id)
            lines = [
                (line.product_id, line.quantity)
                for line in crud.get_order_lines(db, order_id)
                if line.stock_settled
            ]

        units = 0
        for product_id, quantity in lines:
            self.release_stock(product_id, quantity)
            units += quantity
        return units

    def get_low_stock_alerts(self, threshold: int = LOW_STOCK_THRESHOLD) -> list[Product]:
        with self._session() as db:
            return crud.get_low_stock_products(db, threshold)
