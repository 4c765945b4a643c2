from __future__ import annotations

import datetime as dt
import threading
from typing import Callable, Optional

from sqlalchemy.orm import Session

from . import crud
from .config import ORPHAN_ORDER_GRACE_MINUTES, SWEEP_INTERVAL_SECONDS
from .logger import get_logger
from .messaging import emit
from .models import utcnow
from .order_commit import NOT_CANCELLABLE
from .reservations import StockReservationManager
from .schemas import PaymentStatus

logger = get_logger(__name__)

PARTIAL_COMMIT_REASON = "partial_commit"


def reconcile_partial_orders(
    session_factory: Callable[[], Session],
    *,
    grace_minutes: int = ORPHAN_ORDER_GRACE_MINUTES,
    now: Optional[dt.datetime] = None,
) -> list[int]:
    """Void order headers that never got their lines.

    Only headers older than ``grace_minutes`` are touched so that a commit
    still writing its lines is left alone. Paid headers are also flagged for
    review. Returns the ids of the voided orders.
    """
    cutoff = (now or utcnow()) - dt.timedelta(minutes=grace_minutes)
    db = session_factory()
    try:
        orphans = [(o.id, o.order_number, o.payment_status, o.payment_reference)
                   for o in crud.get_orders_without_lines(db, cutoff)]
    finally:
        db.close()

    voided = []
    for order_id, order_number, payment_status, reference in orphans:
        db = session_factory()
        try:
            if not crud.cancel_order_header(
                db, order_id, reason=PARTIAL_COMMIT_REASON, blocked_statuses=NOT_CANCELLABLE
            ):
                continue
            if payment_status == PaymentStatus.PAID.value:
                crud.update_order_payment(db, order_id, requires_review=True)
        finally:
            db.close()

        logger.warning(
            "voided order %s without lines (payment %s, reference %s)",
            order_number, payment_status, reference,
        )
        emit(
            "order.voided",
            {
                "order_id": order_id,
                "order_number": order_number,
                "payment_status": payment_status,
                "payment_reference": reference,
            },
        )
        voided.append(order_id)
    return voided


def run_sweep(session_factory: Callable[[], Session], reservations: Optional[StockReservationManager] = None) -> dict:
    reservations = reservations or StockReservationManager(session_factory)
    expired = reservations.cleanup_expired_reservations()
    voided = reconcile_partial_orders(session_factory)
    return {"expired_reservations": expired, "voided_orders": len(voided)}


def start_reservation_sweeper(
    session_factory: Callable[[], Session],
    *,
    interval: float = SWEEP_INTERVAL_SECONDS,
    daemon: bool = True,
) -> threading.Event:
    """Run ``run_sweep`` every ``interval`` seconds; set the returned event to stop."""
    stop = threading.Event()
    reservations = StockReservationManager(session_factory)

    def _run() -> None:
        while not stop.wait(interval):
            try:
                run_sweep(session_factory, reservations)
            except Exception:
                # database down, etc.; try again next tick
                logger.exception("reservation sweep failed")

    t = threading.Thread(target=_run, name="reservation-sweeper", daemon=daemon)
    t.start()
    return stop
