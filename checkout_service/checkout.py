"""Checkout orchestration: validate, reserve, pay, verify, commit.

One ``CheckoutOrchestrator`` drives one buyer's checkout attempt through

    loading -> validating -> (blocked | ready) -> paying -> verifying
            -> committing -> done

with ``failed`` for a stage that did not succeed (the buyer may retry).
Stock is reserved before the payment UI opens and is released again when
the attempt is cancelled, declined or cannot be verified. An order is only
written with ``payment_status="paid"`` after the server-side verifier has
confirmed the reference.
"""

from __future__ import annotations

import datetime as dt
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud
from .config import CURRENCY, VERIFICATION_ERROR_POLICY
from .errors import (
    CheckoutError,
    EmptyCart,
    InsufficientStock,
    InvalidRequest,
    NotFound,
    OutOfStock,
    PartialCommit,
    PaymentCancelled,
    PaymentDeclined,
    StockConflict,
    VerificationFailed,
    VerificationUnavailable,
)
from .logger import get_logger
from .models import Order, PaymentAttempt, utcnow
from .order_commit import CommitLine, OrderCommitStep
from .payments import PaymentConfig, PaymentGatewayAdapter, ProviderCallback, ProviderResponse
from .pricing import Totals, price_lines, to_money
from .reservations import CONFLICT, ReservationResult, StockReservationManager
from .schemas import AttemptStatus, OrderStatus, PaymentMethod, PaymentStatus

logger = get_logger(__name__)

OUT_OF_STOCK = "out_of_stock"
INSUFFICIENT = "insufficient"

POLICY_BLOCK = "block"
POLICY_FLAG_FOR_REVIEW = "flag_for_review"

CHANNELS_BY_METHOD = {
    PaymentMethod.CARD: ["card"],
    PaymentMethod.MOBILE_MONEY: ["mobile_money"],
    PaymentMethod.BANK_TRANSFER: ["bank_transfer"],
}


class CheckoutState(str, Enum):
    LOADING = "loading"
    VALIDATING = "validating"
    BLOCKED = "blocked"
    READY = "ready"
    PAYING = "paying"
    VERIFYING = "verifying"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class CartLine:
    product_id: int
    quantity: int
    name: str = "Unknown product"
    unit_price: Decimal = Decimal("0.00")
    seller_id: Optional[int] = None
    available: int = 0
    active: bool = False

    @property
    def line_total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)


@dataclass
class StockIssue:
    product_id: int
    name: str
    kind: str
    requested: int
    available: int

    @property
    def message(self) -> str:
        if self.kind == OUT_OF_STOCK:
            return f"{self.name} is out of stock"
        return f"{self.name}: only {self.available} available (you requested {self.requested})"

    def to_dict(self) -> dict[str, Any]:
        return {**asdict(self), "message": self.message}


@dataclass
class CheckoutSummary:
    state: CheckoutState
    region: Optional[str]
    lines: list[CartLine]
    totals: Totals
    issues: list[StockIssue] = field(default_factory=list)
    currency: str = CURRENCY


@dataclass
class PaymentSession:
    reference: str
    config: PaymentConfig
    totals: Totals
    expires_at: dt.datetime


@dataclass
class CheckoutOutcome:
    order_id: int
    order_number: str
    payment_status: str
    order_status: str
    total: Decimal
    payment_reference: Optional[str] = None
    requires_review: bool = False

    @property
    def confirmation_path(self) -> str:
        return f"/orders/{self.order_id}/confirmation"

    @classmethod
    def from_order(cls, order: Order) -> "CheckoutOutcome":
        return cls(
            order_id=order.id,
            order_number=order.order_number,
            payment_status=order.payment_status,
            order_status=order.order_status,
            total=to_money(order.total),
            payment_reference=order.payment_reference,
            requires_review=bool(order.requires_review),
        )


def _cart_items(cart: Iterable[Any]) -> list[tuple[int, int]]:
    merged: dict[int, int] = {}
    for item in cart or []:
        if isinstance(item, dict):
            product_id, quantity = item["product_id"], item["quantity"]
        else:
            product_id, quantity = item.product_id, item.quantity
        quantity = int(quantity)
        if quantity <= 0:
            raise InvalidRequest("Quantity must be at least 1.", product_id=int(product_id))
        merged[int(product_id)] = merged.get(int(product_id), 0) + quantity
    return list(merged.items())


def _totals_from(data: dict[str, Any]) -> Totals:
    return Totals(
        subtotal=to_money(data["subtotal"]),
        shipping_fee=to_money(data["shipping_fee"]),
        vat=to_money(data["vat"]),
        total=to_money(data["total"]),
    )


def _commit_lines(snapshot: list[dict[str, Any]]) -> list[CommitLine]:
    return [
        CommitLine(
            product_id=int(s["product_id"]),
            product_name=s["product_name"],
            quantity=int(s["quantity"]),
            unit_price=Decimal(str(s["unit_price"])),
            seller_id=s.get("seller_id"),
            reservation_id=s.get("reservation_id"),
            stock_held=bool(s.get("stock_held")),
        )
        for s in snapshot
    ]


class CheckoutOrchestrator:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        buyer_id: str,
        *,
        reservations: Optional[StockReservationManager] = None,
        gateway: Optional[PaymentGatewayAdapter] = None,
        committer: Optional[OrderCommitStep] = None,
        verification_error_policy: str = VERIFICATION_ERROR_POLICY,
    ):
        self.session_factory = session_factory
        self.buyer_id = str(buyer_id)
        self.reservations = reservations or StockReservationManager(session_factory)
        self.gateway = gateway or PaymentGatewayAdapter()
        self.committer = committer or OrderCommitStep(session_factory, self.reservations)
        self.verification_error_policy = verification_error_policy

        self.state = CheckoutState.LOADING
        self.lines: list[CartLine] = []
        self.region: Optional[str] = None
        self.issues: list[StockIssue] = []

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    # -----------------------------
    # Cart
    # -----------------------------

    def initialize(self, cart: Iterable[Any], region: Optional[str] = None) -> CheckoutSummary:
        self.state = CheckoutState.LOADING
        self.region = region
        self.lines = [CartLine(product_id=pid, quantity=qty) for pid, qty in _cart_items(cart)]
        if not self.lines:
            raise EmptyCart()
        self.validate_stock()
        return self.summary()

    def _refresh_products(self) -> None:
        with self._session() as db:
            products = {
                p.id: p for p in crud.get_products_by_ids(db, [line.product_id for line in self.lines])
            }
        for line in self.lines:
            product = products.get(line.product_id)
            if product is None:
                line.active = False
                line.available = 0
                continue
            line.name = product.name
            line.unit_price = to_money(product.price)
            line.seller_id = product.seller_id
            line.available = int(product.stock_quantity)
            line.active = product.status == "active"

    def _issue_for(self, line: CartLine) -> Optional[StockIssue]:
        available = line.available if line.active else 0
        if available <= 0:
            return StockIssue(line.product_id, line.name, OUT_OF_STOCK, line.quantity, 0)
        if line.quantity > available:
            return StockIssue(line.product_id, line.name, INSUFFICIENT, line.quantity, available)
        return None

    def validate_stock(self) -> list[StockIssue]:
        """Re-read the catalog and report every line that cannot be fulfilled.

        Quantities are never adjusted here; the buyer has to fix the cart.
        """
        self.state = CheckoutState.VALIDATING
        self._refresh_products()
        self.issues = [issue for issue in map(self._issue_for, self.lines) if issue is not None]
        self.state = CheckoutState.BLOCKED if self.issues else CheckoutState.READY
        return self.issues

    @property
    def totals(self) -> Totals:
        return price_lines(self.lines, self.region)

    def set_region(self, region: Optional[str]) -> Totals:
        self.region = region
        return self.totals

    def summary(self) -> CheckoutSummary:
        return CheckoutSummary(
            state=self.state,
            region=self.region,
            lines=list(self.lines),
            totals=self.totals,
            issues=list(self.issues),
        )

    # -----------------------------
    # Stock gates
    # -----------------------------

    def _blocked_error(self, issues: list[StockIssue]) -> CheckoutError:
        detail = {"issues": [issue.to_dict() for issue in issues]}
        out = [issue.name for issue in issues if issue.kind == OUT_OF_STOCK]
        if out:
            return OutOfStock(
                f"The following items are out of stock: {', '.join(out)}. "
                "Please remove them from your cart.",
                **detail,
            )
        return InsufficientStock(
            "Stock limitation: "
            + "; ".join(issue.message for issue in issues)
            + ". Please adjust quantities in your cart.",
            **detail,
        )

    def _ensure_ready(self) -> None:
        if not self.lines:
            raise EmptyCart()
        issues = self.validate_stock()
        if issues:
            raise self._blocked_error(issues)

    def _reserve(self, reference: Optional[str]) -> list[ReservationResult]:
        batch = self.reservations.reserve_multiple(self.lines, self.buyer_id, checkout_reference=reference)
        if batch.success:
            return batch.results

        self.state = CheckoutState.BLOCKED
        failure = batch.failed[0]
        if failure.reason == CONFLICT:
            raise StockConflict(product_id=failure.product_id)

        for line in self.lines:
            if line.product_id == failure.product_id:
                line.available = failure.current_stock or 0
                issue = self._issue_for(line)
                self.issues = [issue] if issue else []
                break
        raise self._blocked_error(self.issues)

    def _snapshot(self, holds: list[ReservationResult]) -> list[dict[str, Any]]:
        by_product = {hold.product_id: hold for hold in holds}
        return [
            {
                "product_id": line.product_id,
                "product_name": line.name,
                "quantity": line.quantity,
                "unit_price": str(line.unit_price),
                "seller_id": line.seller_id,
                "reservation_id": by_product[line.product_id].reservation_id,
                "stock_held": True,
            }
            for line in self.lines
        ]

    # -----------------------------
    # Cash on delivery
    # -----------------------------

    def place_cod_order(self, details: Any) -> CheckoutOutcome:
        self._ensure_ready()
        totals = self.set_region(details.region)
        holds = self._reserve(None)

        self.state = CheckoutState.COMMITTING
        try:
            order = self.committer.commit(
                customer_id=self.buyer_id,
                lines=_commit_lines(self._snapshot(holds)),
                totals=totals,
                payment_method=PaymentMethod.CASH_ON_DELIVERY.value,
                payment_status=PaymentStatus.PENDING.value,
                order_status=OrderStatus.PENDING.value,
                customer_email=details.email,
                region=details.region,
            )
        except Exception:
            self.reservations.release_holds(holds)
            self.state = CheckoutState.FAILED
            raise

        self.state = CheckoutState.DONE
        return CheckoutOutcome.from_order(order)

    # -----------------------------
    # Online payment
    # -----------------------------

    def checkout(self, details: Any, payment_method: str = PaymentMethod.CARD.value) -> CheckoutOutcome:
        """Run the whole flow in one call, opening the payment UI through the gateway's popup."""
        if PaymentMethod(payment_method) is PaymentMethod.CASH_ON_DELIVERY:
            return self.place_cod_order(details)

        session = self.begin_payment(details, payment_method)
        config = session.config
        return self._settle(
            session.reference,
            lambda: self.gateway.initiate_payment(
                email=config.email,
                amount=config.amount,
                reference=config.reference,
                channels=config.channels,
                metadata=config.metadata,
            ),
        )

    def begin_payment(self, details: Any, payment_method: str = PaymentMethod.CARD.value) -> PaymentSession:
        method = PaymentMethod(payment_method)
        if method is PaymentMethod.CASH_ON_DELIVERY:
            raise InvalidRequest("Cash on delivery orders are placed without online payment.")

        self._ensure_ready()
        totals = self.set_region(details.region)
        reference = self.gateway.generate_reference()
        holds = self._reserve(reference)

        try:
            config = self.gateway.build_payment_config(
                email=details.email,
                amount=totals.total,
                reference=reference,
                channels=CHANNELS_BY_METHOD.get(method),
                metadata={
                    "customer_name": getattr(details, "full_name", None),
                    "phone": getattr(details, "phone", None),
                    "region": details.region,
                },
            )
            with self._session() as db:
                crud.create_payment_attempt(
                    db,
                    {
                        "reference": reference,
                        "customer_id": self.buyer_id,
                        "email": details.email,
                        "amount": totals.total,
                        "currency": config.currency,
                        "payment_method": method.value,
                        "region": details.region,
                        "status": AttemptStatus.INITIATED.value,
                        "totals": {k: str(v) for k, v in asdict(totals).items()},
                        "lines": self._snapshot(holds),
                        "holds": [hold.to_dict() for hold in holds],
                    },
                )
        except Exception:
            self.reservations.release_holds(holds)
            self.state = CheckoutState.FAILED
            raise

        self.state = CheckoutState.PAYING
        logger.info("payment %s started for buyer %s (%s)", reference, self.buyer_id, totals.total)
        return PaymentSession(
            reference=reference,
            config=config,
            totals=totals,
            expires_at=utcnow() + self.reservations.hold,
        )

    def complete_payment(self, reference: str, callback: ProviderCallback) -> CheckoutOutcome:
        """Finish an attempt started with ``begin_payment`` using the UI's callback.

        Completing the same reference again returns the order already
        committed for it.
        """
        return self._settle(reference, lambda: self.gateway.handle_callback(reference, callback))

    def _claim_attempt(self, reference: str) -> tuple[Optional[PaymentAttempt], Optional[CheckoutOutcome]]:
        with self._session() as db:
            attempt = crud.get_payment_attempt(db, reference)
            if attempt is None or attempt.customer_id != self.buyer_id:
                raise NotFound("Payment attempt not found.", reference=reference)

            if crud.transition_payment_attempt(
                db,
                reference,
                from_status=AttemptStatus.INITIATED.value,
                to_status=AttemptStatus.VERIFYING.value,
            ):
                return attempt, None

            db.refresh(attempt)
            if attempt.status == AttemptStatus.COMMITTED.value and attempt.order_id is not None:
                order = crud.get_order(db, attempt.order_id)
                if order is not None:
                    return None, CheckoutOutcome.from_order(order)

        raise InvalidRequest(
            "This payment attempt is already closed. Please start checkout again.",
            reference=reference,
            attempt_status=attempt.status,
        )

    def _close_attempt(self, attempt: PaymentAttempt, status: AttemptStatus, reason: Optional[str], **values: Any) -> None:
        with self._session() as db:
            crud.transition_payment_attempt(
                db,
                attempt.reference,
                from_status=AttemptStatus.VERIFYING.value,
                to_status=status.value,
                failure_reason=reason,
                **values,
            )
        released = self.reservations.release_holds(attempt.holds or [])
        self.state = CheckoutState.FAILED
        logger.info(
            "payment %s closed as %s (%s); %s unit(s) released",
            attempt.reference, status.value, reason, released,
        )

    def _settle(self, reference: str, obtain_response: Callable[[], ProviderResponse]) -> CheckoutOutcome:
        attempt, existing = self._claim_attempt(reference)
        if existing is not None:
            self.state = CheckoutState.DONE
            return existing

        self.state = CheckoutState.PAYING
        try:
            obtain_response()
        except PaymentCancelled:
            self._close_attempt(attempt, AttemptStatus.CANCELLED, "payment_cancelled")
            raise
        except PaymentDeclined:
            self._close_attempt(attempt, AttemptStatus.DECLINED, "payment_declined")
            raise
        except VerificationFailed as e:
            self._close_attempt(attempt, AttemptStatus.UNVERIFIED, e.details.get("reason"))
            raise
        except Exception:
            self._close_attempt(attempt, AttemptStatus.FAILED, "payment_error")
            raise

        self.state = CheckoutState.VERIFYING
        totals = _totals_from(attempt.totals)
        try:
            result = self.gateway.verify_payment(
                reference,
                totals.total,
                {"order_id": "pending", "customer_id": self.buyer_id},
            )
        except VerificationUnavailable:
            if self.verification_error_policy != POLICY_FLAG_FOR_REVIEW:
                self._close_attempt(attempt, AttemptStatus.UNVERIFIED, "verification_unavailable")
                raise
            logger.warning("verifier unavailable for %s; committing order for review", reference)
            return self._commit_attempt(
                attempt,
                payment_status=PaymentStatus.PENDING.value,
                order_status=OrderStatus.PENDING.value,
                requires_review=True,
            )
        except Exception:
            self._close_attempt(attempt, AttemptStatus.FAILED, "verification_error")
            raise

        if not result.verified:
            self._close_attempt(attempt, AttemptStatus.UNVERIFIED, result.reason)
            raise VerificationFailed(reference=reference, reason=result.reason)

        return self._commit_attempt(
            attempt,
            payment_status=PaymentStatus.PAID.value,
            order_status=OrderStatus.CONFIRMED.value,
        )

    def _commit_attempt(
        self,
        attempt: PaymentAttempt,
        *,
        payment_status: str,
        order_status: str,
        requires_review: bool = False,
    ) -> CheckoutOutcome:
        self.state = CheckoutState.COMMITTING
        try:
            order = self.committer.commit(
                customer_id=attempt.customer_id,
                lines=_commit_lines(attempt.lines),
                totals=_totals_from(attempt.totals),
                payment_method=attempt.payment_method,
                payment_status=payment_status,
                order_status=order_status,
                payment_reference=attempt.reference,
                customer_email=attempt.email,
                region=attempt.region,
                requires_review=requires_review,
                currency=attempt.currency,
            )
        except PartialCommit as e:
            self._close_attempt(attempt, AttemptStatus.FAILED, "partial_commit", order_id=e.details.get("order_id"))
            raise
        except Exception:
            logger.error("order commit failed for reference %s", attempt.reference, exc_info=True)
            self._close_attempt(attempt, AttemptStatus.FAILED, "commit_failed")
            raise

        try:
            with self._session() as db:
                crud.transition_payment_attempt(
                    db,
                    attempt.reference,
                    from_status=AttemptStatus.VERIFYING.value,
                    to_status=AttemptStatus.COMMITTED.value,
                    order_id=order.id,
                )
        except SQLAlchemyError:
            logger.error(
                "order %s committed but payment %s not marked committed",
                order.order_number, attempt.reference, exc_info=True,
            )
        self.state = CheckoutState.DONE
        return CheckoutOutcome.from_order(order)
