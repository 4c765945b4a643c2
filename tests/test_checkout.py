from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from checkout_service import crud
from checkout_service.checkout import CheckoutOrchestrator, CheckoutState
from checkout_service.errors import (
    EmptyCart,
    InsufficientStock,
    InvalidRequest,
    NotFound,
    OutOfStock,
    PaymentCancelled,
    PaymentDeclined,
    VerificationFailed,
    VerificationUnavailable,
)
from checkout_service.order_commit import OrderCommitStep
from checkout_service.payments import ProviderCallback
from checkout_service.schemas import BuyerDetails
from mocks import StubGateway, StubPopup


@pytest.fixture
def buyer():
    return BuyerDetails(
        email="ama@example.com",
        full_name="Ama Mensah",
        phone="0240000000",
        region="Greater Accra",
    )


@pytest.fixture
def make_orchestrator(session_factory, manager):
    def _make(gateway=None, buyer_id="buyer-1", policy="block"):
        return CheckoutOrchestrator(
            session_factory,
            buyer_id,
            reservations=manager,
            gateway=gateway or StubGateway(StubPopup()),
            committer=OrderCommitStep(session_factory, manager, publish=lambda *a, **kw: None),
            verification_error_policy=policy,
        )

    return _make


def _attempt(session_factory, reference):
    db = session_factory()
    try:
        return crud.get_payment_attempt(db, reference)
    finally:
        db.close()


# --- Test initialize / validate_stock --- #


def test_initialize_empty_cart(make_orchestrator):
    with pytest.raises(EmptyCart) as exc_info:
        make_orchestrator().initialize([])
    assert exc_info.value.details["redirect"] == "/cart"


def test_initialize_prices_cart_from_catalog(make_orchestrator, make_product):
    product = make_product(price="100.00", stock=5)

    summary = make_orchestrator().initialize([{"product_id": product.id, "quantity": 1}], "Greater Accra")

    assert summary.state is CheckoutState.READY
    assert summary.issues == []
    assert summary.lines[0].name == "Kente Scarf"
    assert summary.totals.vat == Decimal("21.00")
    assert summary.totals.total == Decimal("141.00")


def test_validate_stock_names_every_affected_line(make_orchestrator, make_product):
    """Out-of-stock and short lines are both reported; quantities are left as requested."""
    gone = make_product(name="Batik Shirt", stock=0)
    short = make_product(name="Shea Butter", stock=2)
    fine = make_product(name="Wax Print", stock=9)
    orchestrator = make_orchestrator()

    summary = orchestrator.initialize([
        {"product_id": gone.id, "quantity": 1},
        {"product_id": short.id, "quantity": 3},
        {"product_id": fine.id, "quantity": 1},
    ])

    assert summary.state is CheckoutState.BLOCKED
    kinds = {issue.product_id: issue.kind for issue in summary.issues}
    assert kinds == {gone.id: "out_of_stock", short.id: "insufficient"}
    assert "Shea Butter: only 2 available (you requested 3)" in [i.message for i in summary.issues]
    assert [line.quantity for line in orchestrator.lines] == [1, 3, 1]


def test_unknown_product_is_out_of_stock(make_orchestrator):
    summary = make_orchestrator().initialize([{"product_id": 4040, "quantity": 1}])
    assert [issue.kind for issue in summary.issues] == ["out_of_stock"]


def test_set_region_recomputes_shipping_and_vat(make_orchestrator, make_product):
    product = make_product(price="100.00", stock=5)
    orchestrator = make_orchestrator()
    orchestrator.initialize([{"product_id": product.id, "quantity": 1}], "Greater Accra")

    totals = orchestrator.set_region("Upper East")

    assert totals.shipping_fee == Decimal("55.00")
    assert totals.vat == Decimal("27.13")
    assert totals.total == Decimal("182.13")


# --- Test one-shot checkout --- #


def test_card_checkout_commits_verified_order(make_orchestrator, make_product, buyer, stock_of, reservations_of, session_factory):
    product = make_product(price="100.00", stock=5)
    gateway = StubGateway(StubPopup())
    orchestrator = make_orchestrator(gateway)
    orchestrator.initialize([{"product_id": product.id, "quantity": 1}])

    outcome = orchestrator.checkout(buyer, "card")

    assert orchestrator.state is CheckoutState.DONE
    assert outcome.payment_status == "paid"
    assert outcome.order_status == "confirmed"
    assert outcome.total == Decimal("141.00")
    assert outcome.confirmation_path == f"/orders/{outcome.order_id}/confirmation"
    assert stock_of(product.id) == 4
    assert [r.status for r in reservations_of(product.id)] == ["confirmed"]
    assert gateway.popup.opened[0].channels == ["card"]
    assert gateway.verify_calls[0][1] == Decimal("141.00")
    assert _attempt(session_factory, outcome.payment_reference).status == "committed"


def test_unverified_payment_writes_no_order(make_orchestrator, make_product, buyer, stock_of, order_count):
    """A success callback without server verification never produces an order."""
    product = make_product(stock=5)
    orchestrator = make_orchestrator(StubGateway(StubPopup(), verified=False))
    orchestrator.initialize([{"product_id": product.id, "quantity": 2}])

    with pytest.raises(VerificationFailed):
        orchestrator.checkout(buyer, "card")

    assert order_count() == 0
    assert stock_of(product.id) == 5
    assert orchestrator.state is CheckoutState.FAILED


def test_cancelled_payment_releases_stock(make_orchestrator, make_product, buyer, stock_of, reservations_of):
    product = make_product(stock=5)
    orchestrator = make_orchestrator(StubGateway(StubPopup(status="cancelled")))
    orchestrator.initialize([{"product_id": product.id, "quantity": 2}])

    with pytest.raises(PaymentCancelled):
        orchestrator.checkout(buyer, "card")

    assert stock_of(product.id) == 5
    assert [r.status for r in reservations_of(product.id)] == ["released"]


def test_declined_payment_releases_stock(make_orchestrator, make_product, buyer, stock_of, order_count):
    product = make_product(stock=5)
    orchestrator = make_orchestrator(StubGateway(StubPopup(status="failed")))
    orchestrator.initialize([{"product_id": product.id, "quantity": 2}])

    with pytest.raises(PaymentDeclined):
        orchestrator.checkout(buyer, "mobile_money")

    assert stock_of(product.id) == 5
    assert order_count() == 0


def test_verifier_down_blocks_by_default(make_orchestrator, make_product, buyer, stock_of, order_count):
    product = make_product(stock=5)
    orchestrator = make_orchestrator(StubGateway(StubPopup(), unavailable=True))
    orchestrator.initialize([{"product_id": product.id, "quantity": 1}])

    with pytest.raises(VerificationUnavailable):
        orchestrator.checkout(buyer, "card")

    assert order_count() == 0
    assert stock_of(product.id) == 5


def test_verifier_down_flags_order_for_review(make_orchestrator, make_product, buyer, stock_of):
    product = make_product(stock=5)
    orchestrator = make_orchestrator(StubGateway(StubPopup(), unavailable=True), policy="flag_for_review")
    orchestrator.initialize([{"product_id": product.id, "quantity": 1}])

    outcome = orchestrator.checkout(buyer, "card")

    assert outcome.payment_status == "pending"
    assert outcome.requires_review is True
    assert stock_of(product.id) == 4


def test_cash_on_delivery(make_orchestrator, make_product, buyer, stock_of):
    product = make_product(price="100.00", stock=5)
    gateway = StubGateway(StubPopup())
    orchestrator = make_orchestrator(gateway)
    orchestrator.initialize([{"product_id": product.id, "quantity": 2}])

    outcome = orchestrator.checkout(buyer, "cod")

    assert outcome.payment_status == "pending"
    assert outcome.order_status == "pending"
    assert outcome.payment_reference is None
    assert stock_of(product.id) == 3
    assert gateway.popup.opened == []


def test_settlement_failure_keeps_stock_with_order(make_orchestrator, make_product, buyer, stock_of, order_count):
    """An order whose lines are written keeps its holds even when confirming them fails."""
    product = make_product(stock=5)
    orchestrator = make_orchestrator()
    orchestrator.initialize([{"product_id": product.id, "quantity": 2}])

    with patch(
        "checkout_service.crud.get_reservation",
        side_effect=OperationalError("SELECT", {}, Exception("connection lost")),
    ):
        outcome = orchestrator.checkout(buyer, "cod")

    assert orchestrator.state is CheckoutState.DONE
    assert outcome.requires_review is True
    assert order_count() == 1
    assert stock_of(product.id) == 3


def test_stock_rechecked_before_payment(make_orchestrator, make_product, buyer, set_stock, reservations_of):
    """Stock that disappears after the page loaded blocks checkout before any hold is taken."""
    product = make_product(name="Batik Shirt", stock=5)
    orchestrator = make_orchestrator()
    orchestrator.initialize([{"product_id": product.id, "quantity": 2}])
    set_stock(product.id, 0)

    with pytest.raises(OutOfStock) as exc_info:
        orchestrator.checkout(buyer, "card")

    assert "Batik Shirt" in exc_info.value.user_message
    assert orchestrator.state is CheckoutState.BLOCKED
    assert reservations_of(product.id) == []


def test_insufficient_stock_message(make_orchestrator, make_product, buyer, set_stock):
    product = make_product(name="Shea Butter", stock=5)
    orchestrator = make_orchestrator()
    orchestrator.initialize([{"product_id": product.id, "quantity": 3}])
    set_stock(product.id, 2)

    with pytest.raises(InsufficientStock) as exc_info:
        orchestrator.checkout(buyer, "card")

    assert "Shea Butter: only 2 available (you requested 3)" in exc_info.value.user_message


# --- Test two-phase payment --- #


def test_complete_payment_is_idempotent(make_orchestrator, make_product, buyer, order_count, stock_of):
    product = make_product(stock=5)
    orchestrator = make_orchestrator()
    orchestrator.initialize([{"product_id": product.id, "quantity": 1}])
    session = orchestrator.begin_payment(buyer, "card")
    assert orchestrator.state is CheckoutState.PAYING
    assert session.config.amount_minor == 14100

    callback = ProviderCallback(reference=session.reference, status="success", transaction="T-1")
    first = make_orchestrator().complete_payment(session.reference, callback)
    second = make_orchestrator().complete_payment(session.reference, callback)

    assert first.order_id == second.order_id
    assert order_count() == 1
    assert stock_of(product.id) == 4


def test_complete_payment_for_another_buyer(make_orchestrator, make_product, buyer):
    product = make_product(stock=5)
    orchestrator = make_orchestrator()
    orchestrator.initialize([{"product_id": product.id, "quantity": 1}])
    session = orchestrator.begin_payment(buyer, "card")

    with pytest.raises(NotFound):
        make_orchestrator(buyer_id="someone-else").complete_payment(
            session.reference, ProviderCallback(reference=session.reference, status="success")
        )


def test_cancelled_attempt_cannot_be_completed_later(make_orchestrator, make_product, buyer, stock_of, session_factory):
    product = make_product(stock=5)
    orchestrator = make_orchestrator()
    orchestrator.initialize([{"product_id": product.id, "quantity": 1}])
    session = orchestrator.begin_payment(buyer, "card")

    with pytest.raises(PaymentCancelled):
        make_orchestrator().complete_payment(
            session.reference, ProviderCallback(reference=session.reference, status="cancelled")
        )
    assert _attempt(session_factory, session.reference).status == "cancelled"
    assert stock_of(product.id) == 5

    with pytest.raises(InvalidRequest) as exc_info:
        make_orchestrator().complete_payment(
            session.reference, ProviderCallback(reference=session.reference, status="success")
        )
    assert exc_info.value.details["attempt_status"] == "cancelled"
    assert stock_of(product.id) == 5
