from typing import Callable, Dict

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from .. import schemas
from ..auth import get_current_user
from ..checkout import CheckoutOrchestrator, CheckoutOutcome, CheckoutSummary
from ..dependencies import get_gateway, get_session_factory, http_error
from ..errors import CheckoutError, InvalidRequest
from ..payments import PaymentGatewayAdapter, ProviderCallback
from ..schemas import PaymentMethod

router = APIRouter(
    prefix="/checkout",
    tags=["Checkout"]
)


def _summary_out(summary: CheckoutSummary) -> schemas.CheckoutSummaryOut:
    return schemas.CheckoutSummaryOut(
        state=summary.state.value,
        region=summary.region,
        currency=summary.currency,
        lines=[
            schemas.CheckoutLineOut(
                product_id=line.product_id,
                name=line.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                line_total=line.line_total,
            )
            for line in summary.lines
        ],
        totals=schemas.TotalsOut(
            subtotal=summary.totals.subtotal,
            shipping_fee=summary.totals.shipping_fee,
            vat=summary.totals.vat,
            total=summary.totals.total,
        ),
        issues=[schemas.StockIssueOut(**issue.to_dict()) for issue in summary.issues],
    )


def _outcome_out(outcome: CheckoutOutcome) -> schemas.CheckoutOutcomeOut:
    return schemas.CheckoutOutcomeOut(
        order_id=outcome.order_id,
        order_number=outcome.order_number,
        payment_status=outcome.payment_status,
        order_status=outcome.order_status,
        total=outcome.total,
        payment_reference=outcome.payment_reference,
        requires_review=outcome.requires_review,
        confirmation_path=outcome.confirmation_path,
    )


@router.post("/summary", response_model=schemas.CheckoutSummaryOut)
def checkout_summary(
    body: schemas.CheckoutSummaryRequest,
    current_user: Dict = Depends(get_current_user),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    """Price the cart and report stock problems. A blocked cart still returns 200."""
    orchestrator = CheckoutOrchestrator(session_factory, current_user["id"])
    try:
        summary = orchestrator.initialize(body.items, body.region)
    except CheckoutError as e:
        raise http_error(e)
    return _summary_out(summary)


@router.post("/start", response_model=schemas.PaymentStartOut, status_code=status.HTTP_201_CREATED)
def start_payment(
    body: schemas.CheckoutRequest,
    current_user: Dict = Depends(get_current_user),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    gateway: PaymentGatewayAdapter = Depends(get_gateway),
):
    """Reserve the cart and return what the browser needs to open the payment popup."""
    orchestrator = CheckoutOrchestrator(session_factory, current_user["id"], gateway=gateway)
    try:
        if body.payment_method is PaymentMethod.CASH_ON_DELIVERY:
            raise InvalidRequest("Use /checkout/cod for cash on delivery orders.")
        orchestrator.initialize(body.items, body.buyer.region)
        session = orchestrator.begin_payment(body.buyer, body.payment_method.value)
    except CheckoutError as e:
        raise http_error(e)

    config = session.config
    return schemas.PaymentStartOut(
        reference=session.reference,
        public_key=config.public_key,
        email=config.email,
        amount=config.amount,
        amount_minor=config.amount_minor,
        currency=config.currency,
        channels=config.channels,
        metadata=config.metadata,
        expires_at=session.expires_at,
    )


@router.post("/{reference}/complete", response_model=schemas.CheckoutOutcomeOut)
def complete_payment(
    reference: str,
    body: schemas.ProviderCallbackIn,
    current_user: Dict = Depends(get_current_user),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    gateway: PaymentGatewayAdapter = Depends(get_gateway),
):
    orchestrator = CheckoutOrchestrator(session_factory, current_user["id"], gateway=gateway)
    callback = ProviderCallback(
        reference=body.reference,
        status=body.status,
        transaction=body.transaction,
        message=body.message,
    )
    try:
        outcome = orchestrator.complete_payment(reference, callback)
    except CheckoutError as e:
        raise http_error(e)
    return _outcome_out(outcome)


@router.post("/cod", response_model=schemas.CheckoutOutcomeOut, status_code=status.HTTP_201_CREATED)
def place_cod_order(
    body: schemas.CheckoutRequest,
    current_user: Dict = Depends(get_current_user),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    orchestrator = CheckoutOrchestrator(session_factory, current_user["id"])
    try:
        orchestrator.initialize(body.items, body.buyer.region)
        outcome = orchestrator.place_cod_order(body.buyer)
    except CheckoutError as e:
        raise http_error(e)
    return _outcome_out(outcome)
