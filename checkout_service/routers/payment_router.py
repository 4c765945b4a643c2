import json
from decimal import Decimal
from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..auth import require_verify_token
from ..database import get_db
from ..dependencies import build_committer, get_paystack_client, get_session_factory
from ..errors import CheckoutError
from ..logger import get_logger
from ..paystack import (
    PaystackClient,
    PaystackNotConfigured,
    PaystackUnavailable,
    major_units,
    verify_webhook_signature,
)
from ..pricing import to_money
from ..schemas import OrderStatus, PaymentStatus

logger = get_logger(__name__)

router = APIRouter(
    prefix="/payments",
    tags=["Payments"]
)


def _settle_flagged_orders(
    session_factory: Callable[[], Session],
    reference: str,
    *,
    paid: bool,
    amount: Optional[Decimal],
) -> list[int]:
    """Resolve orders committed while verification was unavailable."""
    committer = build_committer(session_factory)
    db = session_factory()
    try:
        orders = crud.get_orders_by_payment_reference(db, reference)
        settled = []
        for order in orders:
            if order.payment_status != PaymentStatus.PENDING.value:
                continue
            if not paid:
                crud.update_order_payment(db, order.id, payment_status=PaymentStatus.FAILED.value)
                try:
                    committer.cancel_order(order.id, "payment_failed")
                except CheckoutError as e:
                    logger.warning("order %s not cancelled after failed charge: %s", order.order_number, e)
                settled.append(order.id)
                continue
            if amount is not None and to_money(order.total) != amount:
                logger.warning(
                    "provider amount %s does not match order %s total %s; leaving for review",
                    amount, order.order_number, order.total,
                )
                continue
            crud.update_order_payment(
                db, order.id, payment_status=PaymentStatus.PAID.value, requires_review=False
            )
            crud.transition_order_status(
                db,
                order.id,
                from_status=OrderStatus.PENDING.value,
                to_status=OrderStatus.CONFIRMED.value,
            )
            settled.append(order.id)
        return settled
    finally:
        db.close()


def _record_webhook_event(
    session_factory: Callable[[], Session], event_type: str, reference: str, data: dict
) -> list[int]:
    paid = event_type == "charge.success"
    amount = major_units(data.get("amount"))
    db = session_factory()
    try:
        crud.create_payment_verification(
            db,
            {
                "payment_reference": reference,
                "verification_status": "webhook_success" if paid else "webhook_failed",
                "amount": amount,
                "provider_response": data,
            },
        )
    finally:
        db.close()
    return _settle_flagged_orders(session_factory, reference, paid=paid, amount=amount)


@router.post("/verify", response_model=schemas.VerifyResponse)
def verify_payment(
    body: schemas.VerifyRequest,
    _: None = Depends(require_verify_token),
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    paystack: PaystackClient = Depends(get_paystack_client),
):
    """Check a reference with Paystack. Only this answer counts as proof of payment."""
    try:
        http_status, payload = paystack.verify_transaction(body.reference)
    except PaystackNotConfigured as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    except PaystackUnavailable as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Payment provider is unavailable: {e}",
        )

    data = payload.get("data") or {}
    if http_status >= 500:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider is unavailable",
        )
    if http_status != 200 or not payload.get("status"):
        crud.create_payment_verification(
            db,
            {
                "payment_reference": body.reference,
                "verification_status": "failed",
                "provider_response": payload,
            },
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "status": "failed",
                "verified": False,
                "reference": body.reference,
                "error": payload.get("message") or "Payment verification failed",
            },
        )

    amount = major_units(data.get("amount"))
    verified = data.get("status") == "success"
    verification_status = data.get("status") or "unknown"
    if verified and body.amount is not None and amount != to_money(body.amount):
        verified = False
        verification_status = "amount_mismatch"

    crud.create_payment_verification(
        db,
        {
            "payment_reference": body.reference,
            "verification_status": verification_status,
            "amount": amount,
            "provider_response": data,
        },
    )
    if verified:
        _settle_flagged_orders(session_factory, body.reference, paid=True, amount=amount)

    logger.info("verified %s: %s (%s)", body.reference, verified, verification_status)
    return schemas.VerifyResponse(
        status=verification_status,
        verified=verified,
        reference=body.reference,
        amount=amount,
        data={
            "channel": data.get("channel"),
            "currency": data.get("currency"),
            "paid_at": data.get("paid_at"),
            "gateway_response": data.get("gateway_response"),
        },
    )


@router.post("/paystack/webhook")
async def paystack_webhook(
    request: Request,
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    raw_body = await request.body()
    if not verify_webhook_signature(raw_body, request.headers.get("x-paystack-signature")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        event = json.loads(raw_body.decode("utf-8"))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")

    event_type = event.get("event")
    data = event.get("data") or {}
    reference = data.get("reference")
    if not reference or event_type not in ("charge.success", "charge.failed"):
        return {"received": True}

    settled = await run_in_threadpool(_record_webhook_event, session_factory, event_type, reference, data)
    logger.info("webhook %s for %s settled orders %s", event_type, reference, settled)
    return {"received": True, "settled": settled}
