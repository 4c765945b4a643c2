from typing import Callable, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import schemas
from ..auth import get_current_admin, get_current_user
from ..config import LOW_STOCK_THRESHOLD
from ..dependencies import build_reservations, get_session_factory, http_error
from ..errors import CheckoutError, InsufficientStock, StockConflict
from ..reservations import CONFLICT

router = APIRouter(
    prefix="/stock",
    tags=["Stock"]
)


@router.get("/alerts/low", response_model=List[schemas.LowStockOut])
def low_stock_alerts(
    threshold: int = Query(LOW_STOCK_THRESHOLD, ge=1),
    current_admin: Dict = Depends(get_current_admin),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    return build_reservations(session_factory).get_low_stock_alerts(threshold)


@router.get("/{product_id:int}", response_model=schemas.StockCheckOut)
def check_stock(
    product_id: int,
    quantity: int = Query(1, gt=0),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    try:
        check = build_reservations(session_factory).check_stock(product_id, quantity)
    except CheckoutError as e:
        raise http_error(e)
    return schemas.StockCheckOut(
        product_id=check.product_id,
        available=check.available,
        current_stock=check.current_stock,
        requested=check.requested,
    )


@router.post("/reserve")
def reserve_stock(
    body: schemas.ReserveRequest,
    current_user: Dict = Depends(get_current_user),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    """Take stock for one product. A 409 carries the reason and the stock we saw."""
    try:
        result = build_reservations(session_factory).reserve_stock(
            body.product_id, body.quantity, current_user["id"], body.checkout_reference
        )
    except CheckoutError as e:
        raise http_error(e)

    if not result.success:
        error = StockConflict if result.reason == CONFLICT else InsufficientStock
        raise http_error(error(product_id=result.product_id, current_stock=result.current_stock))
    return result.to_dict()


@router.post("/release")
def release_stock(
    body: schemas.ReleaseRequest,
    current_admin: Dict = Depends(get_current_admin),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    try:
        build_reservations(session_factory).release_stock(body.product_id, body.quantity)
    except CheckoutError as e:
        raise http_error(e)
    return {"released": True, "product_id": body.product_id, "quantity": body.quantity}


@router.post("/reserve-multiple")
def reserve_multiple(
    body: schemas.ReserveMultipleRequest,
    current_user: Dict = Depends(get_current_user),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    try:
        batch = build_reservations(session_factory).reserve_multiple(
            body.items, current_user["id"], body.checkout_reference
        )
    except CheckoutError as e:
        raise http_error(e)

    if not batch.success:
        failure = batch.failed[0]
        error = StockConflict if failure.reason == CONFLICT else InsufficientStock
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error(failed=[r.to_dict() for r in batch.failed]).to_detail(),
        )
    return {"success": True, "results": [r.to_dict() for r in batch.results]}


@router.post("/cleanup")
def cleanup_expired(
    current_admin: Dict = Depends(get_current_admin),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    return {"expired": build_reservations(session_factory).cleanup_expired_reservations()}
