from typing import Callable, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..auth import get_current_admin, get_current_user
from ..database import get_db
from ..dependencies import build_committer, get_session_factory, http_error
from ..errors import CheckoutError, NotFound
from ..reconciliation import reconcile_partial_orders

router = APIRouter(
    prefix="/orders",
    tags=["Order Service"]
)


def _owned_order(db: Session, order_id: int, current_user: Dict):
    db_order = crud.get_order(db=db, order_id=order_id)
    if not db_order or (
        db_order.customer_id != str(current_user["id"]) and not current_user.get("is_admin", False)
    ):
        # same answer for "missing" and "someone else's"
        raise http_error(NotFound("Order not found.", order_id=order_id))
    return db_order


@router.get("/{order_id:int}", response_model=schemas.OrderOut)
def get_order(
    order_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _owned_order(db, order_id, current_user)


@router.get("/{order_id:int}/confirmation", response_model=schemas.OrderOut)
def get_order_confirmation(
    order_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _owned_order(db, order_id, current_user)


@router.post("/{order_id:int}/cancel", response_model=schemas.OrderOut)
def cancel_order(
    order_id: int,
    body: Optional[schemas.OrderCancelRequest] = None,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    """Cancel an order and return its stock. Cancelling again is a no-op."""
    _owned_order(db, order_id, current_user)
    try:
        return build_committer(session_factory).cancel_order(order_id, body.reason if body else None)
    except CheckoutError as e:
        raise http_error(e)


@router.patch("/{order_id:int}/status", response_model=schemas.OrderOut)
def update_order_status(
    order_id: int,
    body: schemas.OrderStatusUpdate,
    current_admin: Dict = Depends(get_current_admin),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    try:
        return build_committer(session_factory).advance_status(order_id, body.status.value)
    except CheckoutError as e:
        raise http_error(e)


@router.post("/reconcile")
def reconcile_orders(
    current_admin: Dict = Depends(get_current_admin),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    try:
        voided = reconcile_partial_orders(session_factory)
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to reconcile orders: {str(e)}",
        )
    return {"voided": voided}
