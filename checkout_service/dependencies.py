"""FastAPI dependencies shared by the routers (overridden in tests)."""

from typing import Callable

from fastapi import HTTPException
from sqlalchemy.orm import Session

from .database import SessionLocal
from .errors import CheckoutError
from .order_commit import OrderCommitStep
from .payments import PaymentGatewayAdapter
from .paystack import PaystackClient
from .reservations import StockReservationManager


def get_session_factory() -> Callable[[], Session]:
    return SessionLocal


def get_gateway() -> PaymentGatewayAdapter:
    return PaymentGatewayAdapter()


def get_paystack_client() -> PaystackClient:
    return PaystackClient()


def build_reservations(session_factory: Callable[[], Session]) -> StockReservationManager:
    return StockReservationManager(session_factory)


def build_committer(session_factory: Callable[[], Session]) -> OrderCommitStep:
    return OrderCommitStep(session_factory, build_reservations(session_factory))


def http_error(e: CheckoutError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_detail())
