import os
import sys
from decimal import Decimal
from pathlib import Path

# Must be set before checkout_service.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("START_SWEEPER", "false")
os.environ.setdefault("EVENTS_ENABLED", "false")

# Ensure project root is on sys.path to allow `import checkout_service`
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from checkout_service import crud
from checkout_service.auth import get_current_user
from checkout_service.database import get_db, make_engine
from checkout_service.dependencies import get_session_factory
from checkout_service.models import Base, Order, Product, StockReservation
from checkout_service.reservations import StockReservationManager


@pytest.fixture
def engine(tmp_path):
    """A file-backed SQLite database per test, shared by every thread in the test."""
    eng = make_engine(f"sqlite:///{tmp_path / 'checkout.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


@pytest.fixture
def make_product(session_factory):
    def _make(name="Kente Scarf", price="100.00", stock=10, seller_id=1, status="active"):
        db = session_factory()
        try:
            product = Product(
                name=name,
                price=Decimal(price),
                stock_quantity=stock,
                seller_id=seller_id,
                status=status,
            )
            db.add(product)
            db.commit()
            db.refresh(product)
            return product
        finally:
            db.close()

    return _make


@pytest.fixture
def stock_of(session_factory):
    def _stock(product_id):
        db = session_factory()
        try:
            return crud.get_stock_quantity(db, product_id)
        finally:
            db.close()

    return _stock


@pytest.fixture
def set_stock(session_factory):
    def _set(product_id, quantity):
        db = session_factory()
        try:
            db.query(Product).filter(Product.id == product_id).update({"stock_quantity": quantity})
            db.commit()
        finally:
            db.close()

    return _set


@pytest.fixture
def reservations_of(session_factory):
    def _list(product_id=None):
        db = session_factory()
        try:
            query = db.query(StockReservation)
            if product_id is not None:
                query = query.filter(StockReservation.product_id == product_id)
            return query.order_by(StockReservation.id).all()
        finally:
            db.close()

    return _list


@pytest.fixture
def order_count(session_factory):
    def _count():
        db = session_factory()
        try:
            return db.query(Order).count()
        finally:
            db.close()

    return _count


@pytest.fixture
def manager(session_factory):
    return StockReservationManager(session_factory)


@pytest.fixture
def current_user():
    return {"id": "buyer-1", "username": "ama", "email": "ama@example.com", "is_admin": False}


@pytest.fixture
def client(session_factory, current_user):
    from checkout_service.main import app

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_current_user] = lambda: current_user
    yield TestClient(app)
    app.dependency_overrides.clear()
