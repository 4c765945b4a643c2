from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import START_SWEEPER
from .database import SessionLocal, engine
from .models import Base
from .reconciliation import start_reservation_sweeper
from .routers import checkout_router, order_router, payment_router, stock_router

app = FastAPI(
    title="Checkout Service",
    description="Stock reservation and checkout consistency service",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Create database tables
Base.metadata.create_all(bind=engine)

# Include routers
app.include_router(stock_router.router)
app.include_router(checkout_router.router)
app.include_router(order_router.router)
app.include_router(payment_router.router)


@app.on_event("startup")
def _startup() -> None:
    # Return stock from abandoned checkouts and void half-written orders
    if START_SWEEPER:
        start_reservation_sweeper(SessionLocal)


@app.get("/")
def root():
    return {
        "service": "Checkout Service",
        "status": "running",
        "version": "1.0.0"
    }


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "service": "checkout-service"
    }
