from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ReservationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    RELEASED = "released"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    CARD = "card"
    MOBILE_MONEY = "mobile_money"
    BANK_TRANSFER = "bank_transfer"
    CASH_ON_DELIVERY = "cod"


class AttemptStatus(str, Enum):
    INITIATED = "initiated"
    VERIFYING = "verifying"
    CANCELLED = "cancelled"
    DECLINED = "declined"
    UNVERIFIED = "unverified"
    FAILED = "failed"
    COMMITTED = "committed"


# -----------------------------
# Stock
# -----------------------------


class StockCheckOut(BaseModel):
    product_id: int
    available: bool
    current_stock: int
    requested: int


class ReserveRequest(BaseModel):
    product_id: int = Field(..., gt=0)
    quantity: int = Field(..., gt=0)
    checkout_reference: Optional[str] = None


class ReleaseRequest(BaseModel):
    product_id: int = Field(..., gt=0)
    quantity: int = Field(..., gt=0)


class ReservationItem(BaseModel):
    product_id: int = Field(..., gt=0)
    quantity: int = Field(..., gt=0)


class ReserveMultipleRequest(BaseModel):
    items: List[ReservationItem] = Field(..., min_length=1)
    checkout_reference: Optional[str] = None


class LowStockOut(BaseModel):
    id: int
    name: str
    stock_quantity: int
    seller_id: int

    model_config = {"from_attributes": True}


# -----------------------------
# Checkout
# -----------------------------


class CartLineIn(BaseModel):
    product_id: int = Field(..., gt=0)
    quantity: int = Field(..., gt=0)


class BuyerDetails(BaseModel):
    email: str = Field(..., min_length=3, pattern=r".+@.+")
    full_name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    region: str = Field(..., min_length=1)
    city: Optional[str] = None
    address: Optional[str] = None


class CheckoutSummaryRequest(BaseModel):
    items: List[CartLineIn] = Field(default_factory=list)
    region: Optional[str] = None


class CheckoutRequest(BaseModel):
    items: List[CartLineIn] = Field(..., min_length=1)
    buyer: BuyerDetails
    payment_method: PaymentMethod = PaymentMethod.CARD


class ProviderCallbackIn(BaseModel):
    reference: str
    status: str = Field(..., description="'success', 'failed' or 'cancelled' as reported by the popup")
    transaction: Optional[str] = None
    message: Optional[str] = None


class StockIssueOut(BaseModel):
    product_id: int
    name: str
    kind: str
    requested: int
    available: int
    message: str


class CheckoutLineOut(BaseModel):
    product_id: int
    name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class TotalsOut(BaseModel):
    subtotal: Decimal
    shipping_fee: Decimal
    vat: Decimal
    total: Decimal


class CheckoutSummaryOut(BaseModel):
    state: str
    region: Optional[str] = None
    currency: str
    lines: List[CheckoutLineOut]
    totals: TotalsOut
    issues: List[StockIssueOut] = []


class PaymentStartOut(BaseModel):
    reference: str
    public_key: str
    email: str
    amount: Decimal
    amount_minor: int
    currency: str
    channels: List[str]
    metadata: Dict[str, Any] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None


class CheckoutOutcomeOut(BaseModel):
    order_id: int
    order_number: str
    payment_status: PaymentStatus
    order_status: OrderStatus
    total: Decimal
    payment_reference: Optional[str] = None
    requires_review: bool = False
    confirmation_path: str


# -----------------------------
# Orders
# -----------------------------


class OrderItemOut(BaseModel):
    id: int
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal

    model_config = {"from_attributes": True}


class OrderOut(BaseModel):
    id: int
    order_number: str
    customer_id: str
    seller_id: Optional[int] = None
    subtotal: Decimal
    shipping_fee: Decimal
    tax: Decimal
    total: Decimal
    payment_method: str
    payment_status: PaymentStatus
    order_status: OrderStatus
    payment_reference: Optional[str] = None
    requires_review: bool
    created_at: datetime
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    items: List[OrderItemOut] = []

    model_config = {"from_attributes": True}


class OrderCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


# -----------------------------
# Payments
# -----------------------------


class VerifyRequest(BaseModel):
    reference: str = Field(..., min_length=1)
    amount: Optional[Decimal] = Field(None, ge=0)
    order_id: Optional[str] = None


class VerifyResponse(BaseModel):
    status: str
    verified: bool
    reference: str
    amount: Optional[Decimal] = None
    data: Dict[str, Any] = Field(default_factory=dict)
