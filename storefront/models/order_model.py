from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from enum import Enum

from .khqr_model import Currency, SessionState

class PaymentMethod(str, Enum):
    CASH_ON_DELIVERY = "cod"
    BAKONG = "bakong"

class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    ORDER_FAILED = "order_failed"

class OrderItem(BaseModel):
    """A single cart line"""
    product_id: str = Field(..., description="Catalog product identifier")
    name: str = Field(..., description="Product name at time of purchase")
    quantity: int = Field(..., gt=0, description="Number of units")
    unit_price: float = Field(..., gt=0, description="Catalog price per unit in USD")

class CheckoutRequest(BaseModel):
    """Schema for checkout submissions"""
    checkout_id: Optional[str] = Field(
        None, max_length=25, description="Client checkout reference; resubmitting replaces a live QR session"
    )
    items: List[OrderItem] = Field(..., min_length=1, description="Cart contents")
    customer_name: str = Field(..., description="Name for delivery")
    customer_phone: str = Field(..., description="Contact phone number")
    delivery_address: str = Field(..., description="Delivery address")
    notes: Optional[str] = Field(None, description="Order notes")
    currency: Currency = Currency.USD
    payment_method: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY

class OrderResponse(BaseModel):
    """Schema for persisted orders"""
    order_id: str
    customer_name: str
    customer_phone: str
    delivery_address: str
    items: List[OrderItem]
    total: float
    currency: Currency
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

class BakongCheckoutResponse(BaseModel):
    """Live state of a Bakong checkout attempt"""
    checkout_id: str
    state: SessionState
    seconds_remaining: int
    time_remaining: str
    qr_code: str
    md5: str
    amount: float
    currency: Currency
    display_amount: str
    deep_link: str
    qr_image: Optional[str] = None
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    message: Optional[str] = None
