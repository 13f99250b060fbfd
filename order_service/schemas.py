from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .models import OrderStatus, PaymentMethod


def _upper(value):
    return value.strip().upper() if isinstance(value, str) else value


class OrderItemCreate(BaseModel):
    product_id: int = Field(..., gt=0, description="Product ID")
    quantity: int = Field(..., gt=0, description="Product quantity")


class CreditCardData(BaseModel):
    """Card data encrypted in the browser with the gateway's public key."""
    encrypted: str = Field(..., min_length=1)
    holder_name: str = Field(..., min_length=1)
    holder_cpf: str = Field(..., min_length=11)


class CreateOrderRequest(BaseModel):
    address_id: int = Field(..., gt=0)
    shipping_method_id: int = Field(..., gt=0)
    items: List[OrderItemCreate] = Field(..., min_length=1, description="List of order items")
    payment_method: PaymentMethod
    credit_card: Optional[CreditCardData] = None
    coupon_code: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=500)
    receiver_name: Optional[str] = None
    receiver_phone: Optional[str] = None

    @field_validator("payment_method", mode="before")
    @classmethod
    def _normalize_method(cls, value):
        return _upper(value)


class RetryPaymentRequest(BaseModel):
    payment_method: PaymentMethod
    credit_card: Optional[CreditCardData] = None

    @field_validator("payment_method", mode="before")
    @classmethod
    def _normalize_method(cls, value):
        return _upper(value)


class CancelOrderRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    tracking_code: Optional[str] = None


class OrderItemOut(BaseModel):
    id: int
    product_id: int
    product_name: str
    product_image: Optional[str] = None
    quantity: int
    unit_price: Decimal
    total_price: Decimal

    model_config = {"from_attributes": True}


class PaymentOut(BaseModel):
    id: int
    method: str
    status: str
    amount: Decimal
    attempt_number: int
    charge_id: Optional[str] = None
    pix_qr_code: Optional[str] = None
    pix_qr_code_image: Optional[str] = None
    pix_expires_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class OrderOut(BaseModel):
    id: int
    order_number: str
    status: str
    payment_status: str
    payment_method: str
    subtotal: Decimal
    shipping_cost: Decimal
    discount: Decimal
    total: Decimal
    shipping_method: str
    estimated_delivery: Optional[datetime] = None
    tracking_code: Optional[str] = None
    coupon_code: Optional[str] = None
    notes: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    items: List[OrderItemOut] = []
    payments: List[PaymentOut] = []

    model_config = {"from_attributes": True}


class SweepReportOut(BaseModel):
    found: int
    expired: int
    skipped: int
    failed: int


class WebhookReplayOut(BaseModel):
    event_id: int
    outcomes: List[Dict[str, Any]]
