from pydantic import BaseModel, Field, field_validator
from typing import Any, List, Optional
from datetime import datetime
from rental_core.models import DeliveryMethod, OrderPaymentStatus, OrderStatus


class OrderCreate(BaseModel):
    resource_id: str = Field(..., examples=["resource-1"])
    start_date: datetime
    end_date: datetime
    delivery_method: DeliveryMethod = DeliveryMethod.PICKUP
    delivery_address: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=1000)


class OrderRead(BaseModel):
    id: str
    resource_id: str
    renter_id: str
    owner_id: str
    start_date: datetime
    end_date: datetime
    total_price: int
    deposit: int
    delivery_method: DeliveryMethod
    delivery_address: Optional[str] = None
    delivery_fee: int
    notes: Optional[str] = None
    status: OrderStatus
    payment_status: OrderPaymentStatus
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class OrderPage(BaseModel):
    items: List[OrderRead]
    page: int
    limit: int
    total: int
    total_pages: int

    class Config:
        from_attributes = True


class OrderCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class OrderStatusUpdate(BaseModel):
    status: str = Field(..., examples=["ACTIVE"])
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper()
        return v


class OrderStats(BaseModel):
    total_orders: int
    pending_orders: int
    active_orders: int
    completed_orders: int
    cancelled_orders: int
    total_revenue: int


class PaymentCreate(BaseModel):
    order_id: str = Field(..., examples=["order-1"])
    amount: int = Field(..., gt=0, description="Minor units", examples=[30000])
    title: str = Field(..., min_length=1, max_length=256)
    description: Optional[str] = None
    payment_method: Optional[str] = Field(None, examples=["mock"])
    return_url: Optional[str] = None


class PaymentCreated(BaseModel):
    payment_id: str
    order_id: str
    amount: int
    provider: str
    payment_url: Optional[str] = None
    qr_code: Optional[str] = None
    message: Optional[str] = None

    class Config:
        from_attributes = True


class PaymentInfo(BaseModel):
    payment_id: str
    order_id: str
    user_id: str
    amount: int
    method: str
    status: str
    trade_no: Optional[str] = None
    payment_url: Optional[str] = None
    qr_code: Optional[str] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class PaymentStatusRead(BaseModel):
    payment_id: str
    status: str


class PaymentEventRead(BaseModel):
    event: str
    data: dict
    timestamp: str


class RefundCreate(BaseModel):
    amount: int = Field(..., gt=0, description="Minor units")
    reason: str = Field("Requested by customer", max_length=256)


class RefundRead(BaseModel):
    refund_id: str
    payment_id: str
    refund_amount: int
    message: Optional[str] = None

    class Config:
        from_attributes = True


class PaymentMethod(BaseModel):
    method: str
    name: str
    configured: bool


class ProviderStatus(BaseModel):
    default_provider: str
    providers: List[PaymentMethod]
