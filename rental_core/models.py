from sqlalchemy import (
    Boolean, Column, DateTime, Enum, ForeignKey, Index, Integer, JSON, String, Text,
)
from datetime import datetime, timezone
import enum

from rental_core.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; all stored datetimes are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class ResourceStatus(enum.Enum):
    AVAILABLE = "AVAILABLE"
    RENTED = "RENTED"
    MAINTENANCE = "MAINTENANCE"
    UNAVAILABLE = "UNAVAILABLE"


class OrderStatus(enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class OrderPaymentStatus(enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class DeliveryMethod(enum.Enum):
    PICKUP = "PICKUP"
    DELIVERY = "DELIVERY"


class PaymentStatus(enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDING = "REFUNDING"
    REFUNDED = "REFUNDED"


# Orders in these states hold the resource calendar
LIVE_ORDER_STATUSES = (OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.ACTIVE)


class Resource(Base):
    __tablename__ = "resources"

    id = Column(String, primary_key=True, index=True)
    owner_id = Column(String, index=True, nullable=False)
    price = Column(Integer, nullable=False)  # per day, minor units
    deposit_amount = Column(Integer, nullable=False, default=0)
    status = Column(Enum(ResourceStatus), default=ResourceStatus.AVAILABLE, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, index=True)
    resource_id = Column(String, ForeignKey("resources.id"), nullable=False)
    renter_id = Column(String, index=True, nullable=False)
    owner_id = Column(String, index=True, nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    total_price = Column(Integer, nullable=False)
    deposit = Column(Integer, nullable=False, default=0)
    delivery_method = Column(Enum(DeliveryMethod), default=DeliveryMethod.PICKUP, nullable=False)
    delivery_address = Column(String, nullable=True)
    delivery_fee = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)
    status = Column(Enum(OrderStatus), default=OrderStatus.PENDING, nullable=False)
    payment_status = Column(Enum(OrderPaymentStatus), default=OrderPaymentStatus.PENDING, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_orders_resource_window", "resource_id", "status", "start_date", "end_date"),
    )
    __mapper_args__ = {"version_id_col": version}


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, index=True)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    user_id = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)  # minor units
    method = Column(String, nullable=False)
    status = Column(Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    trade_no = Column(String, unique=True, nullable=True)
    payment_url = Column(String, nullable=True)
    qr_code = Column(String, nullable=True)
    refund_id = Column(String, nullable=True)
    refund_amount = Column(Integer, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class PaymentEvent(Base):
    """Append-only audit row. Never updated or deleted."""
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(String, ForeignKey("payments.id"), nullable=False)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payment_events_payment_time", "payment_id", "created_at"),
    )


class WebhookDeadLetter(Base):
    __tablename__ = "webhook_dead_letters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String, nullable=False)
    payment_id = Column(String, index=True, nullable=False)
    trade_no = Column(String, nullable=True)
    payload = Column(JSON, nullable=False)
    error = Column(Text, nullable=False)
    attempts = Column(Integer, nullable=False, default=1)
    resolved = Column(Boolean, nullable=False, default=False)
    # Given up after repeated replay failures or when the payment does not exist
    abandoned = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
