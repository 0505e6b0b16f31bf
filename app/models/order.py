"""
Order model

The order itself is created by the order-placement flow. The carrier layer
only writes two groups of columns, each under a conditional UPDATE:
- carrier / waybill / state=BOOKED, once, by the booking orchestrator
- state / last_raw_status / delivered_at, by the order reconciler
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, DateTime, Numeric, Float, Text, Index, Enum as SQLEnum
)

from app.core.database import Base
from app.models.carrier import CarrierCode


class OrderState(str, enum.Enum):
    """Canonical order lifecycle, independent of any carrier vocabulary."""
    CREATED = "CREATED"
    BOOKED = "BOOKED"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    RTO = "RTO"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({OrderState.DELIVERED, OrderState.RTO, OrderState.FAILED})


class PaymentMode(str, enum.Enum):
    PREPAID = "PREPAID"
    COD = "COD"


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_merchant_state", "merchant_id", "state"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(64), unique=True, index=True, nullable=False)
    merchant_id = Column(Integer, index=True, nullable=False)

    # Carrier assignment (write-once)
    carrier = Column(SQLEnum(CarrierCode), nullable=True)
    waybill = Column(String(64), unique=True, index=True, nullable=True)
    service_id = Column(String(64), nullable=True)
    service_name = Column(String(120), nullable=True)
    shipping_cost = Column(Numeric(12, 2), nullable=True)
    booked_at = Column(DateTime(timezone=True), nullable=True)

    # Lifecycle (owned by the reconciler after booking)
    state = Column(SQLEnum(OrderState), default=OrderState.CREATED, nullable=False, index=True)
    last_raw_status = Column(String(255), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    # Customer / delivery
    customer_name = Column(String(120), nullable=False)
    customer_phone = Column(String(20), nullable=False, index=True)
    shipping_address = Column(Text, nullable=False)
    shipping_city = Column(String(100), nullable=False)
    shipping_state = Column(String(100), nullable=False)
    shipping_pincode = Column(String(10), nullable=False)

    # Pickup
    pickup_pincode = Column(String(10), nullable=False)
    pickup_name = Column(String(120), nullable=True)
    pickup_address = Column(Text, nullable=True)

    # Package
    product_name = Column(String(255), nullable=False)
    weight_kg = Column(Float, nullable=False, default=0.5)
    length_cm = Column(Float, nullable=True)
    breadth_cm = Column(Float, nullable=True)
    height_cm = Column(Float, nullable=True)

    # Payment
    payment_mode = Column(SQLEnum(PaymentMode), default=PaymentMode.PREPAID, nullable=False)
    cod_amount = Column(Numeric(12, 2), default=0)
    declared_value = Column(Numeric(12, 2), nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self):
        return f"<Order(id={self.id}, number={self.order_number}, state={self.state}, waybill={self.waybill})>"
