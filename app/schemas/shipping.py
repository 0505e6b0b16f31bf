"""
Shipping Schemas

Pydantic models for tracking, rate shopping, booking and webhook APIs.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, field_validator

from app.models.carrier import CarrierCode
from app.models.order import OrderState


# ==================== Tracking Schemas ====================


class TrackingEventResponse(BaseModel):
    """A carrier scan mapped to the canonical lifecycle."""
    timestamp: Optional[datetime] = None
    state: OrderState
    raw_status: str
    description: str = ""
    location: Optional[str] = None


class TrackingResponse(BaseModel):
    """
    Tracking result.

    data is the winning carrier's own payload, unmodified; state and events
    are the canonical projection of it.
    """
    carrier: CarrierCode
    waybill: Optional[str] = None
    state: OrderState
    raw_status: str
    expected_delivery: Optional[datetime] = None
    events: List[TrackingEventResponse] = []
    data: Dict[str, Any]


# ==================== Courier Schemas ====================


class CourierInfo(BaseModel):
    """An enabled courier."""
    code: CarrierCode
    display_name: str
    description: str
    priority: int
    supports_cod: bool
    max_weight_kg: Optional[float] = None


class CourierListResponse(BaseModel):
    couriers: List[CourierInfo]


# ==================== Rate Schemas ====================


class ServiceOptionResponse(BaseModel):
    """A single priced service."""
    carrier: CarrierCode
    service_id: str
    service_name: str
    freight: Decimal
    cod_charge: Decimal = Decimal("0")
    total: Decimal
    eta_days: Optional[int] = None


class RateListResponse(BaseModel):
    """Unified options across eligible carriers, cheapest first."""
    order_id: int
    options: List[ServiceOptionResponse]


# ==================== Booking Schemas ====================


class BookingRequest(BaseModel):
    """The option the merchant chose from the rate list."""
    carrier: CarrierCode
    service_id: str = Field(..., min_length=1, max_length=64)
    service_name: str = Field("", max_length=120)
    freight: Decimal = Field(Decimal("0"), ge=0)
    cod_charge: Decimal = Field(Decimal("0"), ge=0)
    total: Decimal = Field(Decimal("0"), ge=0)
    eta_days: Optional[int] = Field(None, ge=0)

    @field_validator("carrier", mode="before")
    @classmethod
    def normalise_carrier(cls, v):
        return v.upper() if isinstance(v, str) else v


class BookingResponse(BaseModel):
    """Successful booking."""
    order_id: int
    carrier: CarrierCode
    waybill: str
    service_id: str
    state: OrderState = OrderState.BOOKED
    label_url: Optional[str] = None
    tracking_url: Optional[str] = None


# ==================== Webhook Schemas ====================


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the carrier."""
    success: bool = True
    waybill: str
    outcome: str


# ==================== Errors ====================


class ErrorDetail(BaseModel):
    """Body of every typed error: {"detail": ErrorDetail}."""
    code: str
    message: str
    details: Dict[str, Any] = {}
    retryable: bool = False
