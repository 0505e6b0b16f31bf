"""
Base Carrier Interface

Every courier integration implements this interface:
- lookup: one tracking call, raw carrier vocabulary in, nothing mapped
- quote: service options for a shipment
- book: create a waybill for a chosen service
- cancel: void a waybill (used to clean up a booking that lost the order)

Carriers never touch orders. Mapping raw statuses to OrderState lives in
app.services.status_mapper and is driven by each carrier's status_table.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from app.core.exceptions import CarrierNotConfiguredError, InvalidTrackingQueryError
from app.models.carrier import CarrierCode
from app.models.order import OrderState, PaymentMode
from app.services.status_mapper import StatusTable, map_status


# =============================================================================
# Carrier-Agnostic Data Classes
# =============================================================================

@dataclass
class TrackingQuery:
    """
    Identifier to track by. At least one field must be set.

    When several are given, waybill wins over order id, order id over phone.
    """
    waybill: Optional[str] = None
    order_id: Optional[str] = None
    phone: Optional[str] = None

    def __post_init__(self):
        self.waybill = (self.waybill or "").strip() or None
        self.order_id = (self.order_id or "").strip() or None
        self.phone = (self.phone or "").strip() or None
        if not (self.waybill or self.order_id or self.phone):
            raise InvalidTrackingQueryError(
                "Provide a waybill, order id or phone number to track"
            )

    @property
    def primary(self) -> Tuple[str, str]:
        """(kind, value) of the identifier carriers should search by."""
        if self.waybill:
            return "waybill", self.waybill
        if self.order_id:
            return "order_id", self.order_id
        return "phone", self.phone


@dataclass
class RawEvent:
    """A single scan as the carrier reported it."""
    timestamp: Optional[datetime]
    status: str
    description: str = ""
    location: Optional[str] = None
    status_code: Optional[str] = None


@dataclass
class ProviderResult:
    """One carrier's answer to a lookup, in that carrier's own vocabulary."""
    carrier: CarrierCode
    raw_status: str
    raw_events: List[RawEvent] = field(default_factory=list)
    waybill: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    expected_delivery: Optional[datetime] = None

    @property
    def has_tracking_data(self) -> bool:
        """A 200 with neither events nor a usable status is not a match."""
        if self.raw_events:
            return True
        status = (self.raw_status or "").strip().lower()
        return bool(status) and status != "unknown"

    @property
    def latest_event(self) -> Optional[RawEvent]:
        dated = [e for e in self.raw_events if e.timestamp is not None]
        if dated:
            return max(dated, key=lambda e: e.timestamp)
        return self.raw_events[-1] if self.raw_events else None

    @property
    def latest_description(self) -> str:
        event = self.latest_event
        return event.description if event else ""


@dataclass
class Shipment:
    """What carriers need to price and book one order."""
    order_number: str
    pickup_pincode: str
    delivery_pincode: str
    weight_kg: float
    declared_value: Decimal
    customer_name: str = ""
    customer_phone: str = ""
    shipping_address: str = ""
    shipping_city: str = ""
    shipping_state: str = ""
    pickup_name: Optional[str] = None
    pickup_address: Optional[str] = None
    product_name: str = ""
    payment_mode: PaymentMode = PaymentMode.PREPAID
    cod_amount: Decimal = Decimal("0")
    length_cm: Optional[float] = None
    breadth_cm: Optional[float] = None
    height_cm: Optional[float] = None

    @property
    def is_cod(self) -> bool:
        return self.payment_mode == PaymentMode.COD

    @property
    def weight_grams(self) -> int:
        return int(round(self.weight_kg * 1000))


@dataclass
class ServiceOption:
    """A priced service a carrier offers for a shipment."""
    carrier: CarrierCode
    service_id: str
    service_name: str
    freight: Decimal
    cod_charge: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    eta_days: Optional[int] = None

    def __post_init__(self):
        if not self.total:
            self.total = self.freight + self.cod_charge


@dataclass
class BookingResult:
    """Successful booking."""
    carrier: CarrierCode
    waybill: str
    service_id: str
    label_url: Optional[str] = None
    tracking_url: Optional[str] = None
    freight: Optional[Decimal] = None
    raw_response: Optional[Any] = None


# =============================================================================
# Base Carrier Interface
# =============================================================================

class BaseCarrier(ABC):
    """
    Abstract base class for all courier clients.

    Failures are reported by raising CarrierUnavailableError (network, timeout,
    5xx) or CarrierRejectedError (the carrier said no). lookup returns None
    when the carrier answered but does not know the identifier.
    """

    # Carrier vocabulary -> OrderState
    status_table: StatusTable = StatusTable()
    # Eligibility for rate shopping
    max_weight_kg: Optional[float] = None
    supports_cod: bool = True

    @property
    @abstractmethod
    def carrier_code(self) -> CarrierCode:
        """Return the carrier code enum value."""
        pass

    @property
    @abstractmethod
    def carrier_name(self) -> str:
        """Return the human-readable carrier name."""
        pass

    @abstractmethod
    async def lookup(self, query: TrackingQuery) -> Optional[ProviderResult]:
        """
        Track a shipment by waybill, order id or phone.

        Returns:
            ProviderResult in the carrier's vocabulary, or None if unknown
        """
        pass

    @abstractmethod
    async def quote(self, shipment: Shipment) -> List[ServiceOption]:
        """Return every service this carrier offers for the shipment."""
        pass

    @abstractmethod
    async def book(self, shipment: Shipment, service: ServiceOption) -> BookingResult:
        """
        Create a waybill.

        Raises:
            CarrierRejectedError: carrier refused (serviceability, bad address)
            CarrierUnavailableError: timeout or 5xx, safe to retry
        """
        pass

    @abstractmethod
    async def cancel(self, waybill: str) -> bool:
        """Void a waybill. Returns True if the carrier accepted the cancellation."""
        pass

    def is_eligible(self, shipment: Shipment) -> bool:
        """Whether this carrier should be asked to quote the shipment."""
        if self.max_weight_kg is not None and shipment.weight_kg > self.max_weight_kg:
            return False
        if shipment.is_cod and not self.supports_cod:
            return False
        return True

    def map_status(self, raw_status: str, description: str = "") -> OrderState:
        return map_status(self.carrier_code, raw_status, description)

    def parse_webhook(self, payload: Dict[str, Any]) -> ProviderResult:
        """
        Turn a pushed status update into a ProviderResult.

        Only carriers that push updates override this.
        """
        raise CarrierNotConfiguredError(
            f"{self.carrier_name} does not push status webhooks",
            details={"carrier": self.carrier_code.value},
        )

    def get_tracking_url(self, waybill: str) -> Optional[str]:
        return None

    async def close(self) -> None:
        """Release pooled connections."""
        return None


# =============================================================================
# Parsing helpers shared by courier clients
# =============================================================================

# Indian couriers report local time without an offset
COURIER_TZ = timezone(timedelta(hours=5, minutes=30))


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse a courier timestamp: ISO-8601 text or epoch (seconds or millis).

    Naive values are courier local time (IST). Returns None for anything
    unparseable rather than failing the lookup.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=COURIER_TZ)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if text.isdigit():
        return parse_datetime(int(text))
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=COURIER_TZ)
    except ValueError:
        pass
    for fmt in ("%d-%m-%Y %H:%M:%S", "%d-%m-%Y %H:%M", "%d/%m/%Y %H:%M:%S", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=COURIER_TZ)
        except ValueError:
            continue
    return None


def to_decimal(value: Any) -> Decimal:
    """Courier amounts arrive as numbers or numeric strings."""
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def sanitize_phone(phone: Optional[str]) -> str:
    """Ten-digit Indian mobile number; strips +91 / leading 0."""
    digits = "".join(ch for ch in (phone or "") if ch.isdigit())
    if len(digits) == 12 and digits.startswith("91"):
        return digits[2:]
    if len(digits) == 11 and digits.startswith("0"):
        return digits[1:]
    return digits[-10:]
