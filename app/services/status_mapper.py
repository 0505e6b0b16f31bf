"""
Status Vocabulary Mapper

Turns a carrier's raw status (and optional free-text description) into an
OrderState. Pure and total: every input maps to some state, nothing raises.

Precedence per carrier table:
1. exact match of the normalised raw status against the table's codes
2. first phrase (in table order) found in the description, then in the raw
   status text
3. the table default (IN_TRANSIT), logged as a mapping gap

Phrase order matters: "rto" and "return" are checked before "delivered"
("RTO Delivered" is a return), "undelivered" before "delivered", and
"out for pickup" before "picked up".
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from app.models.carrier import CarrierCode
from app.models.order import OrderState

logger = logging.getLogger(__name__)


def normalise_code(raw: Optional[str]) -> str:
    """Upper-case, trimmed, separators collapsed to single spaces."""
    if not raw:
        return ""
    text = str(raw).strip().upper().replace("_", " ").replace("-", " ")
    return " ".join(text.split())


# Free-text phrases shared by every carrier. Order is significant.
COMMON_PHRASES: Tuple[Tuple[str, OrderState], ...] = (
    ("rto", OrderState.RTO),
    ("return to origin", OrderState.RTO),
    ("returned to origin", OrderState.RTO),
    ("returned to shipper", OrderState.RTO),
    ("return", OrderState.RTO),
    ("undelivered", OrderState.IN_TRANSIT),
    ("not delivered", OrderState.IN_TRANSIT),
    ("delivery attempted", OrderState.IN_TRANSIT),
    ("lost", OrderState.FAILED),
    ("damaged", OrderState.FAILED),
    ("destroyed", OrderState.FAILED),
    ("cancelled", OrderState.FAILED),
    ("canceled", OrderState.FAILED),
    ("out for delivery", OrderState.OUT_FOR_DELIVERY),
    ("out_for_delivery", OrderState.OUT_FOR_DELIVERY),
    ("ofd", OrderState.OUT_FOR_DELIVERY),
    ("delivered", OrderState.DELIVERED),
    ("in transit", OrderState.IN_TRANSIT),
    ("in_transit", OrderState.IN_TRANSIT),
    ("intransit", OrderState.IN_TRANSIT),
    ("dispatched", OrderState.IN_TRANSIT),
    ("shipped", OrderState.IN_TRANSIT),
    ("reached", OrderState.IN_TRANSIT),
    ("not picked", OrderState.BOOKED),
    ("pickup failed", OrderState.BOOKED),
    ("pickup not done", OrderState.BOOKED),
    ("out for pickup", OrderState.BOOKED),
    ("out for pick up", OrderState.BOOKED),
    ("ready for pickup", OrderState.BOOKED),
    ("pickup scheduled", OrderState.BOOKED),
    ("pickup pending", OrderState.BOOKED),
    ("picked up", OrderState.PICKED_UP),
    ("picked_up", OrderState.PICKED_UP),
    ("pickup done", OrderState.PICKED_UP),
    ("collected", OrderState.PICKED_UP),
    ("manifested", OrderState.BOOKED),
    ("booked", OrderState.BOOKED),
    ("created", OrderState.BOOKED),
)

# Codes most carriers share verbatim
COMMON_CODES: Dict[str, OrderState] = {
    "BOOKED": OrderState.BOOKED,
    "MANIFESTED": OrderState.BOOKED,
    "PICKED UP": OrderState.PICKED_UP,
    "IN TRANSIT": OrderState.IN_TRANSIT,
    "OUT FOR DELIVERY": OrderState.OUT_FOR_DELIVERY,
    "DELIVERED": OrderState.DELIVERED,
    "RTO": OrderState.RTO,
    "RTO DELIVERED": OrderState.RTO,
    "RETURNED": OrderState.RTO,
    "NDR": OrderState.IN_TRANSIT,
    "LOST": OrderState.FAILED,
    "CANCELLED": OrderState.FAILED,
    "CANCELED": OrderState.FAILED,
}


@dataclass
class StatusTable:
    """One carrier's vocabulary: structured codes plus free-text phrases."""
    codes: Dict[str, OrderState] = field(default_factory=dict)
    phrases: Sequence[Tuple[str, OrderState]] = COMMON_PHRASES
    default: OrderState = OrderState.IN_TRANSIT

    def __post_init__(self):
        merged = dict(COMMON_CODES)
        merged.update({normalise_code(k): v for k, v in self.codes.items()})
        self.codes = merged

    def lookup(self, raw_status: str, raw_description: str = "") -> Optional[OrderState]:
        """Mapped state, or None when nothing in the table matches."""
        code = normalise_code(raw_status)
        if code and code in self.codes:
            return self.codes[code]

        for text in (raw_description, raw_status):
            if not text:
                continue
            lowered = str(text).lower()
            for phrase, state in self.phrases:
                if phrase in lowered:
                    return state
        return None


_DEFAULT_TABLE = StatusTable()

# Populated by register_carrier
_STATUS_TABLES: Dict[CarrierCode, StatusTable] = {}


def register_status_table(carrier: CarrierCode, table: StatusTable) -> None:
    _STATUS_TABLES[carrier] = table


def get_status_table(carrier: CarrierCode) -> StatusTable:
    if not _STATUS_TABLES:
        # Registration happens on import of the carriers package
        import app.modules.shipping.carriers  # noqa: F401
    return _STATUS_TABLES.get(carrier, _DEFAULT_TABLE)


def map_status(
    carrier: CarrierCode,
    raw_status: Optional[str],
    raw_description: Optional[str] = "",
) -> OrderState:
    """
    Map a carrier status to OrderState.

    Args:
        carrier: Carrier that reported the status
        raw_status: Status code or short text as the carrier sent it
        raw_description: Free-text description (scan remark, instructions)

    Returns:
        OrderState, never raises
    """
    raw_status = raw_status if isinstance(raw_status, str) else ("" if raw_status is None else str(raw_status))
    raw_description = raw_description if isinstance(raw_description, str) else (
        "" if raw_description is None else str(raw_description)
    )
    try:
        table = get_status_table(carrier)
    except Exception as e:
        logger.error(f"Status table unavailable for {carrier}: {e}")
        table = _DEFAULT_TABLE

    state = table.lookup(raw_status, raw_description)
    if state is not None:
        return state

    carrier_name = carrier.value if isinstance(carrier, CarrierCode) else carrier
    logger.warning(
        f"MappingGap: {carrier_name} status {raw_status!r} "
        f"(description {raw_description!r}) defaulted to {table.default.value}"
    )
    return table.default


# =============================================================================
# Canonical timeline
# =============================================================================

@dataclass
class CanonicalEvent:
    """A raw scan with its mapped state."""
    timestamp: Optional[datetime]
    state: OrderState
    raw_status: str
    description: str = ""
    location: Optional[str] = None


def _sort_key(event: CanonicalEvent):
    ts = event.timestamp
    if ts is None:
        return (1, datetime.min.replace(tzinfo=timezone.utc))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return (0, ts)


def canonical_events(result) -> List[CanonicalEvent]:
    """
    Map every raw event of a ProviderResult, oldest first.

    Undated events keep their relative order and sort after dated ones.
    """
    events = []
    for raw in result.raw_events:
        status = raw.status_code or raw.status
        events.append(CanonicalEvent(
            timestamp=raw.timestamp,
            state=map_status(result.carrier, status, raw.description or raw.status),
            raw_status=raw.status,
            description=raw.description,
            location=raw.location,
        ))
    return sorted(events, key=_sort_key)
