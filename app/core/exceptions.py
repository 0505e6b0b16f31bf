"""
Swiftora Exception Hierarchy

Structured exception classes for the carrier layer. All exceptions include
code, message, and details so routes can return typed, displayable errors
without leaking stack traces.

Exception Hierarchy:
    SwiftoraBaseError
    └── ShippingError
        ├── InvalidTrackingQueryError
        ├── TrackingNotFoundError
        ├── OrderNotFoundError
        ├── CarrierNotConfiguredError
        ├── CarrierError
        │   ├── CarrierUnavailableError
        │   └── CarrierRejectedError
        └── BookingError
            ├── AlreadyBookedError
            ├── OrderNotBookableError
            ├── BookingRejectedError
            └── BookingTransientError
"""
import logging
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)


class SwiftoraBaseError(Exception):
    """
    Base exception for all Swiftora custom errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
        retryable: Whether the caller may safely repeat the request
    """

    default_code: str = "SWIFTORA_ERROR"
    default_severity: str = "P2"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# SHIPPING ERRORS
# =============================================================================

class ShippingError(SwiftoraBaseError):
    """Base exception for shipping-related errors."""
    default_code = "SHIPPING_ERROR"
    default_severity = "P1"


class InvalidTrackingQueryError(ShippingError):
    """No waybill, order id or phone number was supplied."""
    default_code = "INVALID_TRACKING_QUERY"
    default_severity = "P3"


class TrackingNotFoundError(ShippingError):
    """No carrier recognised the identifier."""
    default_code = "TRACKING_NOT_FOUND"
    default_severity = "P3"

    def __init__(
        self,
        message: str,
        carriers_attempted: Optional[List[str]] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details["carriers_attempted"] = list(carriers_attempted or [])
        super().__init__(message, details=details, **kwargs)

    @property
    def carriers_attempted(self) -> List[str]:
        return self.details["carriers_attempted"]


class OrderNotFoundError(ShippingError):
    """Order does not exist or is not visible to the caller."""
    default_code = "ORDER_NOT_FOUND"
    default_severity = "P3"


class CarrierNotConfiguredError(ShippingError):
    """Carrier is unknown, disabled, or has no implementation registered."""
    default_code = "CARRIER_NOT_CONFIGURED"


# =============================================================================
# CARRIER CLIENT ERRORS (raised by carrier implementations)
# =============================================================================

class CarrierError(ShippingError):
    """Base exception raised by a single carrier client."""
    default_code = "CARRIER_ERROR"

    def __init__(
        self,
        message: str,
        carrier: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "carrier": carrier,
            "status_code": status_code,
        })
        super().__init__(message, details=details, **kwargs)


class CarrierUnavailableError(CarrierError):
    """Timeout, network failure or 5xx from one carrier."""
    default_code = "PROVIDER_UNAVAILABLE"
    default_severity = "P2"
    retryable = True


class CarrierRejectedError(CarrierError):
    """Carrier refused the request (serviceability, invalid address, 4xx)."""
    default_code = "CARRIER_REJECTED"
    default_severity = "P3"


# =============================================================================
# BOOKING ERRORS (surfaced verbatim to the booking caller)
# =============================================================================

class BookingError(ShippingError):
    """Base exception for booking outcomes other than success."""
    default_code = "BOOKING_ERROR"


class AlreadyBookedError(BookingError):
    """Order already carries a waybill; no carrier was contacted."""
    default_code = "ALREADY_BOOKED"
    default_severity = "P3"

    def __init__(
        self,
        message: str,
        order_id: Optional[int] = None,
        waybill: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "order_id": order_id,
            "waybill": waybill,
        })
        super().__init__(message, details=details, **kwargs)


class BookingRejectedError(BookingError):
    """Carrier rejected the booking; show the reason to the merchant."""
    default_code = "CARRIER_REJECTED"
    default_severity = "P3"


class BookingTransientError(BookingError):
    """Timeout or 5xx while booking; order state was not touched."""
    default_code = "TRANSIENT_ERROR"
    default_severity = "P2"
    retryable = True


class OrderNotBookableError(BookingError):
    """Order reached a terminal state without a waybill; it can no longer be booked."""
    default_code = "ORDER_NOT_BOOKABLE"
    default_severity = "P3"

    def __init__(
        self,
        message: str,
        order_id: Optional[int] = None,
        state: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "order_id": order_id,
            "state": state,
        })
        super().__init__(message, details=details, **kwargs)
