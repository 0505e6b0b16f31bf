"""
API dependencies

Service providers are plain dependencies so tests can swap them with
app.dependency_overrides.
"""
import logging
from typing import List, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_db
from app.core.exceptions import (
    AlreadyBookedError,
    BookingRejectedError,
    BookingTransientError,
    CarrierNotConfiguredError,
    InvalidTrackingQueryError,
    OrderNotBookableError,
    OrderNotFoundError,
    SwiftoraBaseError,
    TrackingNotFoundError,
)
from app.core.security import decode_merchant_token
from app.modules.shipping.carriers import CarrierFactory
from app.modules.shipping.carriers.base import BaseCarrier
from app.services.multi_carrier_service import CarrierTimeouts, MultiCarrierService
from app.services.order_reconciler import OrderReconciler
from app.services.order_store import OrderStore, SQLAlchemyOrderStore, sqlalchemy_store_scope
from app.services.tracking_service import TrackingService

logger = logging.getLogger(__name__)

security = HTTPBearer()

# Carrier clients hold token caches and connection pools; one set per process
_carriers: Optional[List[BaseCarrier]] = None


async def get_current_merchant(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> int:
    """Merchant id from a valid access token."""
    merchant_id = decode_merchant_token(credentials.credentials)
    if merchant_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )
    return merchant_id


def get_carriers() -> List[BaseCarrier]:
    """Enabled carriers, highest tracking priority first."""
    global _carriers
    if _carriers is None:
        _carriers = CarrierFactory.get_enabled_carriers()
        logger.info(f"Carriers enabled: {', '.join(c.carrier_code.value for c in _carriers)}")
    return _carriers


async def close_carriers() -> None:
    global _carriers
    if _carriers:
        for carrier in _carriers:
            await carrier.close()
    _carriers = None


async def get_order_store(db: AsyncSession = Depends(get_db)) -> OrderStore:
    return SQLAlchemyOrderStore(db)


def get_reconciler() -> OrderReconciler:
    # Own session per reconciliation, so it can outlive the request
    return OrderReconciler(sqlalchemy_store_scope)


def get_tracking_service(
    carriers: List[BaseCarrier] = Depends(get_carriers),
    reconciler: OrderReconciler = Depends(get_reconciler),
) -> TrackingService:
    return TrackingService(carriers, reconciler, timeout=settings.CARRIER_LOOKUP_TIMEOUT_SECONDS)


def get_multi_carrier_service(
    store: OrderStore = Depends(get_order_store),
    carriers: List[BaseCarrier] = Depends(get_carriers),
) -> MultiCarrierService:
    return MultiCarrierService(store, carriers, CarrierTimeouts.from_settings())


# ==================== Error translation ====================

_STATUS_BY_ERROR = (
    (InvalidTrackingQueryError, status.HTTP_400_BAD_REQUEST),
    (TrackingNotFoundError, status.HTTP_404_NOT_FOUND),
    (OrderNotFoundError, status.HTTP_404_NOT_FOUND),
    (CarrierNotConfiguredError, status.HTTP_400_BAD_REQUEST),
    (AlreadyBookedError, status.HTTP_409_CONFLICT),
    (OrderNotBookableError, status.HTTP_409_CONFLICT),
    (BookingRejectedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (BookingTransientError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def http_error(error: SwiftoraBaseError) -> HTTPException:
    """Typed error -> HTTPException with {code, message, details, retryable}."""
    status_code = next(
        (code for exc_type, code in _STATUS_BY_ERROR if isinstance(error, exc_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    record = error.to_dict()
    if status_code >= 500 and not error.retryable:
        logger.error(f"Unmapped error reached the API: {record}")
    elif error.severity in ("P0", "P1"):
        logger.warning(f"{status_code} {record}")
    else:
        logger.info(f"{status_code} {error.code}: {error.message}")
    return HTTPException(
        status_code=status_code,
        detail={key: record[key] for key in ("code", "message", "details", "retryable")},
    )
