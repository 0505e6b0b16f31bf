"""
Shipping API Routes

Provides endpoints for:
- Courier catalogue (enabled carriers in priority order)
- Rate shopping across eligible carriers
- Booking the merchant's chosen option
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, status

from app.api.deps import (
    get_carriers,
    get_current_merchant,
    get_multi_carrier_service,
    http_error,
)
from app.core.exceptions import SwiftoraBaseError
from app.models.carrier import CARRIER_DISPLAY_INFO
from app.models.order import OrderState
from app.modules.shipping.carriers.base import BaseCarrier, ServiceOption
from app.schemas.shipping import (
    BookingRequest,
    BookingResponse,
    CourierInfo,
    CourierListResponse,
    RateListResponse,
    ServiceOptionResponse,
)
from app.services.multi_carrier_service import MultiCarrierService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shipping", tags=["shipping"])


# ==================== Courier Endpoints ====================


@router.get("/couriers", response_model=CourierListResponse)
async def list_couriers(
    merchant_id: int = Depends(get_current_merchant),
    carriers: List[BaseCarrier] = Depends(get_carriers),
):
    """Enabled couriers, highest priority first."""
    couriers = []
    for priority, carrier in enumerate(carriers, start=1):
        info = CARRIER_DISPLAY_INFO.get(carrier.carrier_code, {})
        couriers.append(CourierInfo(
            code=carrier.carrier_code,
            display_name=info.get("display_name", carrier.carrier_name),
            description=info.get("description", ""),
            priority=priority,
            supports_cod=carrier.supports_cod,
            max_weight_kg=carrier.max_weight_kg,
        ))
    return CourierListResponse(couriers=couriers)


# ==================== Rate Endpoints ====================


@router.get("/orders/{order_id}/rates", response_model=RateListResponse)
async def get_order_rates(
    order_id: int,
    merchant_id: int = Depends(get_current_merchant),
    service: MultiCarrierService = Depends(get_multi_carrier_service),
):
    """
    Quote an order on every eligible carrier.

    Carriers that fail or time out are left out; an empty list means
    nobody could quote.
    """
    try:
        options = await service.quote_order(order_id, merchant_id=merchant_id)
    except SwiftoraBaseError as e:
        raise http_error(e)

    return RateListResponse(
        order_id=order_id,
        options=[
            ServiceOptionResponse(
                carrier=o.carrier,
                service_id=o.service_id,
                service_name=o.service_name,
                freight=o.freight,
                cod_charge=o.cod_charge,
                total=o.total,
                eta_days=o.eta_days,
            )
            for o in options
        ],
    )


# ==================== Booking Endpoints ====================


@router.post(
    "/orders/{order_id}/book",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
async def book_order(
    order_id: int,
    request: BookingRequest,
    merchant_id: int = Depends(get_current_merchant),
    service: MultiCarrierService = Depends(get_multi_carrier_service),
):
    """
    Book the chosen option.

    409 when the order already has a waybill, 422 when the carrier refuses
    (message is the carrier's reason), 503 when the carrier could not be
    reached and the request may be retried.
    """
    option = ServiceOption(
        carrier=request.carrier,
        service_id=request.service_id,
        service_name=request.service_name,
        freight=request.freight,
        cod_charge=request.cod_charge,
        total=request.total,
        eta_days=request.eta_days,
    )

    try:
        booking = await service.book(order_id, option, merchant_id=merchant_id)
    except SwiftoraBaseError as e:
        raise http_error(e)

    return BookingResponse(
        order_id=order_id,
        carrier=booking.carrier,
        waybill=booking.waybill,
        service_id=booking.service_id or option.service_id,
        state=OrderState.BOOKED,
        label_url=booking.label_url,
        tracking_url=booking.tracking_url,
    )
