"""
Tracking API Routes

Provides endpoints for:
- Public tracking by waybill, order id or phone (fans out to every enabled carrier)
- Merchant order-history tracking (single carrier)
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.api.deps import (
    get_current_merchant,
    get_order_store,
    get_tracking_service,
    http_error,
)
from app.core.config import settings
from app.core.exceptions import OrderNotFoundError, SwiftoraBaseError
from app.models.carrier import CarrierCode
from app.modules.shipping.carriers.base import TrackingQuery
from app.schemas.shipping import TrackingEventResponse, TrackingResponse
from app.services.order_store import OrderStore
from app.services.tracking_service import TrackingMatch, TrackingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tracking", tags=["tracking"])


def match_to_response(match: TrackingMatch) -> TrackingResponse:
    result = match.result
    return TrackingResponse(
        carrier=match.carrier,
        waybill=result.waybill,
        state=match.state,
        raw_status=result.raw_status,
        expected_delivery=result.expected_delivery,
        events=[
            TrackingEventResponse(
                timestamp=event.timestamp,
                state=event.state,
                raw_status=event.raw_status,
                description=event.description,
                location=event.location,
            )
            for event in match.events
        ],
        data=result.payload,
    )


@router.get("/track", response_model=TrackingResponse)
async def track_shipment(
    awb: Optional[str] = Query(None, max_length=64),
    order_id: Optional[str] = Query(None, alias="orderId", max_length=64),
    phone: Optional[str] = Query(None, max_length=20),
    tracking_service: TrackingService = Depends(get_tracking_service),
):
    """
    Track a shipment without knowing which carrier holds it.

    Every enabled carrier is asked; the highest-priority carrier with
    tracking data answers. data carries that carrier's response as-is.
    """
    try:
        query = TrackingQuery(waybill=awb, order_id=order_id, phone=phone)
        match = await tracking_service.track(query)
    except SwiftoraBaseError as e:
        raise http_error(e)

    return match_to_response(match)


@router.get("/orders/{order_number}", response_model=TrackingResponse)
async def track_order(
    order_number: str,
    merchant_id: int = Depends(get_current_merchant),
    store: OrderStore = Depends(get_order_store),
    tracking_service: TrackingService = Depends(get_tracking_service),
):
    """Track one of the merchant's own orders on the default tracking carrier."""
    try:
        order = await store.get_by_order_number(order_number, merchant_id=merchant_id)
        if order is None:
            raise OrderNotFoundError(
                f"Order {order_number} not found",
                details={"order_number": order_number},
            )

        query = TrackingQuery(waybill=order.waybill, order_id=order.order_number)
        match = await tracking_service.track_with_carrier(
            query, CarrierCode(settings.DEFAULT_TRACKING_CARRIER)
        )
    except SwiftoraBaseError as e:
        raise http_error(e)

    return match_to_response(match)
