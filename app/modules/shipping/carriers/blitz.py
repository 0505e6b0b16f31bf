"""
Blitz Carrier Implementation

Quick-commerce courier. Auth and tracking live on one host, waybill
creation and cancellation on another. Blitz publishes no rate API, so it
never contributes options to rate shopping.
"""
import logging
from typing import Any, List, Optional

import httpx

from app.core.config import settings
from app.core.exceptions import CarrierRejectedError
from app.models.carrier import CarrierCode
from app.models.order import OrderState
from app.modules.shipping.carriers import register_carrier
from app.modules.shipping.carriers.base import (
    BaseCarrier,
    BookingResult,
    ProviderResult,
    RawEvent,
    ServiceOption,
    Shipment,
    TrackingQuery,
    parse_datetime,
)
from app.modules.shipping.carriers.http import CarrierHTTPClient, TokenCache, expect_object
from app.services.status_mapper import StatusTable

logger = logging.getLogger(__name__)

AUTH_PATH = "/v1/auth"
TRACK_PATH = "/v1/tracking"
WAYBILL_PATH = "/v1/waybill/"
CANCEL_PATH = "/v1/cancel"

# Blitz issues 24h tokens
TOKEN_TTL_SECONDS = 23 * 3600

BLITZ_STATUS_MAP = {
    "ORDER PLACED": OrderState.BOOKED,
    "READY TO SHIP": OrderState.BOOKED,
    "PICKUP PENDING": OrderState.BOOKED,
    "PICKED": OrderState.PICKED_UP,
    "PICKUP COMPLETED": OrderState.PICKED_UP,
    "IN TRANSIT": OrderState.IN_TRANSIT,
    "REACHED DESTINATION HUB": OrderState.IN_TRANSIT,
    "UNDELIVERED": OrderState.IN_TRANSIT,
    "OUT FOR DELIVERY": OrderState.OUT_FOR_DELIVERY,
    "DELIVERED": OrderState.DELIVERED,
    "RTO INITIATED": OrderState.RTO,
    "RTO DELIVERED": OrderState.RTO,
    "LOST": OrderState.FAILED,
    "CANCELLED": OrderState.FAILED,
}


@register_carrier(CarrierCode.BLITZ)
class BlitzCarrier(BaseCarrier):
    """Blitz shipment API client."""

    status_table = StatusTable(codes=BLITZ_STATUS_MAP)
    max_weight_kg = 10.0
    supports_cod = True

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._auth_http = CarrierHTTPClient(
            CarrierCode.BLITZ,
            settings.BLITZ_BASE_URL,
            transport=transport,
        )
        self._shipment_http = CarrierHTTPClient(
            CarrierCode.BLITZ,
            settings.BLITZ_SHIPMENT_URL,
            transport=transport,
        )
        self._token = TokenCache()

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.BLITZ

    @property
    def carrier_name(self) -> str:
        return "Blitz"

    async def close(self) -> None:
        await self._auth_http.close()
        await self._shipment_http.close()

    async def _ensure_token(self) -> str:
        if self._token.valid:
            return self._token.token

        data = await self._auth_http.request("POST", AUTH_PATH, json={
            "request_type": "authenticate",
            "payload": {"username": settings.BLITZ_USERNAME, "password": settings.BLITZ_PASSWORD},
        })
        if data.get("code") != 200 or not data.get("id_token"):
            raise CarrierRejectedError(
                f"Blitz auth failed: {data.get('message') or 'no id_token returned'}",
                carrier=CarrierCode.BLITZ.value,
            )
        logger.info("Blitz id token obtained")
        return self._token.store(data["id_token"], TOKEN_TTL_SECONDS)

    async def _request(self, http: CarrierHTTPClient, method: str, path: str, **kwargs) -> Any:
        token = await self._ensure_token()
        # Blitz expects the raw id token, no scheme
        try:
            return await http.request(method, path, headers={"Authorization": token}, **kwargs)
        except CarrierRejectedError as e:
            if e.details.get("status_code") == 401:
                self._token.clear()
            raise

    # ==================== Tracking ====================

    async def lookup(self, query: TrackingQuery) -> Optional[ProviderResult]:
        if query.waybill:
            payload = {"field": "shipment", "value": query.waybill}
        elif query.order_id:
            payload = {"field": "channel_order_id", "value": query.order_id}
        else:
            return None

        try:
            data = await self._request(self._auth_http, "POST", TRACK_PATH, json=payload)
        except CarrierRejectedError as e:
            if e.details.get("status_code") in (400, 404):
                return None
            raise

        if not isinstance(data, dict) or not data.get("isSuccess"):
            return None
        results = data.get("result")
        if not isinstance(results, list) or not results or not isinstance(results[0], dict):
            return None

        shipment_result = results[0]
        scans = [s for s in shipment_result.get("tracking") or [] if isinstance(s, dict)]
        events = [
            RawEvent(
                timestamp=parse_datetime(scan.get("timestamp")),
                status=scan.get("shipmentStatus") or "",
                description=scan.get("remarks") or scan.get("gsRemark") or "",
                location=scan.get("location"),
            )
            for scan in scans
        ]

        return ProviderResult(
            carrier=CarrierCode.BLITZ,
            # Newest scan first
            raw_status=scans[0].get("shipmentStatus", "") if scans else "",
            raw_events=events,
            waybill=shipment_result.get("awb") or query.waybill,
            payload=data,
        )

    # ==================== Rating ====================

    async def quote(self, shipment: Shipment) -> List[ServiceOption]:
        return []

    # ==================== Shipments ====================

    async def book(self, shipment: Shipment, service: ServiceOption) -> BookingResult:
        payload = {
            "channelId": settings.BLITZ_CHANNEL_ID,
            "returnShipmentFlag": "false",
            "Shipment": {
                "code": shipment.order_number,
                "orderCode": shipment.order_number,
                "weight": str(shipment.weight_grams),
                # Blitz takes millimetres
                "length": str(round((shipment.length_cm or 10) * 10)),
                "height": str(round((shipment.height_cm or 10) * 10)),
                "breadth": str(round((shipment.breadth_cm or 10) * 10)),
                "items": [{
                    "name": shipment.product_name,
                    "description": shipment.product_name,
                    "quantity": "1",
                    "item_value": str(shipment.declared_value),
                    "skuCode": "",
                }],
            },
            "deliveryAddressDetails": {
                "name": shipment.customer_name,
                "phone": shipment.customer_phone,
                "address1": shipment.shipping_address,
                "pincode": shipment.delivery_pincode,
                "city": shipment.shipping_city,
                "state": shipment.shipping_state,
                "country": "India",
            },
            "pickupAddressDetails": {
                "name": shipment.pickup_name or "",
                "address1": shipment.pickup_address or "",
                "pincode": shipment.pickup_pincode,
                "country": "India",
            },
            "paymentMode": shipment.payment_mode.value,
            "totalAmount": str(shipment.declared_value),
            "collectableAmount": str(shipment.cod_amount if shipment.is_cod else 0),
        }

        data = await self._request(self._shipment_http, "POST", WAYBILL_PATH, json=payload)
        data = expect_object(CarrierCode.BLITZ, data, "booking")

        waybill = data.get("waybill") or data.get("awb") or data.get("trackingId") or data.get("shipmentId")
        if waybill:
            if data.get("status") != "SUCCESS":
                # Order exists on Blitz even when a warning status comes back
                logger.warning(f"Blitz returned {data.get('status')} with waybill {waybill}: {data.get('message')}")
            logger.info(f"Blitz booked {shipment.order_number} -> {waybill}")
            return BookingResult(
                carrier=CarrierCode.BLITZ,
                waybill=waybill,
                service_id=service.service_id,
                label_url=data.get("shippingLabel"),
                freight=service.total,
                raw_response=data,
            )

        raise CarrierRejectedError(
            data.get("message") or "Failed to create shipment",
            carrier=CarrierCode.BLITZ.value,
        )

    async def cancel(self, waybill: str) -> bool:
        data = await self._request(
            self._shipment_http, "POST", CANCEL_PATH, json={"field": "waybill", "value": waybill}
        )
        ok = data.get("status") == "SUCCESS" or data.get("code") == 200
        if not ok:
            logger.warning(f"Blitz cancel {waybill} refused: {data.get('message')}")
        return ok
