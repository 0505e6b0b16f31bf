"""
Innofulfill Carrier Implementation

- Seller login returns an access token with a textual lifetime ("1d", "12h")
- Tracking by AWB or order id; a 200 with status "Unknown" and no state
  history is treated as not found
- One STANDARD surface rate from the ecomm rate card
- No cancellation endpoint
"""
import logging
import re
from datetime import datetime, timezone
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
    sanitize_phone,
    to_decimal,
)
from app.modules.shipping.carriers.http import CarrierHTTPClient, TokenCache, expect_object
from app.services.status_mapper import StatusTable

logger = logging.getLogger(__name__)

LOGIN_PATH = "/auth/login"
TRACK_PATH = "/fulfillment/public/seller/order/order-tracking/{tracking_id}"
RATE_PATH = "/fulfillment/rate-card/calculate-rate/ecomm"
PUSH_ORDER_PATH = "/fulfillment/public/seller/order/ecomm/push-order"

DEFAULT_TOKEN_TTL_SECONDS = 24 * 3600
_TTL_UNITS = {"d": 86400, "h": 3600, "m": 60}

INNOFULFILL_STATUS_MAP = {
    "NEW": OrderState.BOOKED,
    "READY TO SHIP": OrderState.BOOKED,
    "PICKUP SCHEDULED": OrderState.BOOKED,
    "PICKED": OrderState.PICKED_UP,
    "SHIPPED": OrderState.IN_TRANSIT,
    "IN TRANSIT": OrderState.IN_TRANSIT,
    "OUT FOR DELIVERY": OrderState.OUT_FOR_DELIVERY,
    "DELIVERED": OrderState.DELIVERED,
    "RTO": OrderState.RTO,
    "RTO DELIVERED": OrderState.RTO,
    "CANCELLED": OrderState.FAILED,
    "LOST": OrderState.FAILED,
}


def parse_token_ttl(expires_in: Optional[str]) -> int:
    """"1d" / "12h" / "30m" -> seconds; falls back to 24h."""
    match = re.match(r"^(\d+)([dhm])$", str(expires_in or "").strip())
    if not match:
        return DEFAULT_TOKEN_TTL_SECONDS
    return int(match.group(1)) * _TTL_UNITS[match.group(2)]


@register_carrier(CarrierCode.INNOFULFILL)
class InnofulfillCarrier(BaseCarrier):
    """Innofulfill seller API client."""

    status_table = StatusTable(codes=INNOFULFILL_STATUS_MAP)
    max_weight_kg = 20.0
    supports_cod = True

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._http = CarrierHTTPClient(
            CarrierCode.INNOFULFILL,
            settings.INNOFULFILL_BASE_URL,
            transport=transport,
        )
        self._token = TokenCache()

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.INNOFULFILL

    @property
    def carrier_name(self) -> str:
        return "Innofulfill"

    async def close(self) -> None:
        await self._http.close()

    async def _ensure_token(self) -> str:
        if self._token.valid:
            return self._token.token

        data = await self._http.request("POST", LOGIN_PATH, json={
            "email": settings.INNOFULFILL_EMAIL,
            "password": settings.INNOFULFILL_PASSWORD,
            "vendorType": "SELLER",
        })
        token_data = data.get("data") or {}
        token = token_data.get("accessToken")
        if not token:
            raise CarrierRejectedError(
                "Innofulfill login failed: no access token in response",
                carrier=CarrierCode.INNOFULFILL.value,
            )
        ttl = parse_token_ttl(token_data.get("expiresIn"))
        logger.info(f"Innofulfill token obtained, expires in {ttl}s")
        return self._token.store(token, ttl)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        token = await self._ensure_token()
        try:
            return await self._http.request(
                method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs
            )
        except CarrierRejectedError as e:
            if e.details.get("status_code") == 401:
                self._token.clear()
            raise

    # ==================== Tracking ====================

    async def lookup(self, query: TrackingQuery) -> Optional[ProviderResult]:
        tracking_id = query.waybill or query.order_id
        if not tracking_id:
            return None

        try:
            data = await self._request("GET", TRACK_PATH.format(tracking_id=tracking_id))
        except CarrierRejectedError as e:
            if e.details.get("status_code") in (400, 404):
                return None
            raise

        order_data = data.get("data") if isinstance(data, dict) else None
        if not isinstance(order_data, dict):
            return None

        events = [
            RawEvent(
                timestamp=parse_datetime(state.get("createdAt")),
                status=state.get("state") or "",
                description=state.get("remarks") or "",
                location=state.get("location"),
            )
            for state in order_data.get("orderStateInfo") or []
            if isinstance(state, dict)
        ]

        return ProviderResult(
            carrier=CarrierCode.INNOFULFILL,
            raw_status=order_data.get("orderStatus") or "",
            raw_events=events,
            waybill=order_data.get("awbNumber") or order_data.get("cAwbNumber") or query.waybill,
            payload=data,
        )

    # ==================== Rating ====================

    async def quote(self, shipment: Shipment) -> List[ServiceOption]:
        payload = {
            "deliveryPromise": "STANDARD",
            "fromPincode": int(shipment.pickup_pincode),
            "toPincode": int(shipment.delivery_pincode),
            "weight": shipment.weight_grams,
        }
        if shipment.length_cm:
            payload["length"] = shipment.length_cm
        if shipment.breadth_cm:
            payload["width"] = shipment.breadth_cm
        if shipment.height_cm:
            payload["height"] = shipment.height_cm

        data = await self._request("POST", RATE_PATH, json=payload)
        rate = data.get("data") or {}
        if rate.get("shippingCharge") is None:
            return []

        freight = to_decimal(rate.get("shippingCharge")) + to_decimal(rate.get("fuelCharges"))
        return [ServiceOption(
            carrier=CarrierCode.INNOFULFILL,
            service_id="standard",
            service_name="Innofulfill Standard",
            freight=freight,
        )]

    # ==================== Shipments ====================

    async def book(self, shipment: Shipment, service: ServiceOption) -> BookingResult:
        customer_phone = sanitize_phone(shipment.customer_phone)
        amount = float(shipment.declared_value)
        address = {
            "name": shipment.customer_name or "Customer",
            "phone": customer_phone,
            "address1": shipment.shipping_address,
            "city": shipment.shipping_city,
            "state": shipment.shipping_state,
            "country": "India",
            "zip": shipment.delivery_pincode,
        }
        pickup = {
            "name": shipment.pickup_name or "Swiftora Warehouse",
            "address1": shipment.pickup_address or "",
            "country": "India",
            "zip": shipment.pickup_pincode,
        }
        payload = {
            "orderId": shipment.order_number,
            "currency": "INR",
            "amount": amount,
            "weight": shipment.weight_grams,
            # COD orders must be PENDING, prepaid must be PAID
            "paymentType": "COD" if shipment.is_cod else "ONLINE",
            "paymentStatus": "PENDING" if shipment.is_cod else "PAID",
            "length": shipment.length_cm or 10,
            "width": shipment.breadth_cm or 10,
            "height": shipment.height_cm or 10,
            "orderSubtype": "FORWARD",
            "deliveryPromise": "SURFACE",
            "orderCreatedAt": datetime.now(timezone.utc).isoformat(),
            "subTotal": amount,
            "readyToPick": True,
            "lineItems": [{
                "name": shipment.product_name or "Product",
                "weight": shipment.weight_grams,
                "unitPrice": amount,
                "price": amount,
                "quantity": 1,
                "sku": shipment.order_number,
            }],
            "shippingAddress": address,
            "billingAddress": address,
            "pickupAddress": pickup,
            "returnAddress": pickup,
        }

        data = await self._request("POST", PUSH_ORDER_PATH, json=payload)
        data = expect_object(CarrierCode.INNOFULFILL, data, "booking")

        created = data.get("data") or {}
        if isinstance(created, list):
            created = created[0] if created else {}
        if not isinstance(created, dict):
            created = {}
        waybill = (
            created.get("awbNumber")
            or created.get("cAwbNumber")
            or created.get("trackingId")
            or created.get("labelBarcodeNumber")
        )
        if waybill:
            logger.info(f"Innofulfill booked {shipment.order_number} -> {waybill}")
            return BookingResult(
                carrier=CarrierCode.INNOFULFILL,
                waybill=waybill,
                service_id=service.service_id,
                freight=service.total,
                raw_response=data,
            )

        errors = [e for e in data.get("errors") or [] if isinstance(e, dict)] or [{}]
        raise CarrierRejectedError(
            data.get("message") or errors[0].get("errorMessage") or "Order creation failed",
            carrier=CarrierCode.INNOFULFILL.value,
        )

    async def cancel(self, waybill: str) -> bool:
        logger.warning(f"Innofulfill has no cancellation API; waybill {waybill} left active")
        return False
