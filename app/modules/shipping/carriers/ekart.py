"""
Ekart Carrier Implementation

- Client-id scoped username/password auth, bearer token with server-side expiry
- Tracking by tracking id or order number (response keyed by the id)
- Surface and Express estimates from the pricing API
- Pickup addresses must be registered under an alias before booking
"""
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Set

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

AUTH_PATH = "/integrations/v2/auth/token/{client_id}"
TRACK_PATH = "/data/v1/elite/track/{tracking_id}"
ESTIMATE_PATH = "/data/pricing/estimate"
ADDRESS_PATH = "/api/v2/address"
CREATE_PATH = "/api/v1/package/create"
CANCEL_PATH = "/api/v1/package/cancel"

EKART_STATUS_MAP = {
    "SHIPMENT CREATED": OrderState.BOOKED,
    "PICKUP SCHEDULED": OrderState.BOOKED,
    "PICKUP COMPLETE": OrderState.PICKED_UP,
    "SHIPMENT PICKED": OrderState.PICKED_UP,
    "RECEIVED AT HUB": OrderState.IN_TRANSIT,
    "SHIPMENT IN TRANSIT": OrderState.IN_TRANSIT,
    "UNDELIVERED ATTEMPTED": OrderState.IN_TRANSIT,
    "SHIPMENT OUT FOR DELIVERY": OrderState.OUT_FOR_DELIVERY,
    "SHIPMENT DELIVERED": OrderState.DELIVERED,
    "RETURNED TO SELLER": OrderState.RTO,
    "RTO COMPLETE": OrderState.RTO,
    "SHIPMENT LOST": OrderState.FAILED,
}

SERVICE_TYPES = {
    "surface": ("SURFACE", "Ekart Surface", 5),
    "express": ("EXPRESS", "Ekart Express", 3),
}


@register_carrier(CarrierCode.EKART)
class EkartCarrier(BaseCarrier):
    """Ekart Elite API client."""

    status_table = StatusTable(codes=EKART_STATUS_MAP)
    max_weight_kg = 25.0
    supports_cod = True

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._http = CarrierHTTPClient(
            CarrierCode.EKART,
            settings.EKART_BASE_URL,
            transport=transport,
        )
        self._token = TokenCache()
        self._registered_aliases: Set[str] = set()

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.EKART

    @property
    def carrier_name(self) -> str:
        return "Ekart"

    async def close(self) -> None:
        await self._http.close()

    def get_tracking_url(self, waybill: str) -> Optional[str]:
        return f"{settings.EKART_BASE_URL.rstrip('/')}/track/{waybill}"

    async def _ensure_token(self) -> str:
        if self._token.valid:
            return self._token.token

        data = await self._http.request(
            "POST",
            AUTH_PATH.format(client_id=settings.EKART_CLIENT_ID),
            json={"username": settings.EKART_USERNAME, "password": settings.EKART_PASSWORD},
        )
        token = data.get("access_token")
        if not token:
            raise CarrierRejectedError(
                "Ekart auth failed: no access_token in response",
                carrier=CarrierCode.EKART.value,
            )
        expires_in = int(data.get("expires_in") or 86400)
        logger.info(f"Ekart token obtained, expires in {expires_in}s")
        return self._token.store(token, expires_in)

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

        if not isinstance(data, dict) or not data:
            return None
        shipment_data = data.get(tracking_id) or next(iter(data.values()))
        if not isinstance(shipment_data, dict):
            return None

        events = [
            RawEvent(
                timestamp=parse_datetime(entry.get("ctime") or entry.get("timestamp") or entry.get("date")),
                status=entry.get("status") or entry.get("activity") or "",
                description=entry.get("desc") or entry.get("description") or "",
                location=entry.get("location") or entry.get("city"),
                status_code=entry.get("status_code"),
            )
            for entry in shipment_data.get("history") or []
            if isinstance(entry, dict)
        ]

        if shipment_data.get("delivered") is True:
            raw_status = "Delivered"
        elif events:
            raw_status = events[0].status
        else:
            raw_status = shipment_data.get("status") or ""

        return ProviderResult(
            carrier=CarrierCode.EKART,
            raw_status=raw_status,
            raw_events=events,
            waybill=shipment_data.get("shipment_id") or shipment_data.get("external_tracking_id") or query.waybill,
            payload=data,
            expected_delivery=parse_datetime(shipment_data.get("expected_delivery_date")),
        )

    # ==================== Rating ====================

    async def quote(self, shipment: Shipment) -> List[ServiceOption]:
        options = []
        for service_id, (service_type, name, eta_days) in SERVICE_TYPES.items():
            payload = {
                "pickupPincode": int(shipment.pickup_pincode),
                "dropPincode": int(shipment.delivery_pincode),
                "invoiceAmount": float(shipment.declared_value),
                "weight": max(1, shipment.weight_grams),
                "length": shipment.length_cm or 10,
                "height": shipment.height_cm or 10,
                "width": shipment.breadth_cm or 10,
                "serviceType": service_type,
                "codAmount": float(shipment.cod_amount) if shipment.is_cod else 0,
                "packages": [{}],
            }
            data = await self._request("POST", ESTIMATE_PATH, json=payload)

            freight = to_decimal(data.get("shippingCharge")) + to_decimal(data.get("fuelSurcharge"))
            cod_charge = to_decimal(data.get("codCharge"))
            total = to_decimal(data.get("total")) or freight + cod_charge + to_decimal(data.get("taxes"))
            if total <= 0:
                continue
            options.append(ServiceOption(
                carrier=CarrierCode.EKART,
                service_id=service_id,
                service_name=name,
                freight=freight or total - cod_charge,
                cod_charge=cod_charge,
                total=total,
                eta_days=eta_days,
            ))
        return options

    # ==================== Shipments ====================

    async def _ensure_address_registered(self, shipment: Shipment) -> str:
        alias = shipment.pickup_name or "Default Warehouse"
        if alias in self._registered_aliases:
            return alias

        try:
            await self._request("POST", ADDRESS_PATH, json={
                "alias": alias,
                "address_line1": shipment.pickup_address or "",
                "pincode": int(shipment.pickup_pincode),
                "country": "India",
            })
        except CarrierRejectedError as e:
            # Ekart rejects duplicate aliases; an existing alias is usable
            if "exist" not in e.message.lower():
                raise
        self._registered_aliases.add(alias)
        return alias

    async def book(self, shipment: Shipment, service: ServiceOption) -> BookingResult:
        alias = await self._ensure_address_registered(shipment)
        total_amount = float(shipment.declared_value)
        tax_value = round(total_amount * 0.18)
        customer_phone = sanitize_phone(shipment.customer_phone)

        payload = {
            "seller_name": shipment.pickup_name or "",
            "seller_address": shipment.pickup_address or "",
            "order_number": shipment.order_number,
            "invoice_number": f"INV-{shipment.order_number}",
            "invoice_date": date.today().isoformat(),
            "consignee_name": shipment.customer_name,
            "products_desc": shipment.product_name,
            "payment_mode": "COD" if shipment.is_cod else "Prepaid",
            "category_of_goods": "General",
            "total_amount": total_amount,
            "tax_value": tax_value,
            "taxable_amount": total_amount - tax_value,
            "cod_amount": float(shipment.cod_amount) if shipment.is_cod else 0,
            "quantity": 1,
            "weight": shipment.weight_grams,
            "length": round(shipment.length_cm or 10),
            "height": round(shipment.height_cm or 10),
            "width": round(shipment.breadth_cm or 10),
            "service_type": SERVICE_TYPES.get(service.service_id, SERVICE_TYPES["surface"])[0],
            "drop_location": {
                "location_type": "Home",
                "address": shipment.shipping_address,
                "city": shipment.shipping_city,
                "state": shipment.shipping_state,
                "country": "India",
                "name": shipment.customer_name,
                "phone": int(customer_phone) if customer_phone else 0,
                "pin": int(shipment.delivery_pincode),
            },
            "pickup_location": {"name": alias},
            "return_location": {"name": alias},
        }

        # Ekart creates packages with PUT
        data = await self._request("PUT", CREATE_PATH, json=payload)
        data = expect_object(CarrierCode.EKART, data, "booking")
        if data.get("status") is True and data.get("tracking_id"):
            waybill = data["tracking_id"]
            logger.info(f"Ekart booked {shipment.order_number} -> {waybill}")
            return BookingResult(
                carrier=CarrierCode.EKART,
                waybill=waybill,
                service_id=service.service_id,
                tracking_url=self.get_tracking_url(waybill),
                freight=service.total,
                raw_response=data,
            )

        raise CarrierRejectedError(
            data.get("remark") or "Failed to create shipment",
            carrier=CarrierCode.EKART.value,
        )

    async def cancel(self, waybill: str) -> bool:
        data = await self._request("DELETE", CANCEL_PATH, params={"tracking_id": waybill})
        if data.get("status") is not True:
            logger.warning(f"Ekart cancel {waybill} refused: {data.get('remark')}")
            return False
        return True
