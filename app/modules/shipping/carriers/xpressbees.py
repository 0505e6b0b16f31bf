"""
Xpressbees Carrier Implementation

- Email/password login, bearer token cached until shortly before expiry
- Tracking by AWB or order number (no phone search)
- Every courier service from the serviceability API is a ServiceOption;
  the service id is Xpressbees' courier_id
"""
import logging
from typing import Any, Dict, List, Optional

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

LOGIN_PATH = "/api/users/login"
TRACK_PATH = "/api/shipments2/track/{tracking_id}"
SERVICEABILITY_PATH = "/api/courier/serviceability"
CREATE_PATH = "/api/shipments2"
CANCEL_PATH = "/api/shipments2/cancel"

# Token validity is not returned by the login API
TOKEN_TTL_SECONDS = 6 * 3600

# Xpressbees scan status codes -> OrderState
XPRESSBEES_STATUS_MAP = {
    "DRC": OrderState.BOOKED,
    "OFP": OrderState.BOOKED,
    "PND": OrderState.BOOKED,
    "PUD": OrderState.PICKED_UP,
    "PKD": OrderState.PICKED_UP,
    "IT": OrderState.IN_TRANSIT,
    "RAD": OrderState.IN_TRANSIT,
    "UD": OrderState.IN_TRANSIT,
    "EX": OrderState.IN_TRANSIT,
    "OFD": OrderState.OUT_FOR_DELIVERY,
    "DL": OrderState.DELIVERED,
    "RT": OrderState.RTO,
    "RTO": OrderState.RTO,
    "RTD": OrderState.RTO,
    "RT IT": OrderState.RTO,
    "RT DL": OrderState.RTO,
    "LT": OrderState.FAILED,
    "DG": OrderState.FAILED,
    "CAN": OrderState.FAILED,
}


@register_carrier(CarrierCode.XPRESSBEES)
class XpressbeesCarrier(BaseCarrier):
    """Xpressbees shipment API client."""

    status_table = StatusTable(codes=XPRESSBEES_STATUS_MAP)
    max_weight_kg = 30.0
    supports_cod = True

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._http = CarrierHTTPClient(
            CarrierCode.XPRESSBEES,
            settings.XPRESSBEES_BASE_URL,
            transport=transport,
        )
        self._token = TokenCache()

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.XPRESSBEES

    @property
    def carrier_name(self) -> str:
        return "Xpressbees"

    async def close(self) -> None:
        await self._http.close()

    async def _ensure_token(self) -> str:
        """Ensure we have a valid login token."""
        if self._token.valid:
            return self._token.token

        data = await self._http.request(
            "POST",
            LOGIN_PATH,
            json={"email": settings.XPRESSBEES_EMAIL, "password": settings.XPRESSBEES_PASSWORD},
        )
        if not data.get("status") or not data.get("data"):
            raise CarrierRejectedError(
                f"Xpressbees login failed: {data.get('message') or 'no token returned'}",
                carrier=CarrierCode.XPRESSBEES.value,
            )
        logger.info("Xpressbees login token obtained")
        return self._token.store(data["data"], TOKEN_TTL_SECONDS)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        token = await self._ensure_token()
        headers = {"Authorization": f"Bearer {token}"}
        try:
            return await self._http.request(method, path, headers=headers, **kwargs)
        except CarrierRejectedError as e:
            if e.details.get("status_code") == 401:
                self._token.clear()
            raise

    # ==================== Tracking ====================

    async def lookup(self, query: TrackingQuery) -> Optional[ProviderResult]:
        tracking_id = query.waybill or query.order_id
        if not tracking_id:
            # Phone search is not offered by Xpressbees
            return None

        try:
            data = await self._request("GET", TRACK_PATH.format(tracking_id=tracking_id))
        except CarrierRejectedError as e:
            if e.details.get("status_code") in (400, 404):
                return None
            raise

        if not isinstance(data, dict) or data.get("status") is not True:
            return None
        track_data = data.get("data")
        if not isinstance(track_data, dict):
            return None

        events = [
            RawEvent(
                timestamp=parse_datetime(scan.get("timestamp") or scan.get("date")),
                status=scan.get("status") or scan.get("activity") or "",
                description=scan.get("remarks") or scan.get("activity") or "",
                location=scan.get("location"),
                status_code=scan.get("status_code"),
            )
            for scan in track_data.get("scans") or []
            if isinstance(scan, dict)
        ]

        result = ProviderResult(
            carrier=CarrierCode.XPRESSBEES,
            raw_status="",
            raw_events=events,
            waybill=track_data.get("awb_number") or query.waybill,
            payload=data,
        )
        # current_status is not always populated; fall back to the newest scan
        current = track_data.get("current_status")
        if not current and result.latest_event:
            current = result.latest_event.status_code or result.latest_event.status
        result.raw_status = current or ""
        return result

    # ==================== Rating ====================

    async def quote(self, shipment: Shipment) -> List[ServiceOption]:
        payload = {
            "origin": shipment.pickup_pincode,
            "destination": shipment.delivery_pincode,
            "payment_type": "cod" if shipment.is_cod else "prepaid",
            "order_amount": str(shipment.declared_value),
            "weight": str(shipment.weight_grams),
            "length": str(shipment.length_cm or 10),
            "breadth": str(shipment.breadth_cm or 10),
            "height": str(shipment.height_cm or 10),
        }
        data = await self._request("POST", SERVICEABILITY_PATH, json=payload)

        services = data.get("data") if data.get("status") is True else None
        if not isinstance(services, list):
            return []

        options = []
        for svc in services:
            if not svc.get("id"):
                continue
            freight = to_decimal(svc.get("freight_charges"))
            cod_charge = to_decimal(svc.get("cod_charges"))
            options.append(ServiceOption(
                carrier=CarrierCode.XPRESSBEES,
                service_id=str(svc["id"]),
                service_name=svc.get("name") or f"Xpressbees {svc['id']}",
                freight=freight,
                cod_charge=cod_charge,
                total=to_decimal(svc.get("total_charges")) or freight + cod_charge,
            ))
        return options

    # ==================== Shipments ====================

    def _build_shipment_payload(self, shipment: Shipment, service: ServiceOption) -> Dict[str, Any]:
        return {
            "order_number": shipment.order_number,
            "unique_order_number": "yes",
            "shipping_charges": 0,
            "discount": 0,
            "cod_charges": 0,
            "payment_type": "cod" if shipment.is_cod else "prepaid",
            "order_amount": float(shipment.declared_value),
            "collectable_amount": str(shipment.cod_amount if shipment.is_cod else 0),
            "package_weight": shipment.weight_grams or 500,
            "package_length": shipment.length_cm or 10,
            "package_breadth": shipment.breadth_cm or 10,
            "package_height": shipment.height_cm or 10,
            "request_auto_pickup": "yes",
            "consignee": {
                "name": shipment.customer_name,
                "address": shipment.shipping_address,
                "city": shipment.shipping_city,
                "state": shipment.shipping_state,
                "pincode": shipment.delivery_pincode,
                "phone": sanitize_phone(shipment.customer_phone),
            },
            "pickup": {
                "warehouse_name": shipment.pickup_name or "Default Warehouse",
                "name": shipment.pickup_name or "Swiftora",
                "address": shipment.pickup_address or "",
                "pincode": shipment.pickup_pincode,
            },
            "order_items": [{
                "name": shipment.product_name or "Product",
                "qty": "1",
                "price": str(shipment.declared_value),
                "sku": shipment.order_number,
            }],
            "courier_id": service.service_id,
        }

    async def book(self, shipment: Shipment, service: ServiceOption) -> BookingResult:
        data = await self._request("POST", CREATE_PATH, json=self._build_shipment_payload(shipment, service))
        data = expect_object(CarrierCode.XPRESSBEES, data, "booking")

        created = data.get("data")
        if not isinstance(created, dict):
            created = {}
        if data.get("status") is True and created.get("awb_number"):
            waybill = created["awb_number"]
            logger.info(f"Xpressbees booked {shipment.order_number} -> {waybill}")
            return BookingResult(
                carrier=CarrierCode.XPRESSBEES,
                waybill=waybill,
                service_id=service.service_id,
                label_url=created.get("label_url"),
                tracking_url=created.get("tracking_url"),
                freight=service.total,
                raw_response=data,
            )

        raise CarrierRejectedError(
            data.get("message") or "Failed to create shipment",
            carrier=CarrierCode.XPRESSBEES.value,
        )

    async def cancel(self, waybill: str) -> bool:
        data = await self._request("POST", CANCEL_PATH, json={"awb": waybill})
        if data.get("status") is not True:
            logger.warning(f"Xpressbees cancel {waybill} refused: {data.get('message')}")
            return False
        return True
