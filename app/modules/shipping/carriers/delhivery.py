"""
Delhivery Carrier Implementation

- Static API token auth ("Authorization: Token <key>")
- Tracking by waybill, order reference (ref_ids) or phone
- Surface and Express pricing from the invoice charges API
- Pushes scan updates to /api/webhooks/delhivery
"""
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from app.core.config import settings
from app.core.exceptions import CarrierError, CarrierRejectedError
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
    to_decimal,
)
from app.modules.shipping.carriers.http import CarrierHTTPClient, expect_object
from app.services.status_mapper import StatusTable

logger = logging.getLogger(__name__)

TRACK_PATH = "/api/v1/packages/json/"
CHARGES_PATH = "/api/kinko/v1/invoice/charges/.json"
CREATE_PATH = "/api/cmu/create.json"
EDIT_PATH = "/api/p/edit"

# Delhivery shipment status / scan type -> OrderState
DELHIVERY_STATUS_MAP = {
    "MANIFESTED": OrderState.BOOKED,
    "NOT PICKED": OrderState.BOOKED,
    "PENDING": OrderState.IN_TRANSIT,
    "OPEN": OrderState.BOOKED,
    "PICKUP": OrderState.PICKED_UP,
    "PICKEDUP": OrderState.PICKED_UP,
    "IN TRANSIT": OrderState.IN_TRANSIT,
    "INTRANSIT": OrderState.IN_TRANSIT,
    "UD": OrderState.IN_TRANSIT,
    # "Dispatched" is Delhivery's last-mile dispatch, not linehaul
    "DISPATCHED": OrderState.OUT_FOR_DELIVERY,
    "OUT FOR DELIVERY": OrderState.OUT_FOR_DELIVERY,
    "OUTFORDELIVERY": OrderState.OUT_FOR_DELIVERY,
    "DELIVERED": OrderState.DELIVERED,
    "DL": OrderState.DELIVERED,
    "RTO": OrderState.RTO,
    "RT": OrderState.RTO,
    "RTO DELIVERED": OrderState.RTO,
    "RETURNED": OrderState.RTO,
    "LOST": OrderState.FAILED,
    "CANCELLED": OrderState.FAILED,
}

SERVICE_MODES = {
    "surface": ("S", "Surface (Standard)", 5),
    "express": ("E", "Express (Fast)", 2),
}


@register_carrier(CarrierCode.DELHIVERY)
class DelhiveryCarrier(BaseCarrier):
    """Delhivery B2C API client."""

    status_table = StatusTable(codes=DELHIVERY_STATUS_MAP)
    max_weight_kg = 50.0
    supports_cod = True

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._http = CarrierHTTPClient(
            CarrierCode.DELHIVERY,
            settings.DELHIVERY_BASE_URL,
            transport=transport,
        )

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.DELHIVERY

    @property
    def carrier_name(self) -> str:
        return "Delhivery"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Token {settings.DELHIVERY_API_KEY}",
            "Accept": "application/json",
        }

    async def close(self) -> None:
        await self._http.close()

    def get_tracking_url(self, waybill: str) -> Optional[str]:
        return f"https://www.delhivery.com/track/package/{waybill}"

    # ==================== Tracking ====================

    async def lookup(self, query: TrackingQuery) -> Optional[ProviderResult]:
        kind, value = query.primary
        param = {"waybill": "waybill", "order_id": "ref_ids", "phone": "phone"}[kind]

        try:
            data = await self._http.request(
                "GET", TRACK_PATH, params={param: value}, headers=self._headers(),
            )
        except CarrierRejectedError as e:
            if e.details.get("status_code") == 404:
                return None
            raise

        shipments = data.get("ShipmentData") if isinstance(data, dict) else data
        if not isinstance(shipments, list) or not shipments or not isinstance(shipments[0], dict):
            return None
        return self._parse_shipment(shipments[0], raw=data)

    def _parse_shipment(self, shipment_data: Dict[str, Any], raw: Any) -> Optional[ProviderResult]:
        shipment = shipment_data.get("Shipment") or {}
        status = shipment.get("Status") or {}

        events = []
        for scan in shipment.get("Scans") or shipment_data.get("Scans") or []:
            if not isinstance(scan, dict):
                continue
            detail = scan.get("ScanDetail") or scan
            events.append(RawEvent(
                timestamp=parse_datetime(detail.get("ScanDateTime") or detail.get("StatusDateTime")),
                status=detail.get("Scan") or detail.get("Status") or "",
                description=detail.get("Instructions") or "",
                location=detail.get("ScannedLocation"),
                status_code=detail.get("StatusCode"),
            ))

        waybill = shipment.get("AWB")
        if not waybill and not events and not status:
            return None

        return ProviderResult(
            carrier=CarrierCode.DELHIVERY,
            raw_status=status.get("Status") or "",
            raw_events=events,
            waybill=waybill,
            payload=raw if isinstance(raw, dict) else {"ShipmentData": raw},
            expected_delivery=parse_datetime(shipment.get("ExpectedDeliveryDate")),
        )

    def parse_webhook(self, payload: Dict[str, Any]) -> ProviderResult:
        """
        Scan push: {"waybill": ..., "Status": {"Status", "StatusCode",
        "StatusDateTime", "StatusLocation", "Instructions"}}
        """
        shipment = payload.get("Shipment") or payload
        status = shipment.get("Status") or {}
        raw_status = status.get("Status") or shipment.get("status") or ""
        event = RawEvent(
            timestamp=parse_datetime(status.get("StatusDateTime")),
            status=raw_status,
            description=status.get("Instructions") or "",
            location=status.get("StatusLocation"),
            status_code=status.get("StatusCode"),
        )
        return ProviderResult(
            carrier=CarrierCode.DELHIVERY,
            raw_status=raw_status,
            raw_events=[event] if raw_status else [],
            waybill=shipment.get("waybill") or shipment.get("AWB"),
            payload=payload,
        )

    # ==================== Rating ====================

    async def quote(self, shipment: Shipment) -> List[ServiceOption]:
        options = []
        last_error: Optional[CarrierError] = None

        for service_id, (mode, name, default_days) in SERVICE_MODES.items():
            params = {
                "md": mode,
                "ss": "Delivered",
                "d_pin": shipment.delivery_pincode,
                "o_pin": shipment.pickup_pincode,
                "cgm": shipment.weight_grams,
                "pt": "COD" if shipment.is_cod else "Pre-paid",
            }
            if shipment.is_cod and shipment.cod_amount:
                params["cod"] = str(shipment.cod_amount)

            try:
                data = await self._http.request("GET", CHARGES_PATH, params=params, headers=self._headers())
            except CarrierError as e:
                logger.info(f"Delhivery {name} pricing not available: {e.message}")
                last_error = e
                continue

            row = data[0] if isinstance(data, list) and data else data
            if not isinstance(row, dict) or not row:
                continue

            cod_charge = to_decimal(row.get("cod_charge"))
            total = to_decimal(row.get("total_amount"))
            freight = to_decimal(row.get("freight_charge")) or total
            options.append(ServiceOption(
                carrier=CarrierCode.DELHIVERY,
                service_id=service_id,
                service_name=name,
                freight=freight,
                cod_charge=cod_charge,
                total=total or freight + cod_charge,
                eta_days=row.get("estimated_delivery_days") or default_days,
            ))

        if not options and last_error:
            raise last_error
        return options

    # ==================== Shipments ====================

    async def book(self, shipment: Shipment, service: ServiceOption) -> BookingResult:
        shipping_mode = "Express" if service.service_id == "express" else "Surface"
        package = {
            "name": shipment.customer_name or "Customer",
            "add": shipment.shipping_address,
            "pin": shipment.delivery_pincode,
            "city": shipment.shipping_city,
            "state": shipment.shipping_state,
            "country": "India",
            "phone": shipment.customer_phone,
            "order": shipment.order_number,
            "payment_mode": "COD" if shipment.is_cod else "Prepaid",
            "return_pin": shipment.pickup_pincode,
            "return_add": shipment.pickup_address or "",
            "products_desc": shipment.product_name or "Product",
            "cod_amount": str(shipment.cod_amount if shipment.is_cod else 0),
            "total_amount": str(shipment.declared_value),
            "seller_name": shipment.pickup_name or "",
            "quantity": "1",
            "weight": str(shipment.weight_grams),
            "shipment_length": str(shipment.length_cm or 10),
            "shipment_width": str(shipment.breadth_cm or 10),
            "shipment_height": str(shipment.height_cm or 10),
            "shipping_mode": shipping_mode,
            "address_type": "home",
        }
        body = {
            "pickup_location": {"name": shipment.pickup_name or ""},
            "shipments": [package],
        }

        # Form body with the shipment JSON embedded
        data = await self._http.request(
            "POST",
            CREATE_PATH,
            data={"format": "json", "data": json.dumps(body)},
            headers=self._headers(),
        )
        data = expect_object(CarrierCode.DELHIVERY, data, "booking")

        packages = [p for p in data.get("packages") or [] if isinstance(p, dict)]
        if packages and packages[0].get("waybill"):
            waybill = packages[0]["waybill"]
            logger.info(f"Delhivery booked {shipment.order_number} -> {waybill}")
            return BookingResult(
                carrier=CarrierCode.DELHIVERY,
                waybill=waybill,
                service_id=service.service_id,
                tracking_url=self.get_tracking_url(waybill),
                freight=service.total,
                raw_response=data,
            )

        reason = (
            data.get("rmk")
            or (packages[0].get("remarks") if packages else None)
            or data.get("message")
            or "Failed to create shipment"
        )
        if isinstance(reason, list):
            reason = "; ".join(str(r) for r in reason)
        raise CarrierRejectedError(str(reason), carrier=CarrierCode.DELHIVERY.value)

    async def cancel(self, waybill: str) -> bool:
        data = await self._http.request(
            "POST",
            EDIT_PATH,
            json={"waybill": waybill, "cancellation": "true"},
            headers=self._headers(),
        )
        ok = data.get("status") in ("Success", True) or data.get("success") is True
        remark = str(data.get("remark") or data.get("message") or "").lower()
        if not ok and "cancelled" in remark and "already" in remark:
            ok = True
        if not ok:
            logger.warning(f"Delhivery cancel {waybill} refused: {remark or data}")
        return ok
