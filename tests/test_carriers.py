"""
Tests for courier clients against mocked courier APIs.
"""
import json
from decimal import Decimal

import httpx
import pytest

from app.core.config import settings
from app.core.exceptions import CarrierError, CarrierRejectedError, CarrierUnavailableError
from app.models.carrier import CarrierCode
from app.models.order import OrderState
from app.modules.shipping.carriers import CarrierFactory
from app.modules.shipping.carriers.base import TrackingQuery, parse_datetime, sanitize_phone, to_decimal
from app.modules.shipping.carriers.blitz import BlitzCarrier
from app.modules.shipping.carriers.delhivery import DelhiveryCarrier
from app.modules.shipping.carriers.ekart import EkartCarrier
from app.modules.shipping.carriers.http import CarrierHTTPClient, expect_object
from app.modules.shipping.carriers.innofulfill import InnofulfillCarrier, parse_token_ttl
from app.modules.shipping.carriers.xpressbees import XpressbeesCarrier
from app.services.multi_carrier_service import shipment_from_order

from tests.conftest import make_option, make_order


def json_body(request: httpx.Request):
    return json.loads(request.content) if request.content else None


# ==================== Shared HTTP client ====================


class TestCarrierHTTPClient:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [429, 500, 503])
    async def test_overload_and_5xx_are_unavailable(self, status_code):
        client = CarrierHTTPClient(
            CarrierCode.EKART, "https://api.test",
            transport=httpx.MockTransport(lambda r: httpx.Response(status_code, json={})),
        )
        with pytest.raises(CarrierUnavailableError) as exc_info:
            await client.request("GET", "/x")
        assert exc_info.value.details["status_code"] == status_code

    @pytest.mark.asyncio
    async def test_network_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        client = CarrierHTTPClient(CarrierCode.EKART, "https://api.test", transport=httpx.MockTransport(handler))
        with pytest.raises(CarrierUnavailableError):
            await client.request("GET", "/x")

    @pytest.mark.asyncio
    async def test_4xx_is_rejected_with_courier_message(self):
        client = CarrierHTTPClient(
            CarrierCode.EKART, "https://api.test",
            transport=httpx.MockTransport(lambda r: httpx.Response(400, json={"message": "Invalid pincode"})),
        )
        with pytest.raises(CarrierRejectedError) as exc_info:
            await client.request("POST", "/x", json={})
        assert exc_info.value.message == "Invalid pincode"
        assert exc_info.value.details["status_code"] == 400

    @pytest.mark.asyncio
    async def test_non_json_success_is_rejected(self):
        client = CarrierHTTPClient(
            CarrierCode.EKART, "https://api.test",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>maintenance</html>")),
        )
        with pytest.raises(CarrierRejectedError):
            await client.request("GET", "/x")

    @pytest.mark.asyncio
    async def test_empty_body_is_empty_dict(self):
        client = CarrierHTTPClient(
            CarrierCode.EKART, "https://api.test",
            transport=httpx.MockTransport(lambda r: httpx.Response(204)),
        )
        assert await client.request("DELETE", "/x") == {}

    def test_expect_object(self):
        assert expect_object(CarrierCode.EKART, {"ok": True}, "booking") == {"ok": True}
        with pytest.raises(CarrierError) as exc_info:
            expect_object(CarrierCode.EKART, [{"ok": True}], "booking")
        assert exc_info.value.details["carrier"] == "EKART"


# ==================== Parsing helpers ====================


class TestParsingHelpers:

    def test_naive_courier_time_is_ist(self):
        parsed = parse_datetime("2024-05-02 10:00:00")
        assert parsed.utcoffset().total_seconds() == 5.5 * 3600

    def test_epoch_millis(self):
        parsed = parse_datetime(1714640000000)
        assert parsed.year == 2024 and parsed.tzinfo is not None

    def test_garbage_is_none(self):
        assert parse_datetime("yesterday-ish") is None

    def test_to_decimal(self):
        assert to_decimal("75.5") == Decimal("75.50")
        assert to_decimal("n/a") == Decimal("0")

    def test_sanitize_phone(self):
        assert sanitize_phone("+91 98450 12345") == "9845012345"
        assert sanitize_phone("09845012345") == "9845012345"


# ==================== Delhivery ====================


class TestDelhivery:

    @pytest.mark.asyncio
    async def test_lookup_by_waybill(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"ShipmentData": [{"Shipment": {
                "AWB": "DL123",
                "Status": {"Status": "Dispatched", "StatusDateTime": "2024-05-02T09:15:00"},
                "Scans": [
                    {"ScanDetail": {"ScanDateTime": "2024-05-01T18:00:00", "Scan": "In Transit",
                                    "Instructions": "Bag received", "ScannedLocation": "Delhi_Hub"}},
                    {"ScanDetail": {"ScanDateTime": "2024-05-02T09:15:00", "Scan": "Dispatched",
                                    "Instructions": "Out for delivery", "ScannedLocation": "Bengaluru_DC"}},
                ],
            }}]})

        carrier = DelhiveryCarrier(transport=httpx.MockTransport(handler))
        result = await carrier.lookup(TrackingQuery(waybill="DL123"))

        assert seen["auth"].startswith("Token ")
        assert seen["params"] == {"waybill": "DL123"}
        assert result.waybill == "DL123"
        assert result.raw_status == "Dispatched"
        assert carrier.map_status(result.raw_status) == OrderState.OUT_FOR_DELIVERY
        assert result.latest_event.location == "Bengaluru_DC"

    @pytest.mark.asyncio
    async def test_order_id_uses_ref_ids(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"ShipmentData": []})

        carrier = DelhiveryCarrier(transport=httpx.MockTransport(handler))
        assert await carrier.lookup(TrackingQuery(order_id="SW-1001")) is None
        assert seen["params"] == {"ref_ids": "SW-1001"}

    @pytest.mark.asyncio
    async def test_unknown_waybill_404_is_none(self):
        carrier = DelhiveryCarrier(transport=httpx.MockTransport(
            lambda r: httpx.Response(404, json={"Error": "No such waybill"})
        ))
        assert await carrier.lookup(TrackingQuery(waybill="NOPE")) is None

    @pytest.mark.asyncio
    async def test_outage_raises(self):
        carrier = DelhiveryCarrier(transport=httpx.MockTransport(lambda r: httpx.Response(502)))
        with pytest.raises(CarrierUnavailableError):
            await carrier.lookup(TrackingQuery(waybill="DL123"))

    def test_webhook(self):
        carrier = DelhiveryCarrier()
        result = carrier.parse_webhook({
            "Shipment": {
                "AWB": "DL123",
                "Status": {"Status": "Delivered", "StatusDateTime": "2024-05-03T12:00:00",
                           "StatusLocation": "Bengaluru_DC", "Instructions": "Delivered to consignee"},
            }
        })
        assert result.waybill == "DL123"
        assert carrier.map_status(result.raw_status) == OrderState.DELIVERED

    @pytest.mark.asyncio
    async def test_quote_surface_and_express(self):
        def handler(request):
            mode = request.url.params["md"]
            total = {"S": 82.6, "E": 141.6}[mode]
            return httpx.Response(200, json=[{"total_amount": total, "cod_charge": 0}])

        carrier = DelhiveryCarrier(transport=httpx.MockTransport(handler))
        options = await carrier.quote(shipment_from_order(make_order()))

        assert {o.service_id: o.total for o in options} == {
            "surface": Decimal("82.60"),
            "express": Decimal("141.60"),
        }

    @pytest.mark.asyncio
    async def test_book_posts_form_and_returns_waybill(self):
        seen = {}

        def handler(request):
            seen["body"] = request.content
            return httpx.Response(200, json={"success": True, "packages": [{"waybill": "DL999", "status": "Success"}]})

        carrier = DelhiveryCarrier(transport=httpx.MockTransport(handler))
        booking = await carrier.book(
            shipment_from_order(make_order()), make_option(CarrierCode.DELHIVERY, "surface", "82.60")
        )

        assert booking.waybill == "DL999"
        assert b"format=json" in seen["body"]
        assert booking.tracking_url.endswith("DL999")

    @pytest.mark.asyncio
    async def test_book_rejection_reason(self):
        carrier = DelhiveryCarrier(transport=httpx.MockTransport(lambda r: httpx.Response(
            200, json={"success": False, "packages": [{"remarks": ["Non serviceable pincode"]}]}
        )))
        with pytest.raises(CarrierRejectedError) as exc_info:
            await carrier.book(
                shipment_from_order(make_order()), make_option(CarrierCode.DELHIVERY, "surface", "82")
            )
        assert exc_info.value.message == "Non serviceable pincode"

    @pytest.mark.asyncio
    async def test_book_list_body_is_carrier_error(self):
        carrier = DelhiveryCarrier(transport=httpx.MockTransport(
            lambda r: httpx.Response(200, json=[{"waybill": "DL1"}])
        ))
        with pytest.raises(CarrierError):
            await carrier.book(
                shipment_from_order(make_order()), make_option(CarrierCode.DELHIVERY, "surface", "82")
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{"ShipmentData": ["junk"]}, {"ShipmentData": "none"}, ["junk"]])
    async def test_lookup_odd_shapes_are_not_found(self, body):
        carrier = DelhiveryCarrier(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body)))
        assert await carrier.lookup(TrackingQuery(waybill="DL1")) is None


# ==================== Xpressbees ====================


def xpressbees_handler(calls, track_status=200):
    def handler(request):
        path = request.url.path
        calls.append(path)
        if path == "/api/users/login":
            return httpx.Response(200, json={"status": True, "data": "xb-token"})
        if path.startswith("/api/shipments2/track/"):
            assert request.headers["Authorization"] == "Bearer xb-token"
            if track_status != 200:
                return httpx.Response(track_status, json={"message": "unauthorised"})
            return httpx.Response(200, json={"status": True, "data": {
                "awb_number": "AWB123",
                "scans": [
                    {"status_code": "IT", "status": "In Transit", "timestamp": "2024-05-01 20:00:00"},
                    {"status_code": "OFD", "status": "Out For Delivery", "location": "BLR",
                     "timestamp": "2024-05-02 10:00:00"},
                ],
            }})
        return httpx.Response(404)
    return handler


class TestXpressbees:

    @pytest.mark.asyncio
    async def test_lookup_falls_back_to_latest_scan(self):
        calls = []
        carrier = XpressbeesCarrier(transport=httpx.MockTransport(xpressbees_handler(calls)))

        result = await carrier.lookup(TrackingQuery(waybill="AWB123"))

        assert result.raw_status == "OFD"
        assert carrier.map_status(result.raw_status) == OrderState.OUT_FOR_DELIVERY

    @pytest.mark.asyncio
    async def test_token_is_cached(self):
        calls = []
        carrier = XpressbeesCarrier(transport=httpx.MockTransport(xpressbees_handler(calls)))

        await carrier.lookup(TrackingQuery(waybill="AWB123"))
        await carrier.lookup(TrackingQuery(waybill="AWB123"))

        assert calls.count("/api/users/login") == 1

    @pytest.mark.asyncio
    async def test_401_clears_token(self):
        calls = []
        carrier = XpressbeesCarrier(transport=httpx.MockTransport(xpressbees_handler(calls, track_status=401)))

        with pytest.raises(CarrierRejectedError):
            await carrier.lookup(TrackingQuery(waybill="AWB123"))
        assert carrier._token.valid is False

    @pytest.mark.asyncio
    async def test_phone_lookup_not_supported(self):
        calls = []
        carrier = XpressbeesCarrier(transport=httpx.MockTransport(xpressbees_handler(calls)))

        assert await carrier.lookup(TrackingQuery(phone="9845012345")) is None
        assert calls == []

    @pytest.mark.asyncio
    async def test_lookup_list_body_is_not_found(self):
        def handler(request):
            if request.url.path == "/api/users/login":
                return httpx.Response(200, json={"status": True, "data": "t"})
            return httpx.Response(200, json=[{"awb_number": "AWB123"}])

        carrier = XpressbeesCarrier(transport=httpx.MockTransport(handler))

        assert await carrier.lookup(TrackingQuery(waybill="AWB123")) is None

    @pytest.mark.asyncio
    async def test_quote_lists_services(self):
        def handler(request):
            if request.url.path == "/api/users/login":
                return httpx.Response(200, json={"status": True, "data": "t"})
            return httpx.Response(200, json={"status": True, "data": [
                {"id": "1", "name": "Surface", "freight_charges": 60, "cod_charges": 0, "total_charges": 70.8},
                {"id": "", "name": "broken"},
            ]})

        carrier = XpressbeesCarrier(transport=httpx.MockTransport(handler))
        options = await carrier.quote(shipment_from_order(make_order()))

        assert len(options) == 1
        assert options[0].total == Decimal("70.80")


# ==================== Ekart ====================


class TestEkart:

    @pytest.mark.asyncio
    async def test_lookup_delivered_flag(self):
        def handler(request):
            if request.url.path.startswith("/integrations/v2/auth/token"):
                return httpx.Response(200, json={"access_token": "ek", "expires_in": 3600})
            return httpx.Response(200, json={"EK1": {
                "delivered": True,
                "history": [{"status": "Delivered", "desc": "Delivered to customer", "ctime": 1714640000000}],
            }})

        carrier = EkartCarrier(transport=httpx.MockTransport(handler))
        result = await carrier.lookup(TrackingQuery(waybill="EK1"))

        assert result.raw_status == "Delivered"
        assert carrier.map_status(result.raw_status) == OrderState.DELIVERED

    @pytest.mark.asyncio
    async def test_book_registers_address_once(self):
        calls = []

        def handler(request):
            path = request.url.path
            calls.append((request.method, path))
            if path.startswith("/integrations/v2/auth/token"):
                return httpx.Response(200, json={"access_token": "ek", "expires_in": 3600})
            if path == "/api/v2/address":
                return httpx.Response(400, json={"message": "Alias already exists"})
            if path == "/api/v1/package/create":
                return httpx.Response(200, json={"status": True, "tracking_id": f"EK{len(calls)}"})
            return httpx.Response(404)

        carrier = EkartCarrier(transport=httpx.MockTransport(handler))
        shipment = shipment_from_order(make_order())
        option = make_option(CarrierCode.EKART, "surface", "75")

        first = await carrier.book(shipment, option)
        second = await carrier.book(shipment, option)

        assert first.waybill != second.waybill
        assert calls.count(("POST", "/api/v2/address")) == 1
        assert calls.count(("PUT", "/api/v1/package/create")) == 2


# ==================== Blitz ====================


class TestBlitz:

    def blitz_handler(self, seen):
        auth_host = httpx.URL(settings.BLITZ_BASE_URL).host
        shipment_host = httpx.URL(settings.BLITZ_SHIPMENT_URL).host

        def handler(request):
            host, path = request.url.host, request.url.path
            if host == auth_host and path == "/v1/auth":
                return httpx.Response(200, json={"code": 200, "id_token": "blitz-id"})
            seen.append((host, path, request.headers.get("Authorization"), json_body(request)))
            if host == auth_host and path == "/v1/tracking":
                return httpx.Response(200, json={"isSuccess": True, "result": [{
                    "awb": "BZ1",
                    "tracking": [
                        {"shipmentStatus": "OUT FOR DELIVERY", "timestamp": "2024-05-02T10:00:00"},
                        {"shipmentStatus": "PICKED", "timestamp": "2024-05-01T09:00:00"},
                    ],
                }]})
            if host == shipment_host and path == "/v1/waybill/":
                return httpx.Response(200, json={"status": "PARTIAL", "waybill": "BZ2", "message": "label pending"})
            return httpx.Response(404)
        return handler

    @pytest.mark.asyncio
    async def test_lookup_uses_raw_token_and_newest_scan(self):
        seen = []
        carrier = BlitzCarrier(transport=httpx.MockTransport(self.blitz_handler(seen)))

        result = await carrier.lookup(TrackingQuery(waybill="BZ1"))

        _, _, auth, body = seen[0]
        assert auth == "blitz-id"
        assert body == {"field": "shipment", "value": "BZ1"}
        assert carrier.map_status(result.raw_status) == OrderState.OUT_FOR_DELIVERY

    @pytest.mark.asyncio
    async def test_book_accepts_waybill_with_warning_status(self):
        seen = []
        carrier = BlitzCarrier(transport=httpx.MockTransport(self.blitz_handler(seen)))

        booking = await carrier.book(shipment_from_order(make_order()), make_option(CarrierCode.BLITZ, "std", "0"))

        assert booking.waybill == "BZ2"
        host, path, _, body = seen[0]
        assert host == httpx.URL(settings.BLITZ_SHIPMENT_URL).host
        # Dimensions go out in millimetres
        assert body["Shipment"]["length"] == "100"

    @pytest.mark.asyncio
    async def test_lookup_without_result_list_is_not_found(self):
        auth_host = httpx.URL(settings.BLITZ_BASE_URL).host

        def handler(request):
            if request.url.host == auth_host and request.url.path == "/v1/auth":
                return httpx.Response(200, json={"code": 200, "id_token": "blitz-id"})
            return httpx.Response(200, json={"isSuccess": True, "result": "no shipment"})

        carrier = BlitzCarrier(transport=httpx.MockTransport(handler))

        assert await carrier.lookup(TrackingQuery(waybill="BZ9")) is None

    @pytest.mark.asyncio
    async def test_no_rate_api(self):
        carrier = BlitzCarrier(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        assert await carrier.quote(shipment_from_order(make_order())) == []


# ==================== Innofulfill ====================


class TestInnofulfill:

    @pytest.mark.parametrize("raw, seconds", [
        ("1d", 86400),
        ("12h", 43200),
        ("30m", 1800),
        ("soon", 86400),
        (None, 86400),
    ])
    def test_parse_token_ttl(self, raw, seconds):
        assert parse_token_ttl(raw) == seconds

    @pytest.mark.asyncio
    async def test_unknown_status_has_no_tracking_data(self):
        def handler(request):
            if request.url.path == "/auth/login":
                return httpx.Response(200, json={"data": {"accessToken": "in", "expiresIn": "12h"}})
            return httpx.Response(200, json={"data": {"orderStatus": "Unknown", "orderStateInfo": []}})

        carrier = InnofulfillCarrier(transport=httpx.MockTransport(handler))
        result = await carrier.lookup(TrackingQuery(waybill="IN1"))

        assert result is not None
        assert result.has_tracking_data is False

    @pytest.mark.asyncio
    async def test_cancel_not_supported(self):
        carrier = InnofulfillCarrier(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        assert await carrier.cancel("IN1") is False


# ==================== Registry ====================


class TestCarrierFactory:

    def test_all_carriers_registered(self):
        assert set(CarrierFactory.get_registered_carriers()) == set(CarrierCode)

    def test_enabled_carriers_follow_configured_priority(self, monkeypatch):
        monkeypatch.setattr(settings, "CARRIER_PRIORITY", ["EKART", "DELHIVERY"])

        carriers = CarrierFactory.get_enabled_carriers()

        assert [c.carrier_code for c in carriers] == [CarrierCode.EKART, CarrierCode.DELHIVERY]
        assert CarrierFactory.get_carrier(CarrierCode.BLITZ) is None
