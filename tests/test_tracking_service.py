"""
Tests for tracking fan-out across carriers.
"""
import asyncio

import pytest

from app.core.exceptions import (
    CarrierNotConfiguredError,
    CarrierUnavailableError,
    InvalidTrackingQueryError,
    TrackingNotFoundError,
)
from app.models.carrier import CarrierCode
from app.models.order import OrderState
from app.modules.shipping.carriers.base import ProviderResult, TrackingQuery
from app.services.order_reconciler import OrderReconciler
from app.services.tracking_service import TrackingService

from tests.conftest import FakeCarrier, InMemoryOrderStore, make_order, make_result, store_scope


def make_service(carriers, store=None, timeout=1.0):
    store = store if store is not None else InMemoryOrderStore()
    return TrackingService(carriers, OrderReconciler(store_scope(store)), timeout=timeout)


class TestTrackingQuery:

    def test_requires_an_identifier(self):
        with pytest.raises(InvalidTrackingQueryError):
            TrackingQuery(waybill="  ", order_id=None, phone="")

    def test_waybill_takes_precedence(self):
        query = TrackingQuery(waybill=" AWB1 ", order_id="ORD1", phone="9999999999")
        assert query.primary == ("waybill", "AWB1")

    def test_order_id_over_phone(self):
        assert TrackingQuery(order_id="ORD1", phone="9999999999").primary == ("order_id", "ORD1")


class TestFanOut:
    """Every carrier is asked; the first by priority with data wins."""

    @pytest.mark.asyncio
    async def test_lower_priority_carrier_answers_when_others_fail(self):
        """AWB123: Delhivery errors, Xpressbees has it out for delivery."""
        store = InMemoryOrderStore([make_order(state=OrderState.BOOKED, waybill="AWB123")])
        delhivery = FakeCarrier(CarrierCode.DELHIVERY, lookup_result=CarrierUnavailableError("boom", carrier="DELHIVERY"))
        xpressbees = FakeCarrier(CarrierCode.XPRESSBEES, lookup_result=make_result(CarrierCode.XPRESSBEES, "OFD"))
        ekart = FakeCarrier(CarrierCode.EKART, lookup_result=None)
        service = make_service([delhivery, xpressbees, ekart], store)

        match = await service.track(TrackingQuery(waybill="AWB123"))

        assert match.carrier == CarrierCode.XPRESSBEES
        assert match.state == OrderState.OUT_FOR_DELIVERY
        assert match.result.payload == {"carrier": "XPRESSBEES", "status": "OFD"}
        assert store.orders[1].state == OrderState.OUT_FOR_DELIVERY
        # All carriers were asked
        assert len(delhivery.lookup_calls) == len(xpressbees.lookup_calls) == len(ekart.lookup_calls) == 1

    @pytest.mark.asyncio
    async def test_priority_beats_speed(self):
        """A fast low-priority answer does not beat a slow high-priority one."""
        slow_high = FakeCarrier(
            CarrierCode.DELHIVERY,
            lookup_result=make_result(CarrierCode.DELHIVERY, "In Transit"),
            delay=0.05,
        )
        fast_low = FakeCarrier(CarrierCode.BLITZ, lookup_result=make_result(CarrierCode.BLITZ, "DELIVERED"))
        service = make_service([slow_high, fast_low])

        match = await service.track(TrackingQuery(waybill="AWB123"))

        assert match.carrier == CarrierCode.DELHIVERY
        assert match.state == OrderState.IN_TRANSIT

    @pytest.mark.asyncio
    async def test_empty_success_is_not_a_match(self):
        empty = ProviderResult(carrier=CarrierCode.DELHIVERY, raw_status="", raw_events=[])
        unknown = ProviderResult(carrier=CarrierCode.INNOFULFILL, raw_status="Unknown", raw_events=[])
        ekart = FakeCarrier(CarrierCode.EKART, lookup_result=make_result(CarrierCode.EKART, "Shipment Delivered"))
        service = make_service([
            FakeCarrier(CarrierCode.DELHIVERY, lookup_result=empty),
            FakeCarrier(CarrierCode.INNOFULFILL, lookup_result=unknown),
            ekart,
        ])

        match = await service.track(TrackingQuery(order_id="SW-1001"))

        assert match.carrier == CarrierCode.EKART
        assert match.state == OrderState.DELIVERED

    @pytest.mark.asyncio
    async def test_slow_carrier_is_bounded_by_timeout(self):
        hung = FakeCarrier(CarrierCode.DELHIVERY, lookup_result=make_result(CarrierCode.DELHIVERY, "Delivered"), delay=5)
        answering = FakeCarrier(CarrierCode.XPRESSBEES, lookup_result=make_result(CarrierCode.XPRESSBEES, "IT"))
        service = make_service([hung, answering], timeout=0.05)

        match = await asyncio.wait_for(service.track(TrackingQuery(waybill="AWB123")), timeout=2)

        assert match.carrier == CarrierCode.XPRESSBEES

    @pytest.mark.asyncio
    async def test_not_found_lists_every_carrier(self):
        service = make_service([
            FakeCarrier(CarrierCode.DELHIVERY, lookup_result=None),
            FakeCarrier(CarrierCode.XPRESSBEES, lookup_result=RuntimeError("bad json")),
            FakeCarrier(CarrierCode.EKART, lookup_result=None),
        ])

        with pytest.raises(TrackingNotFoundError) as exc_info:
            await service.track(TrackingQuery(phone="9845012345"))

        assert exc_info.value.carriers_attempted == ["DELHIVERY", "XPRESSBEES", "EKART"]

    @pytest.mark.asyncio
    async def test_no_local_order_still_returns_match(self):
        service = make_service([FakeCarrier(CarrierCode.EKART, lookup_result=make_result(CarrierCode.EKART, "Shipment Picked"))])

        match = await service.track(TrackingQuery(waybill="UNKNOWN-WB"))

        assert match.state == OrderState.PICKED_UP


class TestSingleCarrier:
    """Order-history tracking goes to one carrier only."""

    @pytest.mark.asyncio
    async def test_only_named_carrier_is_called(self):
        delhivery = FakeCarrier(CarrierCode.DELHIVERY, lookup_result=make_result(CarrierCode.DELHIVERY, "Manifested"))
        xpressbees = FakeCarrier(CarrierCode.XPRESSBEES, lookup_result=make_result(CarrierCode.XPRESSBEES, "DL"))
        service = make_service([delhivery, xpressbees])

        match = await service.track_with_carrier(TrackingQuery(waybill="AWB123"), CarrierCode.DELHIVERY)

        assert match.carrier == CarrierCode.DELHIVERY
        assert match.state == OrderState.BOOKED
        assert xpressbees.lookup_calls == []

    @pytest.mark.asyncio
    async def test_disabled_carrier(self):
        service = make_service([FakeCarrier(CarrierCode.DELHIVERY)])

        with pytest.raises(CarrierNotConfiguredError):
            await service.track_with_carrier(TrackingQuery(waybill="AWB123"), CarrierCode.BLITZ)

    @pytest.mark.asyncio
    async def test_carrier_failure_is_not_found(self):
        service = make_service([
            FakeCarrier(CarrierCode.DELHIVERY, lookup_result=CarrierUnavailableError("down", carrier="DELHIVERY"))
        ])

        with pytest.raises(TrackingNotFoundError) as exc_info:
            await service.track_with_carrier(TrackingQuery(waybill="AWB123"), CarrierCode.DELHIVERY)

        assert exc_info.value.carriers_attempted == ["DELHIVERY"]


class TestReconcileSurvivesCancellation:

    @pytest.mark.asyncio
    async def test_cancelled_request_still_updates_order(self):
        store = InMemoryOrderStore([make_order(state=OrderState.BOOKED, waybill="AWB123")])
        started = asyncio.Event()
        release = asyncio.Event()
        original_cas = store.compare_and_set_state

        async def slow_cas(*args, **kwargs):
            started.set()
            await release.wait()
            return await original_cas(*args, **kwargs)

        store.compare_and_set_state = slow_cas
        service = make_service(
            [FakeCarrier(CarrierCode.XPRESSBEES, lookup_result=make_result(CarrierCode.XPRESSBEES, "OFD"))],
            store,
        )

        request = asyncio.ensure_future(service.track(TrackingQuery(waybill="AWB123")))
        await asyncio.wait_for(started.wait(), timeout=1)
        request.cancel()
        with pytest.raises(asyncio.CancelledError):
            await request

        release.set()
        for _ in range(20):
            if store.orders[1].state == OrderState.OUT_FOR_DELIVERY:
                break
            await asyncio.sleep(0.01)

        assert store.orders[1].state == OrderState.OUT_FOR_DELIVERY
