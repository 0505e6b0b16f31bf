"""
Multi-Carrier Shipping Service

- Rate shopping: every eligible carrier quotes concurrently; failures are
  dropped and the union of the successful quotes is returned, cheapest first
- Booking: write-once per order. An order that already has a waybill is
  rejected before any carrier is contacted, as is one already in a terminal
  state. A successful booking sets carrier, waybill and state=BOOKED in one
  conditional UPDATE

Usage:
    service = MultiCarrierService(store, carriers)
    options = await service.quote_all(shipment)
    booking = await service.book(order_id, options[0])
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from app.core.config import settings
from app.core.exceptions import (
    AlreadyBookedError,
    BookingRejectedError,
    BookingTransientError,
    CarrierError,
    CarrierNotConfiguredError,
    CarrierRejectedError,
    CarrierUnavailableError,
    OrderNotBookableError,
    OrderNotFoundError,
)
from app.modules.shipping.carriers.base import (
    BaseCarrier,
    BookingResult,
    ServiceOption,
    Shipment,
)
from app.services.order_store import OrderRecord, OrderStore

logger = logging.getLogger(__name__)


@dataclass
class CarrierTimeouts:
    """Per-call bounds, seconds."""
    quote: float = 15.0
    book: float = 30.0

    @classmethod
    def from_settings(cls) -> "CarrierTimeouts":
        return cls(
            quote=settings.CARRIER_QUOTE_TIMEOUT_SECONDS,
            book=settings.CARRIER_BOOK_TIMEOUT_SECONDS,
        )


def shipment_from_order(order: OrderRecord) -> Shipment:
    """Everything a carrier needs to price and book the order."""
    return Shipment(
        order_number=order.order_number,
        pickup_pincode=order.pickup_pincode,
        delivery_pincode=order.shipping_pincode,
        weight_kg=order.weight_kg,
        declared_value=order.declared_value,
        customer_name=order.customer_name,
        customer_phone=order.customer_phone,
        shipping_address=order.shipping_address,
        shipping_city=order.shipping_city,
        shipping_state=order.shipping_state,
        pickup_name=order.pickup_name,
        pickup_address=order.pickup_address,
        product_name=order.product_name,
        payment_mode=order.payment_mode,
        cod_amount=order.cod_amount,
        length_cm=order.length_cm,
        breadth_cm=order.breadth_cm,
        height_cm=order.height_cm,
    )


class MultiCarrierService:
    """
    Service for multi-carrier shipping operations.

    Aggregates quotes from all enabled carriers and books the
    merchant's chosen option.
    """

    def __init__(
        self,
        store: OrderStore,
        carriers: Sequence[BaseCarrier],
        timeouts: Optional[CarrierTimeouts] = None,
    ):
        self.store = store
        self.carriers = list(carriers)
        self.timeouts = timeouts or CarrierTimeouts.from_settings()

    def get_carrier(self, carrier_code) -> Optional[BaseCarrier]:
        return next((c for c in self.carriers if c.carrier_code == carrier_code), None)

    def eligible_carriers(self, shipment: Shipment) -> List[BaseCarrier]:
        return [c for c in self.carriers if c.is_eligible(shipment)]

    async def get_order(self, order_id: int, merchant_id: Optional[int] = None) -> OrderRecord:
        """
        Raises:
            OrderNotFoundError: missing, or owned by another merchant
        """
        order = await self.store.get(order_id)
        if order is None or (merchant_id is not None and order.merchant_id != merchant_id):
            raise OrderNotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
        return order

    # ==================== Rating ====================

    async def _quote(self, carrier: BaseCarrier, shipment: Shipment) -> List[ServiceOption]:
        return await asyncio.wait_for(carrier.quote(shipment), timeout=self.timeouts.quote)

    async def quote_all(self, shipment: Shipment) -> List[ServiceOption]:
        """
        Get service options from all eligible carriers.

        Returns:
            Every successful carrier's options, sorted by total (lowest first)
        """
        carriers = self.eligible_carriers(shipment)
        if not carriers:
            logger.warning(f"No eligible carriers for {shipment.order_number}")
            return []

        outcomes = await asyncio.gather(
            *(self._quote(carrier, shipment) for carrier in carriers),
            return_exceptions=True,
        )

        all_options: List[ServiceOption] = []
        for carrier, outcome in zip(carriers, outcomes):
            name = carrier.carrier_code.value
            if isinstance(outcome, asyncio.TimeoutError):
                logger.warning(f"Quote from {name} timed out after {self.timeouts.quote}s")
                continue
            if isinstance(outcome, BaseException):
                logger.warning(f"Error getting quotes from {name}: {outcome!r}")
                continue

            # Options are always tagged with the carrier that produced them
            for option in outcome:
                if option.carrier != carrier.carrier_code:
                    option.carrier = carrier.carrier_code
                all_options.append(option)
            logger.info(f"Got {len(outcome)} options from {name}")

        all_options.sort(key=lambda o: o.total)
        return all_options

    async def quote_order(self, order_id: int, merchant_id: Optional[int] = None) -> List[ServiceOption]:
        order = await self.get_order(order_id, merchant_id)
        return await self.quote_all(shipment_from_order(order))

    # ==================== Booking ====================

    async def book(
        self,
        order_id: int,
        option: ServiceOption,
        merchant_id: Optional[int] = None,
    ) -> BookingResult:
        """
        Book the chosen option for an order.

        Raises:
            OrderNotFoundError: order missing or not the merchant's
            AlreadyBookedError: order already has a waybill
            OrderNotBookableError: order is DELIVERED, RTO or FAILED
            CarrierNotConfiguredError: option's carrier is not enabled
            BookingRejectedError: carrier refused; show the reason
            BookingTransientError: timeout, carrier outage or unreadable
                carrier response; safe to retry
        """
        order = await self.get_order(order_id, merchant_id)
        if order.waybill:
            raise AlreadyBookedError(
                f"Order {order.order_number} is already booked with {order.waybill}",
                order_id=order.id,
                waybill=order.waybill,
            )
        if order.state.is_terminal:
            raise OrderNotBookableError(
                f"Order {order.order_number} is {order.state.value} and cannot be booked",
                order_id=order.id,
                state=order.state.value,
            )

        carrier = self.get_carrier(option.carrier)
        if carrier is None:
            raise CarrierNotConfiguredError(
                f"Carrier {option.carrier.value} is not enabled",
                details={"carrier": option.carrier.value},
            )

        shipment = shipment_from_order(order)
        name = carrier.carrier_code.value
        try:
            booking = await asyncio.wait_for(carrier.book(shipment, option), timeout=self.timeouts.book)
        except asyncio.TimeoutError:
            logger.warning(f"Booking {order.order_number} on {name} timed out after {self.timeouts.book}s")
            raise BookingTransientError(
                f"{carrier.carrier_name} did not respond in time; please retry",
                details={"carrier": name, "order_id": order.id},
            )
        except CarrierUnavailableError as e:
            logger.warning(f"Booking {order.order_number} on {name} unavailable: {e.message}")
            raise BookingTransientError(
                f"{carrier.carrier_name} is temporarily unavailable; please retry",
                details={"carrier": name, "order_id": order.id, "reason": e.message},
            )
        except CarrierRejectedError as e:
            logger.info(f"Booking {order.order_number} rejected by {name}: {e.message}")
            raise BookingRejectedError(
                e.message,
                details={"carrier": name, "order_id": order.id, "status_code": e.details.get("status_code")},
            )
        except CarrierError as e:
            logger.warning(f"Booking {order.order_number} on {name} failed: {e.message}")
            raise BookingTransientError(
                f"{carrier.carrier_name} booking failed; please retry",
                details={"carrier": name, "order_id": order.id, "reason": e.message},
            )
        except Exception as e:
            logger.exception(f"Unexpected error booking {order.order_number} on {name}: {e}")
            raise BookingTransientError(
                f"{carrier.carrier_name} returned an unreadable response; please retry",
                details={"carrier": name, "order_id": order.id},
            )

        recorded = await self.store.assign_booking(
            order.id,
            carrier=carrier.carrier_code,
            waybill=booking.waybill,
            service_id=option.service_id,
            service_name=option.service_name,
            shipping_cost=option.total,
            booked_at=datetime.now(timezone.utc),
        )
        if not recorded:
            # A concurrent booking or a terminal update won; this waybill belongs to no order
            await self._void_orphan(carrier, booking.waybill, order)
            current = await self.store.get(order.id)
            if current is not None and current.waybill is None and current.state.is_terminal:
                raise OrderNotBookableError(
                    f"Order {order.order_number} became {current.state.value} while booking",
                    order_id=order.id,
                    state=current.state.value,
                )
            raise AlreadyBookedError(
                f"Order {order.order_number} was booked concurrently",
                order_id=order.id,
                waybill=current.waybill if current else None,
            )

        logger.info(f"Booked {order.order_number} on {name}: {booking.waybill}")
        return booking

    async def _void_orphan(self, carrier: BaseCarrier, waybill: str, order: OrderRecord) -> None:
        name = carrier.carrier_code.value
        try:
            cancelled = await asyncio.wait_for(carrier.cancel(waybill), timeout=self.timeouts.book)
        except Exception as e:
            logger.error(f"Could not void orphaned {name} waybill {waybill} for {order.order_number}: {e!r}")
            return
        if cancelled:
            logger.warning(f"Voided orphaned {name} waybill {waybill} for {order.order_number}")
        else:
            logger.error(f"{name} refused to void orphaned waybill {waybill} for {order.order_number}")
