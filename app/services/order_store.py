"""
Order store

The only path by which the carrier layer reads or writes orders. Both
writes are conditional UPDATEs: the caller learns whether it won, and a
losing write changes nothing.
"""
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db_session
from app.models.carrier import CarrierCode
from app.models.order import Order, OrderState, PaymentMode, TERMINAL_STATES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderRecord:
    """Immutable snapshot of the order columns the carrier layer uses."""
    id: int
    order_number: str
    merchant_id: int
    state: OrderState
    waybill: Optional[str] = None
    carrier: Optional[CarrierCode] = None
    last_raw_status: Optional[str] = None
    delivered_at: Optional[datetime] = None
    booked_at: Optional[datetime] = None
    service_id: Optional[str] = None
    shipping_cost: Optional[Decimal] = None
    customer_name: str = ""
    customer_phone: str = ""
    shipping_address: str = ""
    shipping_city: str = ""
    shipping_state: str = ""
    shipping_pincode: str = ""
    pickup_pincode: str = ""
    pickup_name: Optional[str] = None
    pickup_address: Optional[str] = None
    product_name: str = ""
    weight_kg: float = 0.5
    length_cm: Optional[float] = None
    breadth_cm: Optional[float] = None
    height_cm: Optional[float] = None
    payment_mode: PaymentMode = PaymentMode.PREPAID
    cod_amount: Decimal = Decimal("0")
    declared_value: Decimal = Decimal("0")

    @classmethod
    def from_model(cls, order: Order) -> "OrderRecord":
        return cls(
            id=order.id,
            order_number=order.order_number,
            merchant_id=order.merchant_id,
            state=OrderState(order.state),
            waybill=order.waybill,
            carrier=CarrierCode(order.carrier) if order.carrier else None,
            last_raw_status=order.last_raw_status,
            delivered_at=order.delivered_at,
            booked_at=order.booked_at,
            service_id=order.service_id,
            shipping_cost=order.shipping_cost,
            customer_name=order.customer_name,
            customer_phone=order.customer_phone,
            shipping_address=order.shipping_address,
            shipping_city=order.shipping_city,
            shipping_state=order.shipping_state,
            shipping_pincode=order.shipping_pincode,
            pickup_pincode=order.pickup_pincode,
            pickup_name=order.pickup_name,
            pickup_address=order.pickup_address,
            product_name=order.product_name,
            weight_kg=order.weight_kg,
            length_cm=order.length_cm,
            breadth_cm=order.breadth_cm,
            height_cm=order.height_cm,
            payment_mode=PaymentMode(order.payment_mode),
            cod_amount=Decimal(order.cod_amount or 0),
            declared_value=Decimal(order.declared_value or 0),
        )


class OrderStore(ABC):
    """Order reads and conditional writes."""

    @abstractmethod
    async def get(self, order_id: int) -> Optional[OrderRecord]:
        pass

    @abstractmethod
    async def get_by_waybill(self, waybill: str) -> Optional[OrderRecord]:
        pass

    @abstractmethod
    async def get_by_order_number(
        self, order_number: str, merchant_id: Optional[int] = None
    ) -> Optional[OrderRecord]:
        pass

    @abstractmethod
    async def compare_and_set_state(
        self,
        order_id: int,
        expected_state: OrderState,
        new_state: OrderState,
        raw_status: str,
        delivered_at: Optional[datetime] = None,
    ) -> bool:
        """
        Move state only if it is still expected_state.

        Returns:
            True if this write was applied
        """
        pass

    @abstractmethod
    async def assign_booking(
        self,
        order_id: int,
        carrier: CarrierCode,
        waybill: str,
        service_id: str,
        service_name: str,
        shipping_cost: Optional[Decimal],
        booked_at: datetime,
    ) -> bool:
        """
        Set carrier, waybill and state=BOOKED together, only if the order
        has no waybill yet and is not in a terminal state.

        Returns:
            True if this write was applied
        """
        pass


class SQLAlchemyOrderStore(OrderStore):
    """OrderStore over the orders table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _one(self, *criteria) -> Optional[OrderRecord]:
        result = await self.db.execute(select(Order).where(*criteria))
        order = result.scalar_one_or_none()
        return OrderRecord.from_model(order) if order else None

    async def get(self, order_id: int) -> Optional[OrderRecord]:
        return await self._one(Order.id == order_id)

    async def get_by_waybill(self, waybill: str) -> Optional[OrderRecord]:
        return await self._one(Order.waybill == waybill)

    async def get_by_order_number(
        self, order_number: str, merchant_id: Optional[int] = None
    ) -> Optional[OrderRecord]:
        criteria = [Order.order_number == order_number]
        if merchant_id is not None:
            criteria.append(Order.merchant_id == merchant_id)
        return await self._one(*criteria)

    async def compare_and_set_state(
        self,
        order_id: int,
        expected_state: OrderState,
        new_state: OrderState,
        raw_status: str,
        delivered_at: Optional[datetime] = None,
    ) -> bool:
        values = {"state": new_state, "last_raw_status": raw_status}
        if delivered_at is not None:
            values["delivered_at"] = delivered_at

        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.state == expected_state)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def assign_booking(
        self,
        order_id: int,
        carrier: CarrierCode,
        waybill: str,
        service_id: str,
        service_name: str,
        shipping_cost: Optional[Decimal],
        booked_at: datetime,
    ) -> bool:
        result = await self.db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.waybill.is_(None),
                Order.state.notin_(list(TERMINAL_STATES)),
            )
            .values(
                carrier=carrier,
                waybill=waybill,
                service_id=service_id,
                service_name=service_name,
                shipping_cost=shipping_cost,
                booked_at=booked_at,
                state=OrderState.BOOKED,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            logger.info(f"Order {order_id} already has a waybill or is terminal; booking {waybill} not recorded")
            return False
        return True


@asynccontextmanager
async def sqlalchemy_store_scope() -> AsyncIterator[OrderStore]:
    """
    OrderStore on its own session, independent of any request session.

    Used for work that must finish even if the triggering request is gone.
    """
    async with get_db_session() as db:
        yield SQLAlchemyOrderStore(db)
