"""
Order State Reconciler

Keeps the merchant's order in step with what a carrier reports. Best-effort:
reconcile() never raises, every outcome is logged and returned.

Rules:
- no order with the waybill -> nothing to do (shipment booked elsewhere)
- order already DELIVERED / RTO / FAILED -> left alone (terminal latch)
- otherwise state and last_raw_status are written with a conditional UPDATE
  keyed on the state that was read; delivered_at is stamped with the
  reconciliation time when the new state is DELIVERED
- a lost conditional write is retried on fresh state, then dropped
"""
import enum
import logging
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from typing import Callable, Optional

from app.core.config import settings
from app.models.order import OrderState
from app.modules.shipping.carriers.base import ProviderResult
from app.services.order_store import OrderStore
from app.services.status_mapper import map_status

logger = logging.getLogger(__name__)

StoreScope = Callable[[], AbstractAsyncContextManager]


class ReconcileOutcome(str, enum.Enum):
    APPLIED = "APPLIED"
    UNCHANGED = "UNCHANGED"
    NO_ORDER = "NO_ORDER"
    TERMINAL_LATCHED = "TERMINAL_LATCHED"
    CONFLICT = "CONFLICT"
    ERROR = "ERROR"


class OrderReconciler:
    """
    Applies a ProviderResult to the order that owns its waybill.

    Args:
        store_scope: zero-arg callable returning an async context manager
            that yields an OrderStore; each reconcile opens its own scope
        max_attempts: conditional-write attempts before giving up
        clock: returns the reconciliation time (UTC)
    """

    def __init__(
        self,
        store_scope: StoreScope,
        max_attempts: Optional[int] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store_scope = store_scope
        self.max_attempts = max(1, max_attempts or settings.RECONCILE_MAX_ATTEMPTS)
        self.clock = clock

    async def reconcile(self, waybill: Optional[str], result: ProviderResult) -> ReconcileOutcome:
        """Never raises; failures are logged and reported as ERROR."""
        try:
            return await self._reconcile(waybill, result)
        except Exception as e:
            logger.exception(f"Reconciliation failed for waybill {waybill}: {e}")
            return ReconcileOutcome.ERROR

    async def _reconcile(self, waybill: Optional[str], result: ProviderResult) -> ReconcileOutcome:
        waybill = waybill or result.waybill
        if not waybill:
            logger.debug(f"No waybill on {result.carrier.value} result; nothing to reconcile")
            return ReconcileOutcome.NO_ORDER

        raw_status = result.raw_status or (result.latest_event.status if result.latest_event else "")
        candidate = map_status(result.carrier, raw_status, result.latest_description)

        async with self.store_scope() as store:
            for attempt in range(1, self.max_attempts + 1):
                outcome = await self._attempt(store, waybill, candidate, raw_status)
                if outcome is not None:
                    return outcome
                logger.debug(f"Conditional write lost for {waybill} (attempt {attempt}), re-reading")

        logger.info(
            f"Reconciliation conflict for {waybill}: dropped {candidate.value} "
            f"after {self.max_attempts} attempts"
        )
        return ReconcileOutcome.CONFLICT

    async def _attempt(
        self,
        store: OrderStore,
        waybill: str,
        candidate: OrderState,
        raw_status: str,
    ) -> Optional[ReconcileOutcome]:
        """One read-compare-write round. None means the write lost a race."""
        order = await store.get_by_waybill(waybill)
        if order is None:
            logger.debug(f"No order for waybill {waybill}; skipping reconciliation")
            return ReconcileOutcome.NO_ORDER

        if order.state.is_terminal:
            if candidate != order.state:
                logger.info(
                    f"Order {order.id} is {order.state.value}; ignoring {candidate.value} "
                    f"({raw_status!r}) for {waybill}"
                )
            return ReconcileOutcome.TERMINAL_LATCHED

        if order.state == candidate and order.last_raw_status == raw_status:
            return ReconcileOutcome.UNCHANGED

        delivered_at = self.clock() if candidate == OrderState.DELIVERED else None
        applied = await store.compare_and_set_state(
            order.id,
            expected_state=order.state,
            new_state=candidate,
            raw_status=raw_status,
            delivered_at=delivered_at,
        )
        if not applied:
            return None

        logger.info(
            f"Order {order.id} ({waybill}) {order.state.value} -> {candidate.value} "
            f"from {raw_status!r}"
        )
        return ReconcileOutcome.APPLIED
