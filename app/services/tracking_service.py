"""
Tracking Fan-Out Coordinator

Every enabled carrier is asked concurrently and every call is allowed to
settle (each bounded by CARRIER_LOOKUP_TIMEOUT_SECONDS). The winner is the
first carrier in priority order whose answer carries tracking data, not the
first to respond. A carrier that errors, times out, answers empty, or does
not know the identifier simply does not win.

The winning result is reconciled into the order before returning. The
reconciliation runs as its own task so that a client disconnect does not
abort it half way.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Set

from app.core.config import settings
from app.core.exceptions import CarrierNotConfiguredError, TrackingNotFoundError
from app.models.carrier import CarrierCode
from app.models.order import OrderState
from app.modules.shipping.carriers.base import BaseCarrier, ProviderResult, TrackingQuery
from app.services.order_reconciler import OrderReconciler
from app.services.status_mapper import CanonicalEvent, canonical_events, map_status

logger = logging.getLogger(__name__)

# Reconciliations still running after their request returned or was cancelled
_pending_reconciliations: Set[asyncio.Task] = set()


@dataclass
class TrackingMatch:
    """Winning carrier and its raw answer."""
    carrier: CarrierCode
    result: ProviderResult

    @property
    def state(self) -> OrderState:
        return map_status(self.carrier, self.result.raw_status, self.result.latest_description)

    @property
    def events(self) -> List[CanonicalEvent]:
        return canonical_events(self.result)


async def drain_pending_reconciliations() -> None:
    """Wait for reconciliations whose requests have already gone away."""
    if _pending_reconciliations:
        logger.info(f"Waiting for {len(_pending_reconciliations)} pending reconciliations")
        await asyncio.gather(*list(_pending_reconciliations), return_exceptions=True)


class TrackingService:
    """
    Fan-out tracking across carriers.

    Args:
        carriers: Enabled carriers, highest priority first
        reconciler: Applies the winning result to the local order
        timeout: Per-carrier lookup bound in seconds
    """

    def __init__(
        self,
        carriers: Sequence[BaseCarrier],
        reconciler: OrderReconciler,
        timeout: Optional[float] = None,
    ):
        self.carriers = list(carriers)
        self.reconciler = reconciler
        self.timeout = timeout if timeout is not None else settings.CARRIER_LOOKUP_TIMEOUT_SECONDS

    async def _lookup(self, carrier: BaseCarrier, query: TrackingQuery) -> Optional[ProviderResult]:
        return await asyncio.wait_for(carrier.lookup(query), timeout=self.timeout)

    def _is_match(self, carrier: BaseCarrier, outcome) -> bool:
        name = carrier.carrier_code.value
        if isinstance(outcome, asyncio.TimeoutError):
            logger.warning(f"Tracking lookup on {name} timed out after {self.timeout}s")
            return False
        if isinstance(outcome, BaseException):
            logger.warning(f"Tracking lookup on {name} failed: {outcome!r}")
            return False
        if outcome is None:
            logger.debug(f"{name} does not know the identifier")
            return False
        if not outcome.has_tracking_data:
            logger.info(f"{name} answered without tracking data; treating as no match")
            return False
        return True

    async def track(self, query: TrackingQuery) -> TrackingMatch:
        """
        Track across all carriers.

        Raises:
            TrackingNotFoundError: no carrier produced tracking data
        """
        attempted = [c.carrier_code.value for c in self.carriers]
        kind, value = query.primary
        logger.info(f"Tracking {kind}={value} across {', '.join(attempted) or 'no carriers'}")

        outcomes = await asyncio.gather(
            *(self._lookup(carrier, query) for carrier in self.carriers),
            return_exceptions=True,
        )

        for carrier, outcome in zip(self.carriers, outcomes):
            if self._is_match(carrier, outcome):
                match = TrackingMatch(carrier=carrier.carrier_code, result=outcome)
                await self._reconcile(match, query)
                return match

        raise TrackingNotFoundError(
            f"No carrier has tracking for {kind} {value}",
            carriers_attempted=attempted,
        )

    async def track_with_carrier(self, query: TrackingQuery, carrier_code: CarrierCode) -> TrackingMatch:
        """
        Track on a single carrier (order-history tracking).

        Raises:
            CarrierNotConfiguredError: carrier is not among the enabled ones
            TrackingNotFoundError: the carrier failed or has no tracking data
        """
        carrier = next((c for c in self.carriers if c.carrier_code == carrier_code), None)
        if carrier is None:
            raise CarrierNotConfiguredError(
                f"Carrier {carrier_code.value} is not enabled",
                details={"carrier": carrier_code.value},
            )

        outcome = (await asyncio.gather(self._lookup(carrier, query), return_exceptions=True))[0]
        if not self._is_match(carrier, outcome):
            raise TrackingNotFoundError(
                f"{carrier.carrier_name} has no tracking for {query.primary[1]}",
                carriers_attempted=[carrier_code.value],
            )

        match = TrackingMatch(carrier=carrier_code, result=outcome)
        await self._reconcile(match, query)
        return match

    async def _reconcile(self, match: TrackingMatch, query: TrackingQuery) -> None:
        waybill = match.result.waybill or query.waybill
        task = asyncio.ensure_future(self.reconciler.reconcile(waybill, match.result))
        _pending_reconciliations.add(task)
        task.add_done_callback(_pending_reconciliations.discard)
        # Cancelling the caller must not cancel the reconciliation
        await asyncio.shield(task)
