"""
Carrier Registry and Factory

- register_carrier records the implementation and its status table
- CarrierFactory only returns carriers enabled in settings.CARRIER_PRIORITY,
  in that order
"""
from typing import Dict, List, Optional, Type
import logging

from app.models.carrier import CarrierCode, configured_priority
from app.modules.shipping.carriers.base import BaseCarrier
from app.services.status_mapper import register_status_table

logger = logging.getLogger(__name__)

# Registry of carrier implementations
_CARRIER_REGISTRY: Dict[CarrierCode, Type[BaseCarrier]] = {}


def register_carrier(carrier_code: CarrierCode):
    """
    Decorator to register a carrier implementation.

    Usage:
        @register_carrier(CarrierCode.DELHIVERY)
        class DelhiveryCarrier(BaseCarrier):
            ...
    """
    def decorator(cls: Type[BaseCarrier]):
        _CARRIER_REGISTRY[carrier_code] = cls
        register_status_table(carrier_code, cls.status_table)
        logger.info(f"Registered carrier: {carrier_code.value} -> {cls.__name__}")
        return cls
    return decorator


class CarrierFactory:
    """
    Factory for creating carrier instances.

    Returns None for carriers that are disabled or not implemented.
    """

    @classmethod
    def get_carrier(cls, carrier_code: CarrierCode) -> Optional[BaseCarrier]:
        """
        Get a carrier instance if enabled.

        Args:
            carrier_code: The carrier to get

        Returns:
            BaseCarrier instance or None if disabled/not found
        """
        if carrier_code not in configured_priority():
            logger.debug(f"Carrier {carrier_code.value} is disabled")
            return None

        carrier_cls = _CARRIER_REGISTRY.get(carrier_code)
        if not carrier_cls:
            logger.warning(f"No implementation registered for carrier: {carrier_code.value}")
            return None

        return carrier_cls()

    @classmethod
    def get_enabled_carriers(cls) -> List[BaseCarrier]:
        """
        Get all enabled carrier instances, highest priority first.

        Returns:
            List of enabled BaseCarrier instances
        """
        carriers = []
        for code in configured_priority():
            carrier = cls.get_carrier(code)
            if carrier:
                carriers.append(carrier)
        return carriers

    @classmethod
    def get_registered_carriers(cls) -> List[CarrierCode]:
        """Get list of all registered carrier codes."""
        return list(_CARRIER_REGISTRY.keys())


# Import carriers to trigger registration
# These imports must be at the bottom to avoid circular imports
from app.modules.shipping.carriers import delhivery  # noqa: E402, F401
from app.modules.shipping.carriers import xpressbees  # noqa: E402, F401
from app.modules.shipping.carriers import ekart  # noqa: E402, F401
from app.modules.shipping.carriers import blitz  # noqa: E402, F401
from app.modules.shipping.carriers import innofulfill  # noqa: E402, F401
