"""
Shipping Module

- BaseCarrier interface for all courier implementations
- CarrierFactory returns enabled couriers in tracking priority order
"""
from app.modules.shipping.carriers import CarrierFactory
from app.modules.shipping.carriers.base import BaseCarrier

__all__ = [
    "CarrierFactory",
    "BaseCarrier",
]
