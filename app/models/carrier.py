"""
Carrier identity

The set of integrated couriers is closed: adding one means adding a code
here, a client module under app/modules/shipping/carriers and its status
table. Which of them are enabled, and in what priority, is configuration
(settings.CARRIER_PRIORITY).
"""
import enum
from typing import List

from app.core.config import settings


class CarrierCode(str, enum.Enum):
    """Supported courier networks."""
    DELHIVERY = "DELHIVERY"
    XPRESSBEES = "XPRESSBEES"
    EKART = "EKART"
    BLITZ = "BLITZ"
    INNOFULFILL = "INNOFULFILL"


# Shown by the courier catalogue endpoint
CARRIER_DISPLAY_INFO = {
    CarrierCode.DELHIVERY: {
        "display_name": "Delhivery",
        "description": "Pan-India logistics with COD support",
    },
    CarrierCode.XPRESSBEES: {
        "display_name": "Xpressbees",
        "description": "Multi-service options with Surface, Air, and Same Day",
    },
    CarrierCode.EKART: {
        "display_name": "Ekart",
        "description": "Flipkart logistics - reliable nationwide delivery",
    },
    CarrierCode.BLITZ: {
        "display_name": "Blitz",
        "description": "Quick commerce & same-day delivery",
    },
    CarrierCode.INNOFULFILL: {
        "display_name": "Innofulfill",
        "description": "Surface and air fulfilment network",
    },
}


def configured_priority() -> List[CarrierCode]:
    """Enabled carriers, highest tracking priority first."""
    return [CarrierCode(code) for code in settings.CARRIER_PRIORITY]
