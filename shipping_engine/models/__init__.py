from shipping_engine.models.shipping_class import ShippingClass
from shipping_engine.models.zone import ShippingZone, ShippingZoneMethod
from shipping_engine.models.method import ShippingMethod
from shipping_engine.models.rate import ShippingRate, RateType
from shipping_engine.models.shipment import (
    Shipment,
    ShipmentStatus,
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
)
from shipping_engine.models.address import ShippingAddress

__all__ = [
    "ShippingClass",
    "ShippingZone",
    "ShippingZoneMethod",
    "ShippingMethod",
    "ShippingRate",
    "RateType",
    "Shipment",
    "ShipmentStatus",
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "ShippingAddress",
]
