"""
Shipping Module

- Collaborator contracts for products, carts and orders
- BaseCarrier interface for carrier gateway implementations
- CarrierFactory for dependency injection, honoring ENABLED_CARRIERS
"""
from shipping_engine.modules.shipping.carriers import CarrierFactory, get_carrier
from shipping_engine.modules.shipping.carriers.base import BaseCarrier, CarrierCode

__all__ = [
    "CarrierFactory",
    "get_carrier",
    "BaseCarrier",
    "CarrierCode",
]
