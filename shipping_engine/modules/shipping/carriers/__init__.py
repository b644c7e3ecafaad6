"""
Carrier Registry and Factory

- CarrierFactory creates carrier instances based on CarrierCode
- Only returns carriers listed in Settings.ENABLED_CARRIERS
- Carrier implementations register themselves with @register_carrier
"""
from typing import Dict, List, Optional, Type
import logging

from shipping_engine.core.config import Settings, get_settings
from shipping_engine.core.exceptions import ShippingConfigurationError
from shipping_engine.modules.shipping.carriers.base import BaseCarrier, CarrierCode

logger = logging.getLogger(__name__)

# Registry of carrier implementations
_CARRIER_REGISTRY: Dict[CarrierCode, Type[BaseCarrier]] = {}


def register_carrier(carrier_code: CarrierCode):
    """
    Decorator to register a carrier implementation.

    Usage:
        @register_carrier(CarrierCode.SHIPPO)
        class ShippoCarrier(BaseCarrier):
            ...
    """
    def decorator(cls: Type[BaseCarrier]):
        _CARRIER_REGISTRY[carrier_code] = cls
        logger.debug(f"Registered carrier: {carrier_code.value} -> {cls.__name__}")
        return cls
    return decorator


class CarrierFactory:
    """
    Factory for creating carrier instances.

    Checks ENABLED_CARRIERS before returning carriers.
    Returns None for disabled carriers.
    """

    @classmethod
    def is_enabled(cls, carrier_code: CarrierCode, settings: Settings) -> bool:
        return carrier_code.value in settings.ENABLED_CARRIERS

    @classmethod
    def get_carrier(
        cls,
        carrier_code: CarrierCode,
        settings: Optional[Settings] = None,
        **kwargs,
    ) -> Optional[BaseCarrier]:
        """
        Get a carrier instance if enabled.

        Args:
            carrier_code: The carrier to get
            settings: Settings with credentials; defaults to get_settings()
            **kwargs: Passed to the carrier constructor (e.g. client=)

        Returns:
            BaseCarrier instance or None if disabled/not found
        """
        settings = settings or get_settings()

        if not cls.is_enabled(carrier_code, settings):
            logger.debug(f"Carrier {carrier_code.value} is disabled")
            return None

        carrier_cls = _CARRIER_REGISTRY.get(carrier_code)
        if not carrier_cls:
            logger.warning(f"No implementation registered for carrier: {carrier_code.value}")
            return None

        return carrier_cls(settings, **kwargs)

    @classmethod
    def require_carrier(
        cls,
        carrier_code: CarrierCode,
        settings: Optional[Settings] = None,
        **kwargs,
    ) -> BaseCarrier:
        """Like get_carrier, but a missing carrier is a configuration error."""
        carrier = cls.get_carrier(carrier_code, settings, **kwargs)
        if carrier is None:
            raise ShippingConfigurationError(
                f"Carrier {carrier_code.value} is not enabled or not registered",
                details={"carrier": carrier_code.value},
            )
        return carrier

    @classmethod
    def get_enabled_carriers(cls, settings: Optional[Settings] = None) -> List[BaseCarrier]:
        """Get all enabled carrier instances."""
        settings = settings or get_settings()
        carriers = []

        for value in settings.ENABLED_CARRIERS:
            try:
                code = CarrierCode(value)
            except ValueError:
                logger.warning(f"Unknown carrier in ENABLED_CARRIERS: {value}")
                continue
            carrier = cls.get_carrier(code, settings)
            if carrier:
                carriers.append(carrier)

        return carriers

    @classmethod
    def get_registered_carriers(cls) -> List[CarrierCode]:
        """Get list of all registered carrier codes."""
        return list(_CARRIER_REGISTRY.keys())


def get_carrier(
    carrier_code: CarrierCode,
    settings: Optional[Settings] = None,
    **kwargs,
) -> Optional[BaseCarrier]:
    """
    Convenience function to get a carrier.

    Equivalent to CarrierFactory.get_carrier().
    """
    return CarrierFactory.get_carrier(carrier_code, settings, **kwargs)


# Import carriers to trigger registration
# These imports must be at the bottom to avoid circular imports
from shipping_engine.modules.shipping.carriers.shippo import ShippoCarrier  # noqa: E402, F401
