"""
Shipping Engine Exception Hierarchy

Structured exception classes for rate resolution, carrier integration and
fulfillment. All exceptions carry code, message and details for audit trail
and debugging, plus an explicit retryable flag that the orchestrator and
background jobs read instead of inspecting message text.

Exception Hierarchy:
    ShippingEngineError
    ├── ShippingError
    │   ├── ShippingValidationError
    │   ├── ShippingConfigurationError
    │   ├── NoShippingRateError
    │   ├── ShippingLabelError
    │   └── ShippingConflictError
    │       ├── RateConflictError
    │       ├── MethodAlreadyAttachedError
    │       ├── ShipmentNotCancellableError
    │       ├── InvalidShipmentTransitionError
    │       └── OrderNotShippableError
    └── CarrierError
        ├── CarrierUnavailableError
        ├── CarrierRequestError
        └── CarrierConfigurationError
"""
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ShippingEngineError(Exception):
    """
    Base exception for all shipping engine errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
        retryable: Whether a later identical attempt may succeed
    """

    default_code: str = "SHIPPING_ENGINE_ERROR"
    default_severity: str = "P2"
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
        retryable: Optional[bool] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        self.retryable = self.default_retryable if retryable is None else retryable
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# SHIPPING DOMAIN ERRORS
# =============================================================================

class ShippingError(ShippingEngineError):
    """Base exception for shipping domain errors."""
    default_code = "SHIPPING_ERROR"
    default_severity = "P1"


class ShippingValidationError(ShippingError):
    """Bad input: malformed band, missing address or method on an order."""
    default_code = "SHIPPING_VALIDATION_FAILED"
    default_severity = "P2"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        super().__init__(message, details=details, **kwargs)


class ShippingConfigurationError(ShippingError):
    """Missing credentials, unknown carrier or disabled integration."""
    default_code = "SHIPPING_CONFIGURATION_ERROR"
    default_severity = "P1"


class NoShippingRateError(ShippingError):
    """No rate (stored or carrier-quoted) matches at fulfillment time."""
    default_code = "NO_SHIPPING_RATE"
    default_severity = "P2"


class ShippingLabelError(ShippingError):
    """Failed to purchase a shipping label."""
    default_code = "SHIPPING_LABEL_FAILED"

    def __init__(
        self,
        message: str,
        shipment_id: Optional[int] = None,
        cause: Optional[ShippingEngineError] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details["shipment_id"] = shipment_id
        if cause is not None:
            details["cause"] = cause.to_dict()
            kwargs.setdefault("retryable", cause.retryable)
        super().__init__(message, details=details, **kwargs)
        self.cause = cause


class ShippingConflictError(ShippingError):
    """Request conflicts with existing state; never auto-resolved."""
    default_code = "SHIPPING_CONFLICT"
    default_severity = "P2"


class RateConflictError(ShippingConflictError):
    """Rate bands overlap within one (method, zone) pair."""
    default_code = "RATE_BAND_OVERLAP"

    def __init__(
        self,
        message: str,
        conflicts: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details["conflicts"] = conflicts or []
        super().__init__(message, details=details, **kwargs)

    @property
    def conflicts(self) -> List[Dict[str, Any]]:
        return self.details["conflicts"]


class MethodAlreadyAttachedError(ShippingConflictError):
    """Method is already attached to the zone."""
    default_code = "METHOD_ALREADY_ATTACHED"


class ShipmentNotCancellableError(ShippingConflictError):
    """Shipment has already shipped (or reached a terminal state)."""
    default_code = "SHIPMENT_NOT_CANCELLABLE"


class InvalidShipmentTransitionError(ShippingConflictError):
    """Requested status change is not allowed by the shipment state machine."""
    default_code = "INVALID_SHIPMENT_TRANSITION"

    def __init__(
        self,
        message: str,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "from_status": from_status,
            "to_status": to_status,
        })
        super().__init__(message, details=details, **kwargs)


class OrderNotShippableError(ShippingConflictError):
    """Order is already fully shipped or cancelled."""
    default_code = "ORDER_NOT_SHIPPABLE"


# =============================================================================
# CARRIER GATEWAY ERRORS
# =============================================================================

class CarrierError(ShippingEngineError):
    """Base exception for carrier gateway failures."""
    default_code = "CARRIER_ERROR"
    default_severity = "P1"

    def __init__(
        self,
        message: str,
        carrier: Optional[str] = None,
        operation: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "carrier": carrier,
            "operation": operation,
            "status_code": status_code,
        })
        super().__init__(message, details=details, **kwargs)
        self.carrier = carrier
        self.operation = operation
        self.status_code = status_code


class CarrierUnavailableError(CarrierError):
    """Timeouts, network errors, 5xx and 429 responses."""
    default_code = "CARRIER_UNAVAILABLE"
    default_retryable = True


class CarrierRequestError(CarrierError):
    """Carrier rejected the request."""
    default_code = "CARRIER_REQUEST_REJECTED"
    default_severity = "P2"


class CarrierConfigurationError(CarrierError):
    """Missing or invalid carrier credentials."""
    default_code = "CARRIER_CONFIGURATION_ERROR"
    default_severity = "P0"


def carrier_error_for_status(status_code: int) -> type:
    """Classify an HTTP status from the carrier into an error class."""
    if status_code in (401, 403):
        return CarrierConfigurationError
    if status_code == 429 or status_code >= 500:
        return CarrierUnavailableError
    return CarrierRequestError
