"""
Base Carrier Interface

All carrier gateways implement this interface. The rest of the engine only
ever sees the dataclasses below; raw carrier JSON is converted inside each
adapter. Each gateway provides:
  - Address validation
  - Live rate quotes
  - Shipment creation and label purchase
  - Tracking lookups and webhook parsing
  - Status mapping

Gateways never retry. Transport and configuration failures surface as
CarrierError subclasses with an explicit retryable flag.
"""
import enum
import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from shipping_engine.core.config import Settings
from shipping_engine.models.address import ShippingAddress


class CarrierCode(str, enum.Enum):
    SHIPPO = "SHIPPO"


class TrackingStatus(str, enum.Enum):
    """Internal tracking vocabulary every carrier status maps onto."""
    PENDING = "pending"
    PROCESSING = "processing"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    RETURNED = "returned"
    FAILED = "failed"
    EXCEPTION = "exception"
    UNKNOWN = "unknown"


# =============================================================================
# Carrier-Agnostic Data Classes
# =============================================================================

@dataclass
class Parcel:
    """Parcel dimensions (cm) and weight (kg)."""
    length: float
    width: float
    height: float
    weight: float
    distance_unit: str = "cm"
    mass_unit: str = "kg"


@dataclass
class AddressValidationResult:
    """Result of address validation. Invalid is a result, not an error."""
    is_valid: bool
    original: ShippingAddress
    normalized: Optional[ShippingAddress] = None
    messages: List[str] = field(default_factory=list)
    external_id: Optional[str] = None


@dataclass
class CarrierRate:
    """A live, carrier-quoted rate. amount is integer minor units."""
    rate_id: str
    carrier: str
    service_name: str
    amount: int
    currency: str
    service_token: Optional[str] = None
    estimated_days: Optional[int] = None
    duration_terms: Optional[str] = None
    carrier_account: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rate_id": self.rate_id,
            "carrier": self.carrier,
            "service_name": self.service_name,
            "service_token": self.service_token,
            "amount": self.amount,
            "currency": self.currency,
            "estimated_days": self.estimated_days,
            "duration_terms": self.duration_terms,
        }


@dataclass
class LabelPurchase:
    """Result of creating a shipment and buying its label."""
    shipment_id: str
    transaction_id: str
    tracking_number: Optional[str]
    tracking_url: Optional[str]
    label_url: Optional[str]
    rate: CarrierRate
    eta: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TrackingEvent:
    """A single tracking event."""
    status: TrackingStatus
    carrier_status: str
    description: Optional[str] = None
    location: Optional[str] = None
    occurred_at: Optional[datetime] = None

    @property
    def fingerprint(self) -> str:
        """Stable identity so re-applied snapshots do not duplicate history."""
        occurred = self.occurred_at.isoformat() if self.occurred_at else ""
        key = "|".join([self.carrier_status or "", occurred, self.description or "", self.location or ""])
        return hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.fingerprint,
            "status": self.status.value,
            "carrier_status": self.carrier_status,
            "description": self.description,
            "location": self.location,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
        }


@dataclass
class TrackingSnapshot:
    """Full tracking state as reported by the carrier."""
    tracking_number: str
    carrier: str
    status: TrackingStatus
    carrier_status: str
    status_details: Optional[str] = None
    history: List[TrackingEvent] = field(default_factory=list)
    eta: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


# =============================================================================
# Base Carrier Interface
# =============================================================================

class BaseCarrier(ABC):
    """
    Abstract base class for all carrier gateways.

    Subclasses set STATUS_MAP (carrier status -> TrackingStatus) and
    implement the API calls. Unknown carrier statuses map to UNKNOWN.
    """

    STATUS_MAP: Mapping[str, TrackingStatus] = {}

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    @abstractmethod
    def carrier_code(self) -> CarrierCode:
        """Return the carrier code enum value."""
        pass

    @property
    @abstractmethod
    def carrier_name(self) -> str:
        """Return the human-readable carrier name."""
        pass

    @abstractmethod
    async def validate_address(self, address: ShippingAddress) -> AddressValidationResult:
        """Validate an address. Never raises for an invalid address."""
        pass

    @abstractmethod
    async def get_rates(
        self,
        address_from: ShippingAddress,
        address_to: ShippingAddress,
        parcels: List[Parcel],
    ) -> List[CarrierRate]:
        """Get live rates for the parcels."""
        pass

    @abstractmethod
    async def create_shipment(
        self,
        address_from: ShippingAddress,
        address_to: ShippingAddress,
        parcels: List[Parcel],
        carrier: Optional[str] = None,
        service_code: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        allow_fallback: bool = True,
    ) -> LabelPurchase:
        """
        Create a shipment, select a rate and purchase its label.

        Rate selection: exact carrier + service match first; otherwise the
        first quoted rate when allow_fallback is set. Raises
        NoShippingRateError when nothing acceptable was quoted.
        """
        pass

    @abstractmethod
    async def get_tracking_info(self, tracking_number: str, carrier: Optional[str] = None) -> TrackingSnapshot:
        """Get tracking status and history."""
        pass

    @abstractmethod
    async def cancel_shipment(self, external_id: str) -> bool:
        """Best-effort cancel/refund of a purchased label."""
        pass

    @abstractmethod
    def parse_tracking_webhook(self, payload: Dict[str, Any]) -> TrackingSnapshot:
        """Convert an inbound tracking webhook body into a snapshot."""
        pass

    @abstractmethod
    def verify_webhook_token(self, token: Optional[str]) -> bool:
        """Check the shared secret sent with inbound webhooks."""
        pass

    @abstractmethod
    def get_tracking_url(self, carrier: Optional[str], tracking_number: str) -> Optional[str]:
        """Public tracking page for a tracking number."""
        pass

    def map_status(self, carrier_status: Optional[str]) -> TrackingStatus:
        """Map a carrier status to TrackingStatus via STATUS_MAP."""
        if not carrier_status:
            return TrackingStatus.UNKNOWN
        return self.STATUS_MAP.get(str(carrier_status).strip().upper(), TrackingStatus.UNKNOWN)

    async def close(self) -> None:
        """Release HTTP resources."""
        return None
