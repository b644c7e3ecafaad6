"""
Shipment model.

Tracks one order's shipment from fulfillment start through delivery,
cancellation or failure. Status changes go through ALLOWED_TRANSITIONS;
the orchestrator is the only writer.
"""
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List
import enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Text, JSON,
    ForeignKey, Index, Enum as SQLEnum
)
from sqlalchemy.orm import relationship

from shipping_engine.core.database import Base


class ShipmentStatus(str, enum.Enum):
    """Shipment lifecycle status"""
    PROCESSING = "processing"  # Fulfillment started, no label yet
    READY_TO_SHIP = "ready_to_ship"  # Label purchased
    SHIPPED = "shipped"  # Handed to carrier
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    RETURNED = "returned"
    FAILED = "failed"  # Label purchase failed or carrier reported failure
    CANCELLED = "cancelled"


TERMINAL_STATUSES: FrozenSet[ShipmentStatus] = frozenset({
    ShipmentStatus.DELIVERED,
    ShipmentStatus.RETURNED,
    ShipmentStatus.CANCELLED,
})

# Statuses at which the parcel has left (or is leaving) our hands
SHIPPED_STATUSES: FrozenSet[ShipmentStatus] = frozenset({
    ShipmentStatus.SHIPPED,
    ShipmentStatus.IN_TRANSIT,
    ShipmentStatus.DELIVERED,
    ShipmentStatus.RETURNED,
})

# Label-stage statuses; unreachable once the parcel has been handed over
PRE_SHIPMENT_STATUSES: FrozenSet[ShipmentStatus] = frozenset({
    ShipmentStatus.PROCESSING,
    ShipmentStatus.READY_TO_SHIP,
})

ALLOWED_TRANSITIONS: Dict[ShipmentStatus, FrozenSet[ShipmentStatus]] = {
    ShipmentStatus.PROCESSING: frozenset({
        ShipmentStatus.READY_TO_SHIP,
        ShipmentStatus.SHIPPED,
        ShipmentStatus.FAILED,
        ShipmentStatus.CANCELLED,
    }),
    ShipmentStatus.READY_TO_SHIP: frozenset({
        ShipmentStatus.SHIPPED,
        ShipmentStatus.IN_TRANSIT,
        ShipmentStatus.DELIVERED,
        ShipmentStatus.RETURNED,
        ShipmentStatus.FAILED,
        ShipmentStatus.CANCELLED,
    }),
    ShipmentStatus.SHIPPED: frozenset({
        ShipmentStatus.IN_TRANSIT,
        ShipmentStatus.DELIVERED,
        ShipmentStatus.RETURNED,
        ShipmentStatus.FAILED,
    }),
    ShipmentStatus.IN_TRANSIT: frozenset({
        ShipmentStatus.DELIVERED,
        ShipmentStatus.RETURNED,
        ShipmentStatus.FAILED,
    }),
    # A failed shipment can be retried (label, only before hand-off) or recover (carrier resumes)
    ShipmentStatus.FAILED: frozenset({
        ShipmentStatus.PROCESSING,
        ShipmentStatus.READY_TO_SHIP,
        ShipmentStatus.SHIPPED,
        ShipmentStatus.IN_TRANSIT,
        ShipmentStatus.DELIVERED,
        ShipmentStatus.RETURNED,
        ShipmentStatus.CANCELLED,
    }),
    ShipmentStatus.DELIVERED: frozenset(),
    ShipmentStatus.RETURNED: frozenset(),
    ShipmentStatus.CANCELLED: frozenset(),
}


class Shipment(Base):
    """
    A shipment for one order.

    carrier_data holds the carrier-opaque payload: raw purchase response,
    tracking_history, last_error, delay and issue reports. JSON columns are
    not mutation-tracked, so writers must assign a new dict.
    """
    __tablename__ = "shipments"
    __table_args__ = (
        Index("ix_shipments_order_id", "order_id"),
        Index("ix_shipments_tracking_number", "tracking_number"),
        Index("ix_shipments_status", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Orders live in another service; no FK
    order_id = Column(Integer, nullable=False)
    shipping_method_id = Column(Integer, ForeignKey("shipping_methods.id"), nullable=True)

    status = Column(
        SQLEnum(ShipmentStatus),
        default=ShipmentStatus.PROCESSING,
        nullable=False
    )

    carrier = Column(String(50), nullable=True)
    service_code = Column(String(100), nullable=True)

    tracking_number = Column(String(100), nullable=True)
    tracking_url = Column(String(500), nullable=True)
    label_url = Column(String(500), nullable=True)
    external_shipment_id = Column(String(100), nullable=True)  # carrier shipment id
    external_transaction_id = Column(String(100), nullable=True)  # label purchase id

    shipping_cost = Column(Integer, nullable=True)  # what the label cost us, minor units
    currency = Column(String(3), nullable=True)

    carrier_data = Column(JSON, default=dict)
    notes = Column(Text, nullable=True)
    cancel_reason = Column(String(255), nullable=True)

    estimated_delivery = Column(DateTime(timezone=True), nullable=True)
    last_tracking_update = Column(DateTime(timezone=True), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    shipping_method = relationship("ShippingMethod", lazy="joined")

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_shipped(self) -> bool:
        """Check if package has left origin."""
        return self.status in SHIPPED_STATUSES or self.shipped_at is not None

    @property
    def is_delivered(self) -> bool:
        return self.status == ShipmentStatus.DELIVERED

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """Check if shipment is still active (not terminal)."""
        return not self.is_terminal

    @property
    def has_label(self) -> bool:
        return bool(self.label_url or self.external_transaction_id)

    @property
    def can_cancel(self) -> bool:
        return not self.is_shipped and not self.is_terminal

    def can_transition_to(self, status: ShipmentStatus) -> bool:
        if self.shipped_at is not None and status in PRE_SHIPMENT_STATUSES:
            return False
        return status in ALLOWED_TRANSITIONS.get(self.status, frozenset())

    @property
    def tracking_history(self) -> List[Dict[str, Any]]:
        return list((self.carrier_data or {}).get("tracking_history", []))

    @property
    def last_error(self) -> Dict[str, Any]:
        return dict((self.carrier_data or {}).get("last_error") or {})

    def __repr__(self):
        return f"<Shipment(id={self.id}, order={self.order_id}, tracking={self.tracking_number}, status={self.status})>"
