"""
ShippingMethod model.

Methods are created and edited by operators and soft-disabled rather than
deleted once referenced by historical orders.
"""
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON
from sqlalchemy.orm import relationship

from shipping_engine.core.database import Base
from shipping_engine.models.shipping_class import ShippingClass


class ShippingMethod(Base):
    """
    A shipping service offered to customers.

    carrier: aggregator-side carrier name ("royal_mail", "dpd", "ups")
    service_code: carrier service level matched against quoted rates
    method_metadata: free-form operator data, e.g.
        {"supported_shipping_classes": ["standard", "fragile"]}
    """
    __tablename__ = "shipping_methods"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    code = Column(String(50), unique=True, nullable=True)
    description = Column(Text, nullable=True)

    carrier = Column(String(50), nullable=True)
    service_code = Column(String(100), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    estimated_days_min = Column(Integer, nullable=True)
    estimated_days_max = Column(Integer, nullable=True)

    # "metadata" is reserved on declarative classes
    method_metadata = Column("metadata", JSON, default=dict)

    display_order = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    zone_links = relationship("ShippingZoneMethod", back_populates="method")
    rates = relationship("ShippingRate", back_populates="method")

    @property
    def supported_shipping_classes(self) -> Optional[List[str]]:
        """Declared class whitelist, or None when the method accepts all."""
        classes = (self.method_metadata or {}).get("supported_shipping_classes")
        if classes is None:
            return None
        return [str(c).lower() for c in classes]

    def supports_shipping_class(self, shipping_class) -> bool:
        """Check the method's declared class whitelist (absent = all classes)."""
        supported = self.supported_shipping_classes
        if supported is None:
            return True
        if isinstance(shipping_class, ShippingClass):
            shipping_class = shipping_class.value
        return str(shipping_class).lower() in supported

    @property
    def estimated_delivery_label(self) -> Optional[str]:
        low, high = self.estimated_days_min, self.estimated_days_max
        if low is None and high is None:
            return None
        if low is None or high is None or low == high:
            days = low if low is not None else high
            return f"{days} day" if days == 1 else f"{days} days"
        return f"{low}-{high} days"

    def delivery_window(self, now: Optional[datetime] = None) -> Tuple[Optional[datetime], Optional[datetime]]:
        """Estimated earliest and latest delivery datetimes from now."""
        now = now or datetime.now(timezone.utc)
        earliest = now + timedelta(days=self.estimated_days_min) if self.estimated_days_min is not None else None
        latest = now + timedelta(days=self.estimated_days_max) if self.estimated_days_max is not None else earliest
        return earliest, latest

    def __repr__(self):
        return f"<ShippingMethod(id={self.id}, name={self.name!r}, carrier={self.carrier})>"
