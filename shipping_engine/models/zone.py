"""
ShippingZone and zone/method attachment models.

Zones group destinations by country (optionally narrowed by region and
postcode patterns). Zones may overlap; the first active zone by
display_order wins, which lets operators define override zones.
"""
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, JSON,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from shipping_engine.core.database import Base


class ShippingZone(Base):
    """
    A named group of destinations.

    countries: ISO-3166 alpha-2 codes, "*" matches any country
    regions: optional subdivision codes; when set the address region must match
    postcodes: optional patterns with "*" wildcards ("SW1*", "BT*")
    excluded_postcodes: patterns that remove destinations from the zone
    """
    __tablename__ = "shipping_zones"
    __table_args__ = (
        Index("ix_shipping_zones_active_order", "is_active", "display_order"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    countries = Column(JSON, nullable=False, default=list)
    regions = Column(JSON, nullable=True)
    postcodes = Column(JSON, nullable=True)
    excluded_postcodes = Column(JSON, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    display_order = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    method_links = relationship(
        "ShippingZoneMethod",
        back_populates="zone",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    rates = relationship("ShippingRate", back_populates="zone")

    def __repr__(self):
        return f"<ShippingZone(id={self.id}, name={self.name!r}, order={self.display_order})>"


class ShippingZoneMethod(Base):
    """Attachment of a method to a zone, with per-zone ordering and toggle."""
    __tablename__ = "shipping_zone_methods"
    __table_args__ = (
        UniqueConstraint("zone_id", "method_id", name="uq_shipping_zone_method"),
    )

    id = Column(Integer, primary_key=True, index=True)
    zone_id = Column(Integer, ForeignKey("shipping_zones.id", ondelete="CASCADE"), nullable=False)
    method_id = Column(Integer, ForeignKey("shipping_methods.id", ondelete="CASCADE"), nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    zone = relationship("ShippingZone", back_populates="method_links")
    method = relationship("ShippingMethod", back_populates="zone_links", lazy="joined")

    def __repr__(self):
        return f"<ShippingZoneMethod(zone={self.zone_id}, method={self.method_id}, active={self.is_active})>"
