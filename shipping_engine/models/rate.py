"""
ShippingRate model.

A rate belongs to exactly one (method, zone) pair and covers a band of
weight in grams and order total in minor units. Bands are inclusive at the
lower bound and exclusive at the upper bound; a NULL upper bound means
unbounded.
"""
from datetime import datetime, timezone
from typing import Optional
import enum

from sqlalchemy import (
    Column, Integer, Boolean, DateTime, Float,
    ForeignKey, Index, Enum as SQLEnum
)
from sqlalchemy.orm import relationship

from shipping_engine.core.database import Base


class RateType(str, enum.Enum):
    FLAT = "flat"  # rate is a fixed amount in minor units
    PERCENTAGE = "percentage"  # percent is a fraction of the order total


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite round trips) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ShippingRate(Base):
    __tablename__ = "shipping_rates"
    __table_args__ = (
        Index("ix_shipping_rates_method_zone", "method_id", "zone_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    method_id = Column(Integer, ForeignKey("shipping_methods.id", ondelete="CASCADE"), nullable=False)
    zone_id = Column(Integer, ForeignKey("shipping_zones.id", ondelete="CASCADE"), nullable=False)

    rate_type = Column(SQLEnum(RateType), default=RateType.FLAT, nullable=False)
    rate = Column(Integer, default=0, nullable=False)  # minor units, flat rates
    percent = Column(Float, nullable=True)  # 0.05 = 5%, percentage rates

    # [min, max) bands; max NULL = unbounded
    min_weight_grams = Column(Integer, default=0, nullable=False)
    max_weight_grams = Column(Integer, nullable=True)
    min_total = Column(Integer, default=0, nullable=False)
    max_total = Column(Integer, nullable=True)

    free_threshold = Column(Integer, nullable=True)  # order total at/above which shipping is free

    is_active = Column(Boolean, default=True, nullable=False)

    # Effective window [starts_at, ends_at); NULL = open ended
    starts_at = Column(DateTime(timezone=True), nullable=True)
    ends_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    method = relationship("ShippingMethod", back_populates="rates")
    zone = relationship("ShippingZone", back_populates="rates")

    def covers_weight(self, weight_grams: int) -> bool:
        if weight_grams < self.min_weight_grams:
            return False
        return self.max_weight_grams is None or weight_grams < self.max_weight_grams

    def covers_total(self, total: int) -> bool:
        if total < self.min_total:
            return False
        return self.max_total is None or total < self.max_total

    def is_effective_at(self, when: datetime) -> bool:
        when = as_utc(when)
        starts_at, ends_at = as_utc(self.starts_at), as_utc(self.ends_at)
        if starts_at is not None and when < starts_at:
            return False
        return ends_at is None or when < ends_at

    def __repr__(self):
        return (
            f"<ShippingRate(id={self.id}, method={self.method_id}, zone={self.zone_id}, "
            f"weight=[{self.min_weight_grams},{self.max_weight_grams}), "
            f"total=[{self.min_total},{self.max_total}))>"
        )
