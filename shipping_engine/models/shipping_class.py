"""
Shipping classes carried by products.

A product has zero or one class. Anything other than STANDARD drives
method exclusion rules and customer-facing restriction notices.
"""
import enum
from typing import Iterable, Optional, Set


class ShippingClass(str, enum.Enum):
    STANDARD = "standard"
    FRAGILE = "fragile"
    DANGEROUS = "dangerous"
    REFRIGERATED = "refrigerated"
    OVERSIZED = "oversized"
    HEAVY = "heavy"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["ShippingClass"]:
        """Parse a product's raw class value; unknown values are ignored."""
        if value is None:
            return None
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


def collect_shipping_classes(values: Iterable[Optional[str]]) -> Set[ShippingClass]:
    """Distinct classes from raw product values; missing or unknown is STANDARD."""
    return {ShippingClass.parse(value) or ShippingClass.STANDARD for value in values}
