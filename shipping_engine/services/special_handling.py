"""
Special handling rules.

Which methods a shipment's shipping classes rule out, and which notices a
customer sees. Both are tables: adding a class or a rule is a table edit,
the calculator's control flow does not change.

A method is excluded when
- any class present has a rule whose keywords appear in the method name
  or its declared service tier (metadata["service_tier"]), or
- the method declares supported_shipping_classes and a class present is
  not in that list.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from shipping_engine.models.method import ShippingMethod
from shipping_engine.models.shipping_class import ShippingClass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExclusionRule:
    shipping_class: ShippingClass
    excluded_keywords: Tuple[str, ...]
    reason: str


EXCLUSION_RULES: Dict[ShippingClass, Tuple[ExclusionRule, ...]] = {
    ShippingClass.DANGEROUS: (
        ExclusionRule(
            ShippingClass.DANGEROUS,
            ("overnight", "express"),
            "Dangerous goods cannot travel on expedited services",
        ),
    ),
    ShippingClass.REFRIGERATED: (
        ExclusionRule(
            ShippingClass.REFRIGERATED,
            ("standard",),
            "Refrigerated goods cannot travel on standard ground services",
        ),
    ),
}

RESTRICTION_NOTICES: Dict[ShippingClass, str] = {
    ShippingClass.DANGEROUS: "Contains dangerous goods - special handling required",
    ShippingClass.REFRIGERATED: "Requires refrigeration during transport",
    ShippingClass.FRAGILE: "Fragile items - careful handling required",
    ShippingClass.OVERSIZED: "Oversized items - may require special delivery",
    ShippingClass.HEAVY: "Heavy items - may require additional handling fees",
}

# Stable notice order regardless of set iteration order
_CLASS_ORDER = list(ShippingClass)


def _method_text(method: ShippingMethod) -> str:
    tier = (method.method_metadata or {}).get("service_tier") or ""
    return f"{method.name or ''} {tier}".lower()


def exclusion_reason(method: ShippingMethod, shipping_classes: Iterable[ShippingClass]) -> Optional[str]:
    """Why the method cannot carry these classes, or None if it can."""
    classes: Set[ShippingClass] = set(shipping_classes)
    text = _method_text(method)

    for shipping_class in classes:
        for rule in EXCLUSION_RULES.get(shipping_class, ()):
            if any(keyword in text for keyword in rule.excluded_keywords):
                return rule.reason

    for shipping_class in classes:
        if not method.supports_shipping_class(shipping_class):
            return f"Method does not support {shipping_class.value} items"

    return None


def is_method_allowed(method: ShippingMethod, shipping_classes: Iterable[ShippingClass]) -> bool:
    return exclusion_reason(method, shipping_classes) is None


def get_shipping_restrictions(shipping_classes: Iterable[ShippingClass]) -> List[str]:
    """Customer-facing notices for the classes present, deduplicated."""
    present = set(shipping_classes)
    notices = []
    for shipping_class in _CLASS_ORDER:
        notice = RESTRICTION_NOTICES.get(shipping_class)
        if shipping_class in present and notice and notice not in notices:
            notices.append(notice)
    return notices
