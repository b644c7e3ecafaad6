"""
Tests for shipping class exclusion rules and restriction notices.
"""
from shipping_engine.models import ShippingMethod
from shipping_engine.models.shipping_class import ShippingClass, collect_shipping_classes
from shipping_engine.services.special_handling import (
    exclusion_reason,
    get_shipping_restrictions,
    is_method_allowed,
)


def _method(name, **metadata):
    return ShippingMethod(id=1, name=name, method_metadata=metadata)


class TestCollectClasses:

    def test_missing_and_unknown_are_standard(self):
        classes = collect_shipping_classes([None, "Fragile", "glitter"])
        assert classes == {ShippingClass.STANDARD, ShippingClass.FRAGILE}


class TestExclusion:
    """Test method exclusion by shipping class."""

    def test_dangerous_excludes_expedited(self):
        classes = {ShippingClass.DANGEROUS}
        assert not is_method_allowed(_method("Overnight Express"), classes)
        assert not is_method_allowed(_method("Express"), classes)
        assert is_method_allowed(_method("Standard"), classes)

    def test_refrigerated_excludes_standard(self):
        reason = exclusion_reason(_method("Standard Ground"), {ShippingClass.REFRIGERATED})
        assert reason == "Refrigerated goods cannot travel on standard ground services"
        assert is_method_allowed(_method("Express"), {ShippingClass.REFRIGERATED})

    def test_keyword_matching_ignores_case(self):
        assert not is_method_allowed(_method("EXPRESS Saver"), {ShippingClass.DANGEROUS})

    def test_service_tier_metadata_counts(self):
        method = _method("Priority", service_tier="express")
        assert not is_method_allowed(method, {ShippingClass.DANGEROUS})

    def test_declared_class_whitelist(self):
        method = _method("Courier", supported_shipping_classes=["standard", "fragile"])
        assert is_method_allowed(method, {ShippingClass.STANDARD, ShippingClass.FRAGILE})

        reason = exclusion_reason(method, {ShippingClass.STANDARD, ShippingClass.HEAVY})
        assert reason == "Method does not support heavy items"

    def test_standard_only_never_excluded(self):
        for name in ("Standard", "Express", "Overnight"):
            assert is_method_allowed(_method(name), {ShippingClass.STANDARD})


class TestRestrictions:
    """Test customer-facing restriction notices."""

    def test_notices_in_class_order(self):
        notices = get_shipping_restrictions([ShippingClass.HEAVY, ShippingClass.FRAGILE])
        assert notices == [
            "Fragile items - careful handling required",
            "Heavy items - may require additional handling fees",
        ]

    def test_duplicates_and_standard_produce_nothing_extra(self):
        notices = get_shipping_restrictions(
            [ShippingClass.STANDARD, ShippingClass.REFRIGERATED, ShippingClass.REFRIGERATED]
        )
        assert notices == ["Requires refrigeration during transport"]

    def test_no_classes(self):
        assert get_shipping_restrictions([]) == []
