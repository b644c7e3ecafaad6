"""
Shipping method administration.

Methods are soft-disabled, never deleted: historical orders keep pointing
at them.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_engine.core.exceptions import ShippingValidationError
from shipping_engine.models.method import ShippingMethod
from shipping_engine.models.shipping_class import ShippingClass

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {
    "name",
    "code",
    "description",
    "carrier",
    "service_code",
    "is_active",
    "estimated_days_min",
    "estimated_days_max",
    "method_metadata",
    "display_order",
}


def _validate_method_fields(fields: Dict[str, Any]) -> None:
    low, high = fields.get("estimated_days_min"), fields.get("estimated_days_max")
    for name, value in (("estimated_days_min", low), ("estimated_days_max", high)):
        if value is not None and value < 0:
            raise ShippingValidationError(f"{name} cannot be negative", field=name)
    if low is not None and high is not None and high < low:
        raise ShippingValidationError(
            "estimated_days_max must be greater than or equal to estimated_days_min",
            field="estimated_days_max",
        )

    metadata = fields.get("method_metadata") or {}
    classes = metadata.get("supported_shipping_classes")
    if classes is not None:
        unknown = [c for c in classes if ShippingClass.parse(c) is None]
        if unknown:
            raise ShippingValidationError(
                f"Unknown shipping classes: {unknown}", field="supported_shipping_classes"
            )


class MethodAdmin:
    """Operator-side method management. Flushes; the caller commits."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_method(self, method_id: int) -> Optional[ShippingMethod]:
        return await self.db.get(ShippingMethod, method_id)

    async def list_methods(self, include_inactive: bool = False) -> List[ShippingMethod]:
        query = select(ShippingMethod).order_by(ShippingMethod.display_order, ShippingMethod.id)
        if not include_inactive:
            query = query.where(ShippingMethod.is_active == True)  # noqa: E712
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def create_method(self, name: str, **fields: Any) -> ShippingMethod:
        if not name or not name.strip():
            raise ShippingValidationError("Method name is required", field="name")
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ShippingValidationError(f"Unknown method fields: {sorted(unknown)}")
        _validate_method_fields(fields)

        method = ShippingMethod(name=name.strip(), **fields)
        if method.method_metadata is None:
            method.method_metadata = {}
        self.db.add(method)
        await self.db.flush()
        logger.info(f"Created shipping method {method.id} ({method.name}, carrier={method.carrier})")
        return method

    async def update_method(self, method: ShippingMethod, **changes: Any) -> ShippingMethod:
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ShippingValidationError(f"Unknown method fields: {sorted(unknown)}")

        merged = {
            "estimated_days_min": method.estimated_days_min,
            "estimated_days_max": method.estimated_days_max,
            "method_metadata": method.method_metadata,
            **changes,
        }
        _validate_method_fields(merged)

        for key, value in changes.items():
            setattr(method, key, value)
        await self.db.flush()
        logger.info(f"Updated shipping method {method.id}: {sorted(changes)}")
        return method

    async def activate_method(self, method: ShippingMethod) -> ShippingMethod:
        return await self.update_method(method, is_active=True)

    async def deactivate_method(self, method: ShippingMethod) -> ShippingMethod:
        """Soft-disable; the row stays for historical orders."""
        return await self.update_method(method, is_active=False)

    async def reorder_methods(self, method_ids: Sequence[int]) -> List[ShippingMethod]:
        if len(set(method_ids)) != len(method_ids):
            raise ShippingValidationError("Duplicate method ids in reorder request", field="method_ids")

        result = await self.db.execute(select(ShippingMethod).where(ShippingMethod.id.in_(method_ids)))
        methods = {m.id: m for m in result.scalars().all()}
        missing = [mid for mid in method_ids if mid not in methods]
        if missing:
            raise ShippingValidationError(f"Unknown method ids: {missing}", field="method_ids")

        for position, method_id in enumerate(method_ids):
            methods[method_id].display_order = position
        await self.db.flush()
        return [methods[mid] for mid in method_ids]
