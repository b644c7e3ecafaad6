"""
Collaborator contracts.

Products, carts and orders are owned by other services. The engine reads a
handful of fields through these protocols and never persists them.
"""
import enum
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from shipping_engine.models.address import ShippingAddress


class FulfillmentStatus(str, enum.Enum):
    UNFULFILLED = "unfulfilled"
    PARTIALLY_FULFILLED = "partially_fulfilled"
    FULFILLED = "fulfilled"


@runtime_checkable
class ShippableProduct(Protocol):
    """
    Product fields the calculator reads.

    weight is kilograms per unit, dimensions are centimetres, price is
    minor units. shipping_class is a ShippingClass value or None.
    """
    id: Any
    name: str
    price: int
    weight: Optional[float]
    length: Optional[float]
    width: Optional[float]
    height: Optional[float]
    shipping_class: Optional[str]

    def requires_shipping(self) -> bool:
        ...


class LineItem(Protocol):
    """
    A cart or order line.

    unit_price is the price charged on the line; when None the product's
    current price is used (carts).
    """
    product: ShippableProduct
    quantity: int
    unit_price: Optional[int]


class Cart(Protocol):
    items: Sequence[LineItem]


class Order(Protocol):
    id: int
    items: Sequence[LineItem]
    shipping_address: Optional[ShippingAddress]
    shipping_method_id: Optional[int]
    fulfillment_status: str
    # Vendor dispatch address; None ships from the platform default
    vendor_address: Optional[ShippingAddress]

    def can_ship(self) -> bool:
        """False once the order is fully shipped or cancelled."""
        ...


class OrderRepository(Protocol):
    async def get_order(self, order_id: int) -> Optional[Order]:
        ...

    async def set_fulfillment_status(self, order: Order, status: FulfillmentStatus) -> None:
        ...
