"""
Typed success/failure wrapper for non-critical lookups.

Checkout pages must keep working when the carrier is down, but the caller
still needs to see that the lookup failed. Result makes that explicit
instead of returning an empty list on exception.
"""
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from shipping_engine.core.exceptions import ShippingEngineError

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True)
class Result(Generic[T]):
    success: bool
    value: Optional[T] = None
    error: Optional[ShippingEngineError] = None

    @classmethod
    def ok(cls, value: T) -> "Result[T]":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: ShippingEngineError) -> "Result[T]":
        return cls(success=False, error=error)

    def unwrap(self) -> T:
        """Return the value or raise the captured error."""
        if not self.success:
            raise self.error
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value if self.success else default

    def map(self, fn: Callable[[T], U]) -> "Result[U]":
        if not self.success:
            return Result(success=False, error=self.error)
        return Result.ok(fn(self.value))

    def __bool__(self) -> bool:
        return self.success
