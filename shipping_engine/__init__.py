"""Shipping rate resolution and carrier fulfillment engine."""

__version__ = "1.0.0"
