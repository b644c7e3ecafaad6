"""
Shipment Notification Hooks

Defines the interface the fulfillment orchestrator calls when a shipment
changes. Channels (email, SMS, push) and templates live elsewhere; the
default notifier only logs.
"""
import enum
import logging
from typing import Any, Dict, Optional, Protocol

from shipping_engine.models.shipment import Shipment

logger = logging.getLogger(__name__)


class ShipmentEvent(str, enum.Enum):
    PROCESSING = "processing"
    LABEL_PURCHASED = "label_purchased"
    LABEL_FAILED = "label_failed"
    SHIPPED = "shipped"
    TRACKING_UPDATED = "tracking_updated"
    DELIVERED = "delivered"
    DELAYED = "delayed"
    ISSUE = "issue"
    CANCELLED = "cancelled"


class ShipmentNotifier(Protocol):
    """Protocol for shipment notification dispatch."""

    async def notify(
        self,
        event: ShipmentEvent,
        shipment: Shipment,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Dispatch a shipment event."""
        ...


class LoggingNotifier:
    """Default notifier for development/testing - logs instead of sending."""

    async def notify(
        self,
        event: ShipmentEvent,
        shipment: Shipment,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.info(
            f"[SHIPMENT EVENT] {event.value} shipment={shipment.id} order={shipment.order_id} "
            f"status={shipment.status.value} tracking={shipment.tracking_number or '-'}"
            f"{' context=' + str(sorted(context)) if context else ''}"
        )


class ShipmentNotificationService:
    """
    Notifier wrapper.

    Dispatch failures are logged and swallowed: a committed shipment
    transition is never undone because a notification could not be sent.
    """

    def __init__(self, notifier: Optional[ShipmentNotifier] = None):
        self.notifier = notifier or LoggingNotifier()

    async def send(
        self,
        event: ShipmentEvent,
        shipment: Shipment,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        try:
            await self.notifier.notify(event, shipment, context or {})
            return True
        except Exception as e:
            logger.error(f"Failed to send {event.value} notification for shipment {shipment.id}: {e}")
            return False
