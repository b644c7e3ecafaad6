"""
Fulfillment Orchestrator

Drives a shipment through its lifecycle:

    processing -> ready_to_ship -> shipped -> in_transit -> delivered
                  (failed, returned and cancelled as side branches)

Rules:
- every status change goes through ALLOWED_TRANSITIONS
- every transition is committed before the next carrier call, so a failure
  mid-flow leaves an already-persisted intermediate state (usually FAILED)
- operations on one shipment are serialized by ShipmentLockManager; the
  version column on Shipment catches writers in other processes
- tracking refreshes (poll or webhook) are idempotent: history entries are
  deduplicated by fingerprint and delivered_at is written once
- a shipment that has shipped can never be cancelled
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from shipping_engine.core.config import Settings, get_settings
from shipping_engine.core.exceptions import (
    CarrierError,
    InvalidShipmentTransitionError,
    NoShippingRateError,
    OrderNotShippableError,
    ShipmentNotCancellableError,
    ShippingConflictError,
    ShippingEngineError,
    ShippingLabelError,
    ShippingValidationError,
)
from shipping_engine.core.locks import ShipmentLockManager
from shipping_engine.core.result import Result
from shipping_engine.models.address import ShippingAddress
from shipping_engine.models.method import ShippingMethod
from shipping_engine.models.shipment import Shipment, ShipmentStatus
from shipping_engine.modules.shipping.carriers.base import (
    AddressValidationResult,
    BaseCarrier,
    CarrierRate,
    LabelPurchase,
    Parcel,
    TrackingSnapshot,
    TrackingStatus,
)
from shipping_engine.modules.shipping.contracts import FulfillmentStatus, Order, OrderRepository
from shipping_engine.services.notifications import (
    ShipmentEvent,
    ShipmentNotificationService,
    ShipmentNotifier,
)

logger = logging.getLogger(__name__)


# Carrier tracking status -> shipment status. None leaves the status alone.
TRACKING_TO_SHIPMENT_STATUS: Dict[TrackingStatus, Optional[ShipmentStatus]] = {
    TrackingStatus.PENDING: None,
    TrackingStatus.PROCESSING: None,
    TrackingStatus.IN_TRANSIT: ShipmentStatus.IN_TRANSIT,
    TrackingStatus.DELIVERED: ShipmentStatus.DELIVERED,
    TrackingStatus.RETURNED: ShipmentStatus.RETURNED,
    TrackingStatus.FAILED: ShipmentStatus.FAILED,
    TrackingStatus.EXCEPTION: None,  # flagged in carrier_data instead
    TrackingStatus.UNKNOWN: None,
}

# Reported issue type -> shipment status. None leaves the status alone.
ISSUE_STATUS_MAP: Dict[str, Optional[ShipmentStatus]] = {
    "failed": ShipmentStatus.FAILED,
    "lost": ShipmentStatus.FAILED,
    "damaged": ShipmentStatus.FAILED,
    "returned": ShipmentStatus.RETURNED,
    "delayed": None,
}


@dataclass
class FulfillmentOptions:
    """Caller options for create_shipment / ship_order / mark_as_shipped."""
    auto_purchase_label: bool = False
    purchase_label: bool = True  # ship_order only
    send_processing_notification: bool = False
    send_notification: bool = True
    notes: Optional[str] = None
    # Manually supplied tracking (no carrier purchase)
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    label_url: Optional[str] = None
    carrier: Optional[str] = None
    # Accept the first quoted carrier rate when the method's service is not quoted
    allow_rate_fallback: bool = False


def build_parcel(items, settings: Settings) -> Parcel:
    """
    One parcel for the shippable lines of an order.

    Items are stacked: the footprint is the largest length and width, the
    height is the sum of height x quantity. Each dimension is floored so the
    carrier never sees a zero-size parcel.
    """
    length = width = height = weight = 0.0
    for item in items:
        product = item.product
        if not product.requires_shipping():
            continue
        quantity = item.quantity or 0
        length = max(length, float(product.length or 0))
        width = max(width, float(product.width or 0))
        height += float(product.height or 0) * quantity
        weight += float(product.weight or 0) * quantity

    return Parcel(
        length=round(max(length, settings.MIN_PARCEL_LENGTH_CM), 2),
        width=round(max(width, settings.MIN_PARCEL_WIDTH_CM), 2),
        height=round(max(height, settings.MIN_PARCEL_HEIGHT_CM), 2),
        weight=round(max(weight, settings.MIN_PARCEL_WEIGHT_KG), 3),
    )


class FulfillmentService:
    """
    Shipment lifecycle service.

    The carrier, order repository and notifier are injected; the session is
    owned by the caller but committed here after each transition.
    """

    def __init__(
        self,
        db: AsyncSession,
        carrier: BaseCarrier,
        orders: OrderRepository,
        settings: Optional[Settings] = None,
        notifier: Optional[ShipmentNotifier] = None,
        lock_manager: Optional[ShipmentLockManager] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.carrier = carrier
        self.orders = orders
        self.settings = settings or get_settings()
        self.notifications = ShipmentNotificationService(notifier)
        self.locks = lock_manager or ShipmentLockManager()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ==================== Helpers ====================

    def _now(self) -> datetime:
        return self._clock()

    async def _commit(self, shipment: Shipment) -> None:
        shipment_id = shipment.id
        try:
            await self.db.commit()
        except StaleDataError as e:
            await self.db.rollback()
            logger.error(f"Concurrent update detected for shipment {shipment_id}: {e}")
            raise ShippingConflictError(
                f"Shipment {shipment_id} was modified concurrently",
                code="SHIPMENT_VERSION_CONFLICT",
                details={"shipment_id": shipment_id},
            ) from e

    def _transition(self, shipment: Shipment, status: ShipmentStatus) -> ShipmentStatus:
        """Move to status or raise; returns the previous status."""
        previous = shipment.status
        if not shipment.can_transition_to(status):
            raise InvalidShipmentTransitionError(
                f"Cannot move shipment {shipment.id} from {previous.value} to {status.value}",
                from_status=previous.value,
                to_status=status.value,
            )
        shipment.status = status
        logger.info(f"Shipment {shipment.id} status {previous.value} -> {status.value}")
        return previous

    @staticmethod
    def _merge_carrier_data(shipment: Shipment, **updates: Any) -> None:
        # JSON column: assign a new dict so the change is persisted
        data = dict(shipment.carrier_data or {})
        data.update(updates)
        shipment.carrier_data = data

    async def _load_order(self, shipment: Shipment, order: Optional[Order] = None) -> Order:
        if order is not None:
            return order
        loaded = await self.orders.get_order(shipment.order_id)
        if loaded is None:
            raise ShippingValidationError(
                f"Order {shipment.order_id} not found for shipment {shipment.id}",
                field="order_id",
            )
        return loaded

    async def _set_fulfillment(self, order: Order, status: FulfillmentStatus) -> None:
        await self.orders.set_fulfillment_status(order, status)
        logger.info(f"Order {order.id} fulfillment status -> {status.value}")

    def _from_address(self, order: Order) -> ShippingAddress:
        vendor = getattr(order, "vendor_address", None)
        if vendor is not None:
            return vendor
        return ShippingAddress.from_dict(self.settings.ship_from_address())

    async def _resolve_method(self, shipment: Shipment, order: Order) -> Optional[ShippingMethod]:
        # db.get hits the identity map first; the relationship may be unloaded
        method_id = shipment.shipping_method_id or order.shipping_method_id
        if not method_id:
            return None
        return await self.db.get(ShippingMethod, method_id)

    async def get_shipment(self, shipment_id: int) -> Optional[Shipment]:
        return await self.db.get(Shipment, shipment_id)

    async def get_shipments_for_order(self, order_id: int) -> List[Shipment]:
        result = await self.db.execute(
            select(Shipment).where(Shipment.order_id == order_id).order_by(Shipment.id)
        )
        return list(result.scalars().unique().all())

    async def find_by_tracking_number(self, tracking_number: str) -> Optional[Shipment]:
        result = await self.db.execute(
            select(Shipment)
            .where(Shipment.tracking_number == tracking_number)
            .order_by(Shipment.id.desc())
            .limit(1)
        )
        return result.scalars().first()

    # ==================== Creation & Labels ====================

    async def create_shipment(self, order: Order, options: Optional[FulfillmentOptions] = None) -> Shipment:
        """Create a PROCESSING shipment for the order, optionally buying its label."""
        options = options or FulfillmentOptions()

        if not order.can_ship():
            raise OrderNotShippableError(
                f"Order {order.id} cannot be shipped",
                details={"order_id": order.id, "fulfillment_status": str(order.fulfillment_status)},
            )

        shipment = Shipment(
            order_id=order.id,
            shipping_method_id=order.shipping_method_id,
            status=ShipmentStatus.PROCESSING,
            notes=options.notes,
            currency=self.settings.CURRENCY,
            carrier_data={},
        )
        self.db.add(shipment)
        await self._commit(shipment)

        logger.info(
            f"Shipment {shipment.id} created for order {order.id} "
            f"(auto_purchase_label={options.auto_purchase_label})"
        )

        if options.send_processing_notification:
            await self.notifications.send(ShipmentEvent.PROCESSING, shipment)

        if options.auto_purchase_label:
            await self.purchase_label(shipment, order=order, allow_fallback=options.allow_rate_fallback)

        return shipment

    async def purchase_label(
        self,
        shipment: Shipment,
        order: Optional[Order] = None,
        allow_fallback: bool = False,
    ) -> LabelPurchase:
        async with self.locks.for_shipment(shipment.id):
            return await self._purchase_label(shipment, order, allow_fallback)

    async def _purchase_label(
        self,
        shipment: Shipment,
        order: Optional[Order],
        allow_fallback: bool,
    ) -> LabelPurchase:
        if not shipment.can_transition_to(ShipmentStatus.READY_TO_SHIP):
            raise InvalidShipmentTransitionError(
                f"Cannot purchase a label for shipment {shipment.id} in status {shipment.status.value}",
                from_status=shipment.status.value,
                to_status=ShipmentStatus.READY_TO_SHIP.value,
            )

        attempts = int(shipment.last_error.get("attempts", 0)) + 1

        try:
            order = await self._load_order(shipment, order)
            method = await self._resolve_method(shipment, order)
            if order.shipping_address is None or method is None:
                raise ShippingValidationError(
                    "Missing shipping address or method",
                    field="shipping_address" if order.shipping_address is None else "shipping_method_id",
                )

            purchase = await self.carrier.create_shipment(
                address_from=self._from_address(order),
                address_to=order.shipping_address,
                parcels=[build_parcel(order.items, self.settings)],
                carrier=method.carrier,
                service_code=method.service_code or method.name,
                metadata={"order_id": order.id, "shipment_id": shipment.id},
                allow_fallback=allow_fallback,
            )
        except ShippingEngineError as e:
            await self._record_label_failure(shipment, e, attempts)
            if isinstance(e, (NoShippingRateError, ShippingValidationError)):
                raise
            raise ShippingLabelError(
                f"Failed to purchase label: {e.message}",
                shipment_id=shipment.id,
                cause=e,
            ) from e

        self._transition(shipment, ShipmentStatus.READY_TO_SHIP)
        shipment.shipping_method_id = method.id
        shipment.tracking_number = purchase.tracking_number
        shipment.tracking_url = purchase.tracking_url or (
            self.carrier.get_tracking_url(purchase.rate.carrier, purchase.tracking_number)
            if purchase.tracking_number else None
        )
        shipment.label_url = purchase.label_url
        shipment.external_shipment_id = purchase.shipment_id
        shipment.external_transaction_id = purchase.transaction_id
        shipment.carrier = method.carrier or purchase.rate.carrier
        shipment.service_code = purchase.rate.service_token or method.service_code
        shipment.shipping_cost = purchase.rate.amount
        shipment.currency = purchase.rate.currency or shipment.currency
        if purchase.eta:
            shipment.estimated_delivery = purchase.eta

        data = dict(shipment.carrier_data or {})
        data.pop("last_error", None)
        data["label_attempts"] = attempts
        data["purchase"] = {
            "shipment_id": purchase.shipment_id,
            "transaction_id": purchase.transaction_id,
            "rate": purchase.rate.to_dict(),
            "metadata": purchase.metadata,
            "purchased_at": self._now().isoformat(),
            "raw": purchase.raw,
        }
        shipment.carrier_data = data
        await self._commit(shipment)

        logger.info(
            f"Label purchased for shipment {shipment.id}: carrier={shipment.carrier} "
            f"tracking={shipment.tracking_number} cost={shipment.shipping_cost}"
        )
        await self.notifications.send(ShipmentEvent.LABEL_PURCHASED, shipment)
        return purchase

    async def _record_label_failure(self, shipment: Shipment, error: ShippingEngineError, attempts: int) -> None:
        if shipment.status != ShipmentStatus.FAILED:
            self._transition(shipment, ShipmentStatus.FAILED)
        self._merge_carrier_data(
            shipment,
            last_error={
                "code": error.code,
                "message": error.message,
                "retryable": error.retryable,
                "attempts": attempts,
                "at": self._now().isoformat(),
            },
        )
        await self._commit(shipment)

        logger.error(
            f"Label purchase failed for shipment {shipment.id} (attempt {attempts}): "
            f"{error.code} {error.message} retryable={error.retryable}"
        )
        await self.notifications.send(
            ShipmentEvent.LABEL_FAILED, shipment, {"error": error.to_dict(), "attempts": attempts}
        )

    async def retry_label_purchase(
        self,
        shipment: Shipment,
        order: Optional[Order] = None,
        allow_fallback: bool = False,
    ) -> LabelPurchase:
        """Re-attempt label purchase for a FAILED shipment."""
        async with self.locks.for_shipment(shipment.id):
            if shipment.status != ShipmentStatus.FAILED:
                raise InvalidShipmentTransitionError(
                    f"Only failed shipments can retry label purchase (shipment {shipment.id} is {shipment.status.value})",
                    from_status=shipment.status.value,
                    to_status=ShipmentStatus.PROCESSING.value,
                )
            if shipment.shipped_at is not None:
                # Failed after hand-off (carrier-reported)
                raise InvalidShipmentTransitionError(
                    f"Shipment {shipment.id} already left with the carrier; cannot buy another label",
                    from_status=shipment.status.value,
                    to_status=ShipmentStatus.PROCESSING.value,
                )
            self._transition(shipment, ShipmentStatus.PROCESSING)
            await self._commit(shipment)
            return await self._purchase_label(shipment, order, allow_fallback)

    # ==================== Shipping ====================

    async def ship_order(self, order: Order, options: Optional[FulfillmentOptions] = None) -> Shipment:
        """create_shipment -> optional purchase_label -> mark_as_shipped."""
        options = options or FulfillmentOptions()
        shipment = await self.create_shipment(order, options)

        if options.purchase_label and not shipment.has_label:
            await self.purchase_label(shipment, order=order, allow_fallback=options.allow_rate_fallback)

        await self.mark_as_shipped(
            shipment,
            tracking_number=options.tracking_number,
            tracking_url=options.tracking_url,
            label_url=options.label_url,
            carrier=options.carrier,
            send_notification=options.send_notification,
            order=order,
        )
        return shipment

    async def mark_as_shipped(
        self,
        shipment: Shipment,
        tracking_number: Optional[str] = None,
        tracking_url: Optional[str] = None,
        label_url: Optional[str] = None,
        carrier: Optional[str] = None,
        send_notification: bool = True,
        order: Optional[Order] = None,
    ) -> Shipment:
        """Hand-off to the carrier. A tracking number is required."""
        async with self.locks.for_shipment(shipment.id):
            tracking_number = tracking_number or shipment.tracking_number
            if not tracking_number:
                raise ShippingValidationError(
                    "Tracking number is required to mark as shipped",
                    field="tracking_number",
                )

            self._transition(shipment, ShipmentStatus.SHIPPED)
            shipment.tracking_number = tracking_number
            if carrier:
                shipment.carrier = carrier
            if label_url:
                shipment.label_url = label_url
            shipment.tracking_url = (
                tracking_url
                or shipment.tracking_url
                or self.carrier.get_tracking_url(shipment.carrier, tracking_number)
            )
            shipment.shipped_at = shipment.shipped_at or self._now()
            await self._commit(shipment)

            order = await self._load_order(shipment, order)
            await self._set_fulfillment(order, FulfillmentStatus.FULFILLED)

        logger.info(
            f"Shipment {shipment.id} for order {shipment.order_id} marked as shipped "
            f"(tracking={tracking_number}, notify={send_notification})"
        )
        if send_notification:
            await self.notifications.send(ShipmentEvent.SHIPPED, shipment)
        return shipment

    async def mark_as_delivered(
        self,
        shipment: Shipment,
        delivered_at: Optional[datetime] = None,
        send_notification: bool = True,
    ) -> Shipment:
        """Manual delivery confirmation."""
        async with self.locks.for_shipment(shipment.id):
            self._transition(shipment, ShipmentStatus.DELIVERED)
            if shipment.delivered_at is None:
                shipment.delivered_at = delivered_at or self._now()
            await self._commit(shipment)

        logger.info(f"Shipment {shipment.id} for order {shipment.order_id} marked as delivered")
        if send_notification:
            await self.notifications.send(ShipmentEvent.DELIVERED, shipment)
        return shipment

    # ==================== Tracking ====================

    async def update_tracking_status(self, shipment: Shipment) -> Optional[TrackingSnapshot]:
        """
        Poll the carrier and apply the result.

        Returns None without calling the carrier when the shipment is
        already terminal.
        """
        async with self.locks.for_shipment(shipment.id):
            await self.db.refresh(shipment)
            if shipment.is_terminal:
                logger.debug(f"Shipment {shipment.id} is {shipment.status.value}; tracking refresh skipped")
                return None
            if not shipment.tracking_number:
                raise ShippingValidationError(
                    f"Shipment {shipment.id} has no tracking number",
                    field="tracking_number",
                )

            try:
                snapshot = await self.carrier.get_tracking_info(shipment.tracking_number, shipment.carrier)
            except CarrierError as e:
                logger.error(
                    f"Tracking lookup failed for shipment {shipment.id} "
                    f"({shipment.tracking_number}): {e.code} {e.message}"
                )
                raise

            await self._apply_snapshot(shipment, snapshot)
            return snapshot

    async def handle_tracking_webhook(self, payload: Dict[str, Any], token: Optional[str]) -> Optional[Shipment]:
        """Apply an inbound tracking webhook; None when no shipment matches."""
        if not self.carrier.verify_webhook_token(token):
            logger.warning("Rejected tracking webhook with invalid token")
            raise ShippingValidationError("Invalid webhook token", field="token", code="INVALID_WEBHOOK_TOKEN")

        snapshot = self.carrier.parse_tracking_webhook(payload)
        shipment = await self.find_by_tracking_number(snapshot.tracking_number)
        if shipment is None:
            logger.warning(f"Tracking webhook for unknown tracking number {snapshot.tracking_number}")
            return None

        async with self.locks.for_shipment(shipment.id):
            await self.db.refresh(shipment)
            if shipment.is_terminal:
                logger.debug(f"Shipment {shipment.id} is {shipment.status.value}; webhook ignored")
                return shipment
            await self._apply_snapshot(shipment, snapshot)
        return shipment

    async def _apply_snapshot(self, shipment: Shipment, snapshot: TrackingSnapshot) -> None:
        """Merge a snapshot into the shipment. Caller holds the shipment lock."""
        now = self._now()
        history = shipment.tracking_history
        seen = {entry.get("id") for entry in history}
        added = 0
        for event in snapshot.history:
            entry = event.to_dict()
            if entry["id"] in seen:
                continue
            history.append(entry)
            seen.add(entry["id"])
            added += 1

        data = dict(shipment.carrier_data or {})
        data["tracking_history"] = history
        data["tracking_status"] = snapshot.status.value
        data["carrier_status"] = snapshot.carrier_status
        if snapshot.status_details:
            data["status_details"] = snapshot.status_details
        if snapshot.status == TrackingStatus.EXCEPTION:
            data["exception"] = {
                "carrier_status": snapshot.carrier_status,
                "details": snapshot.status_details,
                "flagged_at": now.isoformat(),
            }
        shipment.carrier_data = data
        shipment.last_tracking_update = now
        if snapshot.eta:
            shipment.estimated_delivery = snapshot.eta

        previous = shipment.status
        target = TRACKING_TO_SHIPMENT_STATUS.get(snapshot.status)
        changed = False
        handed_off = False
        if target is not None and target != previous:
            if shipment.can_transition_to(target):
                shipment.status = target
                changed = True
                if target in (ShipmentStatus.IN_TRANSIT, ShipmentStatus.DELIVERED) and shipment.shipped_at is None:
                    shipment.shipped_at = now
                    handed_off = True
                if target == ShipmentStatus.DELIVERED and shipment.delivered_at is None:
                    shipment.delivered_at = snapshot.delivered_at or now
            else:
                logger.warning(
                    f"Ignoring carrier status {snapshot.carrier_status} for shipment {shipment.id}: "
                    f"{previous.value} -> {target.value} is not allowed"
                )

        await self._commit(shipment)

        logger.info(
            f"Tracking updated for shipment {shipment.id} ({shipment.tracking_number}): "
            f"{previous.value} -> {shipment.status.value}, {added} new events"
        )

        if handed_off:
            order = await self.orders.get_order(shipment.order_id)
            if order is None:
                logger.warning(
                    f"Order {shipment.order_id} not found; fulfillment status not updated for shipment {shipment.id}"
                )
            else:
                await self._set_fulfillment(order, FulfillmentStatus.FULFILLED)

        if snapshot.status == TrackingStatus.EXCEPTION:
            await self.notifications.send(
                ShipmentEvent.ISSUE, shipment, {"carrier_status": snapshot.carrier_status}
            )
        if changed:
            event = ShipmentEvent.DELIVERED if shipment.status == ShipmentStatus.DELIVERED else ShipmentEvent.TRACKING_UPDATED
            await self.notifications.send(
                event, shipment, {"old_status": previous.value, "new_status": shipment.status.value}
            )

    # ==================== Cancellation ====================

    async def cancel_shipment(self, shipment: Shipment, reason: str = "", order: Optional[Order] = None) -> Shipment:
        """Cancel before hand-off; best-effort label refund at the carrier."""
        async with self.locks.for_shipment(shipment.id):
            await self.db.refresh(shipment)
            if not shipment.can_cancel:
                raise ShipmentNotCancellableError(
                    f"Cannot cancel shipment {shipment.id}: status is {shipment.status.value}",
                    details={"shipment_id": shipment.id, "status": shipment.status.value},
                )

            if shipment.has_label and shipment.external_transaction_id:
                try:
                    refunded = await self.carrier.cancel_shipment(shipment.external_transaction_id)
                except CarrierError as e:
                    refunded = False
                    logger.warning(
                        f"Label refund failed for shipment {shipment.id} "
                        f"({shipment.external_transaction_id}): {e.code} {e.message}"
                    )
                self._merge_carrier_data(
                    shipment,
                    label_refund={"requested_at": self._now().isoformat(), "accepted": refunded},
                )
                if not refunded:
                    logger.warning(f"Carrier did not accept label refund for shipment {shipment.id}")

            self._transition(shipment, ShipmentStatus.CANCELLED)
            shipment.cancel_reason = (reason or "")[:255] or None
            shipment.cancelled_at = self._now()
            note = f"Cancelled: {reason}" if reason else "Cancelled"
            shipment.notes = f"{shipment.notes}\n{note}" if shipment.notes else note
            await self._commit(shipment)

            order = await self._load_order(shipment, order)
            await self._set_fulfillment(order, FulfillmentStatus.UNFULFILLED)

        logger.info(f"Shipment {shipment.id} cancelled: {reason or '-'}")
        await self.notifications.send(ShipmentEvent.CANCELLED, shipment, {"reason": reason})
        return shipment

    # ==================== Delays & Issues ====================

    async def report_shipping_delay(
        self,
        shipment: Shipment,
        reason: Optional[str] = None,
        new_estimated_delivery: Optional[datetime] = None,
        days_delayed: Optional[int] = None,
    ) -> Shipment:
        async with self.locks.for_shipment(shipment.id):
            original = shipment.estimated_delivery
            self._merge_carrier_data(
                shipment,
                delay={
                    "reported_at": self._now().isoformat(),
                    "reason": reason or "Unknown",
                    "original_estimated_delivery": original.isoformat() if original else None,
                    "new_estimated_delivery": new_estimated_delivery.isoformat() if new_estimated_delivery else None,
                    "days_delayed": days_delayed,
                },
            )
            if new_estimated_delivery:
                shipment.estimated_delivery = new_estimated_delivery
            await self._commit(shipment)

        logger.info(
            f"Shipping delay reported for shipment {shipment.id} (order {shipment.order_id}): "
            f"{reason or 'Unknown'}, days_delayed={days_delayed}"
        )
        await self.notifications.send(
            ShipmentEvent.DELAYED, shipment, {"reason": reason, "days_delayed": days_delayed}
        )
        return shipment

    async def report_shipping_issue(
        self,
        shipment: Shipment,
        issue_type: str,
        severity: str = "medium",
        description: str = "",
    ) -> Shipment:
        """Record an issue; failed/lost/damaged fail the shipment, returned returns it."""
        issue_type = (issue_type or "other").strip().lower()
        async with self.locks.for_shipment(shipment.id):
            target = ISSUE_STATUS_MAP.get(issue_type)
            flagged = issue_type not in ISSUE_STATUS_MAP
            if target is not None and target != shipment.status:
                self._transition(shipment, target)

            self._merge_carrier_data(
                shipment,
                issue={
                    "reported_at": self._now().isoformat(),
                    "type": issue_type,
                    "severity": severity,
                    "description": description,
                    "flagged": flagged,
                },
            )
            await self._commit(shipment)

        logger.warning(
            f"Shipping issue reported for shipment {shipment.id} (order {shipment.order_id}): "
            f"type={issue_type} severity={severity} status={shipment.status.value}"
        )
        await self.notifications.send(
            ShipmentEvent.ISSUE, shipment, {"type": issue_type, "severity": severity, "description": description}
        )
        return shipment

    # ==================== Non-critical carrier lookups ====================

    async def validate_address(self, address: ShippingAddress) -> Result[AddressValidationResult]:
        try:
            return Result.ok(await self.carrier.validate_address(address))
        except ShippingEngineError as e:
            logger.error(f"Address validation unavailable: {e.code} {e.message}")
            return Result.fail(e)

    async def get_real_time_rates(
        self,
        address_from: ShippingAddress,
        address_to: ShippingAddress,
        parcels: List[Parcel],
    ) -> Result[List[CarrierRate]]:
        try:
            return Result.ok(await self.carrier.get_rates(address_from, address_to, parcels))
        except ShippingEngineError as e:
            logger.error(f"Real-time rates unavailable: {e.code} {e.message}")
            return Result.fail(e)
