"""
Background Jobs for shipment fulfillment

Provides scheduled tasks for:
- Tracking sync (refresh shipment status from the carrier)
- Label retry (re-attempt label purchases that failed for transient reasons)

Both jobs are idempotent: the tracking path deduplicates history and skips
terminal shipments, and the retry path only picks FAILED shipments whose last
error is retryable.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shipping_engine.core.config import Settings, get_settings
from shipping_engine.core.exceptions import ShippingEngineError
from shipping_engine.core.locks import ShipmentLockManager
from shipping_engine.models.shipment import Shipment, ShipmentStatus
from shipping_engine.modules.shipping.carriers.base import BaseCarrier
from shipping_engine.modules.shipping.contracts import OrderRepository
from shipping_engine.services.fulfillment_service import FulfillmentService
from shipping_engine.services.notifications import ShipmentNotifier

logger = logging.getLogger(__name__)

# Shipments whose tracking can still move
ACTIVE_TRACKING_STATUSES = [
    ShipmentStatus.READY_TO_SHIP,
    ShipmentStatus.SHIPPED,
    ShipmentStatus.IN_TRANSIT,
    ShipmentStatus.FAILED,  # carrier-reported failures can recover
]

ALERT_AFTER_FAILURES = 3


class ShippingJobRunner:
    """
    Manages and runs shipping background jobs.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        carrier: BaseCarrier,
        orders: OrderRepository,
        settings: Optional[Settings] = None,
        notifier: Optional[ShipmentNotifier] = None,
        lock_manager: Optional[ShipmentLockManager] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.carrier = carrier
        self.orders = orders
        self.settings = settings or get_settings()
        self.notifier = notifier
        self.locks = lock_manager or ShipmentLockManager()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._consecutive_failures: Dict[str, int] = {}

    def _service(self, db: AsyncSession) -> FulfillmentService:
        return FulfillmentService(
            db,
            self.carrier,
            self.orders,
            settings=self.settings,
            notifier=self.notifier,
            lock_manager=self.locks,
            clock=self._clock,
        )

    async def start(self):
        """Start all background jobs."""
        if self._running:
            logger.warning("Shipping jobs already running")
            return

        self._running = True
        logger.info("Starting shipping background jobs")

        self._tasks = [
            asyncio.create_task(self._tracking_sync_loop()),
            asyncio.create_task(self._label_retry_loop()),
        ]

    async def stop(self):
        """Stop all background jobs."""
        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        logger.info("Shipping background jobs stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    # ==================== Failure tracking ====================

    def _record_success(self, key: str):
        if key in self._consecutive_failures:
            del self._consecutive_failures[key]
            logger.info(f"Job {key} recovered")

    def _record_failure(self, key: str, tracking_number: Optional[str], error: str) -> int:
        self._consecutive_failures[key] = self._consecutive_failures.get(key, 0) + 1
        failures = self._consecutive_failures[key]

        if failures >= ALERT_AFTER_FAILURES:
            logger.critical(
                f"[ALERT] {key} failed {failures} times in a row "
                f"(tracking={tracking_number or '-'}): {error}"
            )
        else:
            logger.warning(f"{key} failed ({failures}/{ALERT_AFTER_FAILURES}): {error}")
        return failures

    def consecutive_failures(self, key: str) -> int:
        return self._consecutive_failures.get(key, 0)

    # ==================== Tracking Sync Job ====================

    async def _tracking_sync_loop(self):
        """Main loop for tracking sync job."""
        while self._running:
            try:
                await self.sync_all_active_tracking()
            except Exception as e:
                logger.error(f"Tracking sync job error: {e}")

            await asyncio.sleep(self.settings.TRACKING_SYNC_INTERVAL_SECONDS)

    async def _get_shipments_for_tracking(self, db: AsyncSession) -> List[Shipment]:
        """Least recently refreshed shipments first, batch-limited."""
        cutoff = self._clock() - timedelta(minutes=self.settings.TRACKING_SYNC_MIN_AGE_MINUTES)

        result = await db.execute(
            select(Shipment)
            .where(
                and_(
                    Shipment.status.in_(ACTIVE_TRACKING_STATUSES),
                    Shipment.tracking_number.isnot(None),
                    or_(
                        Shipment.last_tracking_update.is_(None),
                        Shipment.last_tracking_update < cutoff,
                    ),
                )
            )
            .order_by(Shipment.last_tracking_update.asc().nullsfirst(), Shipment.id)
            .limit(self.settings.TRACKING_SYNC_BATCH_SIZE)
        )
        return list(result.scalars().unique().all())

    async def sync_all_active_tracking(self) -> Dict[str, int]:
        """Run a single tracking sync cycle."""
        stats = {"checked": 0, "updated": 0, "failed": 0}

        async with self.session_factory() as db:
            shipments = await self._get_shipments_for_tracking(db)
            if not shipments:
                logger.debug("No shipments need tracking update")
                return stats

            logger.info(f"Syncing tracking for {len(shipments)} shipments")
            service = self._service(db)

            # A version conflict rolls back and expires every row in the session
            pending = [(s.id, s.tracking_number) for s in shipments]
            for shipment_id, tracking_number in pending:
                key = f"tracking-sync-{shipment_id}"
                stats["checked"] += 1
                try:
                    shipment = await db.get(Shipment, shipment_id)
                    if shipment is None:
                        continue
                    await service.update_tracking_status(shipment)
                    stats["updated"] += 1
                    self._record_success(key)
                except ShippingEngineError as e:
                    stats["failed"] += 1
                    self._record_failure(key, tracking_number, f"{e.code}: {e.message}")

        logger.info(
            f"Tracking sync complete: {stats['updated']} updated, {stats['failed']} failed"
        )
        return stats

    # ==================== Label Retry Job ====================

    async def _label_retry_loop(self):
        """Main loop for label retry job."""
        while self._running:
            try:
                await self.retry_failed_labels()
            except Exception as e:
                logger.error(f"Label retry job error: {e}")

            await asyncio.sleep(self.settings.LABEL_RETRY_INTERVAL_SECONDS)

    def _is_retry_candidate(self, shipment: Shipment) -> bool:
        last_error = shipment.last_error
        if not last_error or shipment.has_label:
            return False
        return bool(last_error.get("retryable")) and int(last_error.get("attempts", 0)) < self.settings.LABEL_RETRY_MAX_ATTEMPTS

    async def _get_shipments_for_retry(self, db: AsyncSession) -> List[Shipment]:
        result = await db.execute(
            select(Shipment)
            .where(
                and_(
                    Shipment.status == ShipmentStatus.FAILED,
                    Shipment.tracking_number.is_(None),
                    Shipment.shipped_at.is_(None),
                )
            )
            .order_by(Shipment.updated_at.asc(), Shipment.id)
            .limit(self.settings.TRACKING_SYNC_BATCH_SIZE)
        )
        # retryable/attempts live in the JSON column
        return [s for s in result.scalars().unique().all() if self._is_retry_candidate(s)]

    async def retry_failed_labels(self) -> Dict[str, int]:
        """Run a single label retry cycle."""
        stats = {"checked": 0, "purchased": 0, "failed": 0}

        async with self.session_factory() as db:
            shipments = await self._get_shipments_for_retry(db)
            if not shipments:
                logger.debug("No failed labels to retry")
                return stats

            logger.info(f"Retrying label purchase for {len(shipments)} shipments")
            service = self._service(db)

            pending = [(s.id, s.tracking_number) for s in shipments]
            for shipment_id, tracking_number in pending:
                key = f"label-retry-{shipment_id}"
                stats["checked"] += 1
                try:
                    shipment = await db.get(Shipment, shipment_id)
                    if shipment is None:
                        continue
                    await service.retry_label_purchase(shipment)
                    stats["purchased"] += 1
                    self._record_success(key)
                except ShippingEngineError as e:
                    stats["failed"] += 1
                    self._record_failure(key, tracking_number, f"{e.code}: {e.message}")

        logger.info(
            f"Label retry complete: {stats['purchased']} purchased, {stats['failed']} failed"
        )
        return stats
