"""
Tests for the tracking sync and label retry background jobs.
"""
import logging
from datetime import timedelta

import pytest
from sqlalchemy import text

from shipping_engine.core.exceptions import CarrierUnavailableError
from shipping_engine.models import Shipment, ShipmentStatus
from shipping_engine.modules.shipping.carriers.base import (
    CarrierRate,
    LabelPurchase,
    TrackingSnapshot,
    TrackingStatus,
)
from shipping_engine.services.shipping_jobs import ShippingJobRunner
from tests.fakes import FIXED_NOW, FakeLine, FakeOrder, FakeProduct, add_method, uk_address


def in_transit(tracking_number, carrier=None):
    return TrackingSnapshot(
        tracking_number=tracking_number,
        carrier=carrier or "royal_mail",
        status=TrackingStatus.IN_TRANSIT,
        carrier_status="TRANSIT",
    )


def failed_label(retryable=True, attempts=1):
    return {
        "last_error": {
            "code": "CARRIER_UNAVAILABLE" if retryable else "CARRIER_REQUEST_REJECTED",
            "message": "Carrier down",
            "retryable": retryable,
            "attempts": attempts,
        }
    }


async def seed(db, **fields) -> Shipment:
    shipment = Shipment(order_id=fields.pop("order_id", 100), currency="GBP", **fields)
    db.add(shipment)
    await db.commit()
    return shipment


@pytest.fixture
def runner(session_factory, mock_carrier, orders, settings, clock):
    return ShippingJobRunner(session_factory, mock_carrier, orders, settings=settings, clock=clock)


class TestTrackingSync:
    """Test the tracking sync cycle."""

    @pytest.mark.asyncio
    async def test_picks_stale_active_shipments(self, runner, db, mock_carrier):
        never = await seed(db, status=ShipmentStatus.SHIPPED, tracking_number="A", carrier_data={})
        await seed(
            db, status=ShipmentStatus.IN_TRANSIT, tracking_number="B", carrier_data={},
            last_tracking_update=FIXED_NOW - timedelta(minutes=10),
        )
        stale = await seed(
            db, status=ShipmentStatus.IN_TRANSIT, tracking_number="C", carrier_data={},
            last_tracking_update=FIXED_NOW - timedelta(hours=2),
        )
        await seed(db, status=ShipmentStatus.DELIVERED, tracking_number="D", carrier_data={})
        await seed(db, status=ShipmentStatus.PROCESSING, carrier_data={})

        mock_carrier.get_tracking_info.side_effect = lambda number, carrier=None: in_transit(number)

        stats = await runner.sync_all_active_tracking()

        assert stats == {"checked": 2, "updated": 2, "failed": 0}
        polled = [call.args[0] for call in mock_carrier.get_tracking_info.await_args_list]
        assert polled == ["A", "C"]

        await db.refresh(never)
        await db.refresh(stale)
        assert never.status == ShipmentStatus.IN_TRANSIT
        assert never.last_tracking_update is not None

    @pytest.mark.asyncio
    async def test_batch_size(self, runner, db, mock_carrier, settings):
        settings.TRACKING_SYNC_BATCH_SIZE = 2
        for number in ("A", "B", "C"):
            await seed(db, status=ShipmentStatus.SHIPPED, tracking_number=number, carrier_data={})
        mock_carrier.get_tracking_info.side_effect = lambda number, carrier=None: in_transit(number)

        stats = await runner.sync_all_active_tracking()
        assert stats["checked"] == 2

    @pytest.mark.asyncio
    async def test_nothing_to_sync(self, runner, mock_carrier):
        assert await runner.sync_all_active_tracking() == {"checked": 0, "updated": 0, "failed": 0}
        mock_carrier.get_tracking_info.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_version_conflict_skips_only_that_shipment(
        self, runner, db, session_factory, mock_carrier, caplog
    ):
        first = await seed(db, status=ShipmentStatus.SHIPPED, tracking_number="A", carrier_data={})
        second = await seed(db, status=ShipmentStatus.SHIPPED, tracking_number="B", carrier_data={})

        async def track(number, carrier=None):
            if number == "A":
                # Another writer updates the row while the carrier call is in flight
                async with session_factory() as other:
                    await other.execute(
                        text("UPDATE shipments SET version = version + 1 WHERE id = :id"),
                        {"id": first.id},
                    )
                    await other.commit()
            return in_transit(number)

        mock_carrier.get_tracking_info.side_effect = track

        with caplog.at_level(logging.WARNING):
            stats = await runner.sync_all_active_tracking()

        assert stats == {"checked": 2, "updated": 1, "failed": 1}
        assert "SHIPMENT_VERSION_CONFLICT" in caplog.text
        assert runner.consecutive_failures(f"tracking-sync-{first.id}") == 1
        polled = [call.args[0] for call in mock_carrier.get_tracking_info.await_args_list]
        assert polled == ["A", "B"]

        await db.refresh(first)
        await db.refresh(second)
        assert first.status == ShipmentStatus.SHIPPED
        assert second.status == ShipmentStatus.IN_TRANSIT

    @pytest.mark.asyncio
    async def test_alert_after_repeated_failures(self, runner, db, mock_carrier, caplog):
        shipment = await seed(db, status=ShipmentStatus.SHIPPED, tracking_number="A", carrier_data={})
        key = f"tracking-sync-{shipment.id}"
        mock_carrier.get_tracking_info.side_effect = CarrierUnavailableError("Carrier down", carrier="shippo")

        with caplog.at_level(logging.WARNING):
            for _ in range(2):
                stats = await runner.sync_all_active_tracking()
                assert stats["failed"] == 1
            assert "[ALERT]" not in caplog.text

            await runner.sync_all_active_tracking()

        assert runner.consecutive_failures(key) == 3
        alerts = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert len(alerts) == 1
        assert key in alerts[0].getMessage()

        mock_carrier.get_tracking_info.side_effect = lambda number, carrier=None: in_transit(number)
        await runner.sync_all_active_tracking()
        assert runner.consecutive_failures(key) == 0


class TestLabelRetry:
    """Test the label retry cycle."""

    @pytest.fixture
    async def order(self, db, orders):
        method = await add_method(db, "Tracked 48", carrier="royal_mail", service_code="tracked_48")
        await db.commit()
        return orders.add(FakeOrder(
            id=100,
            items=[FakeLine(FakeProduct(id=1))],
            shipping_address=uk_address(),
            shipping_method_id=method.id,
        ))

    @pytest.mark.asyncio
    async def test_retries_only_retryable_failures(self, runner, db, order, mock_carrier):
        candidate = await seed(db, status=ShipmentStatus.FAILED, carrier_data=failed_label())
        rejected = await seed(db, status=ShipmentStatus.FAILED, carrier_data=failed_label(retryable=False))
        exhausted = await seed(db, status=ShipmentStatus.FAILED, carrier_data=failed_label(attempts=3))
        await seed(
            db, status=ShipmentStatus.FAILED, carrier_data=failed_label(),
            tracking_number="RM9", external_transaction_id="txn_9",
        )
        handed_off = await seed(
            db, status=ShipmentStatus.FAILED, carrier_data=failed_label(),
            shipped_at=FIXED_NOW - timedelta(days=1),
        )

        mock_carrier.create_shipment.return_value = LabelPurchase(
            shipment_id="shp_2",
            transaction_id="txn_2",
            tracking_number="RM2",
            tracking_url=None,
            label_url="https://labels.example.com/txn_2.pdf",
            rate=CarrierRate(rate_id="r", carrier="Royal Mail", service_name="Tracked 48", amount=395, currency="GBP"),
        )

        stats = await runner.retry_failed_labels()

        assert stats == {"checked": 1, "purchased": 1, "failed": 0}
        await db.refresh(candidate)
        await db.refresh(rejected)
        await db.refresh(exhausted)
        assert candidate.status == ShipmentStatus.READY_TO_SHIP
        assert candidate.tracking_number == "RM2"
        assert candidate.carrier_data["label_attempts"] == 2
        assert rejected.status == ShipmentStatus.FAILED
        assert exhausted.status == ShipmentStatus.FAILED
        await db.refresh(handed_off)
        assert handed_off.status == ShipmentStatus.FAILED
        assert handed_off.tracking_number is None

    @pytest.mark.asyncio
    async def test_failed_retry_counts_attempt(self, runner, db, order, mock_carrier):
        shipment = await seed(db, status=ShipmentStatus.FAILED, carrier_data=failed_label(attempts=2))
        mock_carrier.create_shipment.side_effect = CarrierUnavailableError("Carrier down", carrier="shippo")

        stats = await runner.retry_failed_labels()
        assert stats == {"checked": 1, "purchased": 0, "failed": 1}

        await db.refresh(shipment)
        assert shipment.status == ShipmentStatus.FAILED
        assert shipment.last_error["attempts"] == 3

        # Max attempts reached
        assert await runner.retry_failed_labels() == {"checked": 0, "purchased": 0, "failed": 0}


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, runner):
        await runner.start()
        assert runner.is_running
        await runner.start()  # second start is a no-op

        await runner.stop()
        assert not runner.is_running
