import asyncio
import unittest
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from models.entities.couchbase.auctions import AuctionStatus
from models.entities.couchbase.offers import OfferStatus
from models.operations.offers import OfferService

from lifecycle import AuctionScheduler

from support import SELLER, FakeClock, RecordingNotifier, create_active_auction, draft, make_engine


class SchedulerTickTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        self.notifier = RecordingNotifier()
        self.engine = make_engine(clock=self.clock, notifier=self.notifier)
        self.scheduler = AuctionScheduler(self.engine)

    async def test_activates_due_auctions(self):
        due = await self.engine.auction_create(SELLER, draft(self.clock))
        later = await self.engine.auction_create(
            SELLER, draft(self.clock, start_time=self.clock() + timedelta(hours=2), end_time=self.clock() + timedelta(hours=3))
        )
        self.clock.advance(minutes=2)

        report = await self.scheduler.tick()

        self.assertEqual([due.id], report.activated)
        self.assertEqual(AuctionStatus.ACTIVE, (await self.engine.auction_get(due.id)).data.status)
        self.assertEqual(AuctionStatus.SCHEDULED, (await self.engine.auction_get(later.id)).data.status)
        self.assertIn(("bid_updated", due.id), self.notifier.events)

    async def test_closes_with_sale(self):
        auction = await create_active_auction(self.engine, self.clock)
        await self.engine.place_bid(auction.id, "bidder-1", 110)
        self.clock.set(auction.data.end_time + timedelta(seconds=1))

        report = await self.scheduler.tick()

        self.assertEqual([auction.id], report.closed)
        self.assertEqual(AuctionStatus.SOLD, (await self.engine.auction_get(auction.id)).data.status)
        self.assertIn(("auction_ended", auction.id), self.notifier.events)

    async def test_closes_without_bids(self):
        auction = await create_active_auction(self.engine, self.clock)
        self.clock.set(auction.data.end_time)

        await self.scheduler.tick()
        self.assertEqual(AuctionStatus.ENDED_NO_SALE, (await self.engine.auction_get(auction.id)).data.status)

    async def test_reserve_decides_sale(self):
        unmet = await create_active_auction(self.engine, self.clock, reserve_price=200.0)
        met = await create_active_auction(self.engine, self.clock, reserve_price=200.0)
        await self.engine.place_bid(unmet.id, "bidder-1", 150)
        await self.engine.place_bid(met.id, "bidder-1", 200)
        self.clock.advance(hours=2)

        report = await self.scheduler.tick()

        self.assertEqual({unmet.id, met.id}, set(report.closed))
        self.assertEqual(AuctionStatus.ENDED_NO_SALE, (await self.engine.auction_get(unmet.id)).data.status)
        self.assertEqual(AuctionStatus.SOLD, (await self.engine.auction_get(met.id)).data.status)

    async def test_extended_auction_is_skipped(self):
        auction = await create_active_auction(self.engine, self.clock)
        self.clock.set(auction.data.end_time - timedelta(seconds=10))
        await self.engine.place_bid(auction.id, "bidder-1", 110)
        self.clock.advance(seconds=15)

        # A scan taken before the extension still lists the auction as due
        with patch.object(
            self.engine, "auction_find_due_for_close", AsyncMock(return_value=[auction])
        ):
            report = await self.scheduler.tick()

        self.assertEqual([], report.closed)
        self.assertEqual([auction.id], report.skipped)
        self.assertEqual(AuctionStatus.ACTIVE, (await self.engine.auction_get(auction.id)).data.status)

    async def test_failure_on_one_auction_does_not_stop_tick(self):
        first = await create_active_auction(self.engine, self.clock)
        second = await create_active_auction(self.engine, self.clock)
        self.clock.advance(hours=2)

        original = self.engine.auction_close

        async def flaky_close(auction_id):
            if auction_id == first.id:
                raise RuntimeError("store unavailable")
            return await original(auction_id)

        with patch.object(self.engine, "auction_close", flaky_close):
            with self.assertLogs("lifecycle.scheduler", level="ERROR"):
                report = await self.scheduler.tick()

        self.assertEqual([first.id], report.failed)
        self.assertEqual([second.id], report.closed)

    async def test_archival_candidates(self):
        auction = await create_active_auction(self.engine, self.clock)
        self.clock.advance(hours=2)
        await self.scheduler.tick()

        self.clock.advance(days=29)
        self.assertEqual([], (await self.scheduler.tick()).archival_candidates)

        self.clock.advance(days=2)
        self.assertEqual([auction.id], (await self.scheduler.tick()).archival_candidates)
        await self.engine.auction_get(auction.id)

    async def test_offer_sweep_only_when_enabled(self):
        auction = await create_active_auction(self.engine, self.clock)
        offer = await OfferService(self.engine).create(auction.id, "buyer-1", 150)
        self.clock.advance(hours=25)

        report = await self.scheduler.tick()
        self.assertEqual(0, report.expired_offers)
        self.assertEqual(OfferStatus.PENDING, (await self.engine.offers.get(offer.id)).data.status)

        sweeping = AuctionScheduler(self.engine, sweep_offers=True)
        report = await sweeping.tick()
        self.assertEqual(1, report.expired_offers)
        self.assertEqual(OfferStatus.EXPIRED, (await self.engine.offers.get(offer.id)).data.status)


class SchedulerLifecycleTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_start_stop(self):
        engine = make_engine()
        scheduler = AuctionScheduler(engine, interval_seconds=3600)
        self.assertFalse(scheduler.is_running)

        scheduler.start()
        try:
            self.assertTrue(scheduler.is_running)
            with self.assertLogs("lifecycle.scheduler", level="INFO") as logs:
                scheduler.start()
            self.assertIn("already running", logs.output[0])

            # First run is immediate
            for _ in range(50):
                if scheduler.last_report is not None:
                    break
                await asyncio.sleep(0.01)
            self.assertIsNotNone(scheduler.last_report)
            self.assertTrue(scheduler.status()["running"])
        finally:
            scheduler.stop()

        self.assertFalse(scheduler.is_running)
        self.assertFalse(scheduler.status()["running"])
        scheduler.stop()
