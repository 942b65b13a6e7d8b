import asyncio
import unittest

from clients.documents import MemoryDocumentStore, TransientStoreError
from models.entities.couchbase.auctions import AuctionStatus
from models.entities.couchbase.bids import BidStatus
from models.entities.couchbase.offers import OfferStatus
from models.operations.bids import bid_get_accepted, bid_get_by_auction
from models.operations.errors import DeferredUpdateError, InvalidOfferError
from models.operations.offers import OfferService
from models.operations.settings import OfferAcceptPolicy

from lifecycle import AuctionScheduler

from support import SELLER, FakeClock, RecordingNotifier, create_active_auction, make_engine


class SlowBidStore(MemoryDocumentStore):
    """Delays the bid document writes of one bidder."""

    def __init__(self, bidder_id: str, delay: float) -> None:
        super().__init__()
        self.bidder_id = bidder_id
        self.delay = delay

    async def insert(self, collection, key, content):
        if collection == "bids" and content.get("bidder_id") == self.bidder_id:
            await asyncio.sleep(self.delay)
        return await super().insert(collection, key, content)


class FlakyStore(MemoryDocumentStore):
    """Fails every write to the collections listed in ``failing``."""

    def __init__(self) -> None:
        super().__init__()
        self.failing = set()

    async def insert(self, collection, key, content):
        if collection in self.failing:
            raise TransientStoreError(f"{collection} unavailable")
        return await super().insert(collection, key, content)

    async def replace(self, collection, key, content, cas=None):
        if collection in self.failing:
            raise TransientStoreError(f"{collection} unavailable")
        return await super().replace(collection, key, content, cas=cas)


class OfferBarrierStore(MemoryDocumentStore):
    """Holds offer inserts until *parties* of them have arrived."""

    def __init__(self, parties: int) -> None:
        super().__init__()
        self.parties = parties
        self.arrived = 0
        self.released = asyncio.Event()

    async def insert(self, collection, key, content):
        if collection == "offers":
            self.arrived += 1
            if self.arrived >= self.parties:
                self.released.set()
            await self.released.wait()
        return await super().insert(collection, key, content)


class CrossProcessBidTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_late_bid_write_is_demoted_by_its_own_settle(self):
        store = SlowBidStore("bidder-1", delay=0.05)
        clock = FakeClock()
        first = make_engine(store=store, clock=clock)
        second = make_engine(store=store, clock=clock)
        auction = await create_active_auction(first, clock)

        async def outbid_shortly():
            await asyncio.sleep(0.01)
            return await second.place_bid(auction.id, "bidder-2", 120)

        await asyncio.gather(first.place_bid(auction.id, "bidder-1", 110), outbid_shortly())

        accepted = await bid_get_accepted(first.bids, auction.id)
        self.assertEqual([120], [b.data.amount for b in accepted])

        bids = await bid_get_by_auction(first.bids, auction.id)
        statuses = {b.data.amount: b.data.status for b in bids}
        self.assertEqual({110: BidStatus.OUTBID, 120: BidStatus.ACCEPTED}, statuses)

        final = await first.auction_get(auction.id)
        self.assertEqual(accepted[0].id, final.data.high_bid_id)
        self.assertFalse(final.data.cascade_pending)
        self.assertEqual({}, final.data.pending_bids)


class DeferredBidTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = FlakyStore()
        self.clock = FakeClock()
        self.notifier = RecordingNotifier()
        self.engine = make_engine(store=self.store, clock=self.clock, notifier=self.notifier, max_retries=1)
        self.auction = await create_active_auction(self.engine, self.clock)
        self.notifier.events.clear()

    async def test_unrecorded_bid_raises_deferred_and_is_replayed(self):
        self.store.failing.add("bids")
        with self.assertRaises(DeferredUpdateError) as ctx:
            await self.engine.place_bid(self.auction.id, "bidder-1", 110)
        self.assertEqual("deferred", ctx.exception.kind)
        self.assertEqual(self.auction.id, ctx.exception.auction_id)
        self.assertEqual([("bid_updated", self.auction.id)], self.notifier.events)

        auction = await self.engine.auction_get(self.auction.id)
        self.assertEqual(110, auction.data.current_bid)
        self.assertTrue(auction.data.cascade_pending)
        self.assertEqual(auction.data.bid_ids, list(auction.data.pending_bids))
        self.assertEqual([], await bid_get_by_auction(self.engine.bids, self.auction.id))

        self.store.failing.clear()
        report = await AuctionScheduler(self.engine).tick()
        self.assertEqual([self.auction.id], report.replayed)

        bids = await bid_get_by_auction(self.engine.bids, self.auction.id)
        self.assertEqual([auction.data.high_bid_id], [b.id for b in bids])
        self.assertEqual(BidStatus.ACCEPTED, bids[0].data.status)
        self.assertEqual("bidder-1", bids[0].data.bidder_id)

        auction = await self.engine.auction_get(self.auction.id)
        self.assertFalse(auction.data.cascade_pending)
        self.assertEqual({}, auction.data.pending_bids)
        self.assertEqual([], await self.engine.auction_find_pending_cascades())

    async def test_later_bid_settles_earlier_pending_one(self):
        self.store.failing.add("bids")
        with self.assertRaises(DeferredUpdateError):
            await self.engine.place_bid(self.auction.id, "bidder-1", 110)
        self.store.failing.clear()

        self.clock.advance(seconds=5)
        await self.engine.place_bid(self.auction.id, "bidder-2", 130)

        bids = await bid_get_by_auction(self.engine.bids, self.auction.id)
        self.assertEqual([130, 110], [b.data.amount for b in bids])
        self.assertEqual([BidStatus.ACCEPTED, BidStatus.OUTBID], [b.data.status for b in bids])
        self.assertFalse((await self.engine.auction_get(self.auction.id)).data.cascade_pending)


class DeferredOfferSaleTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_unsettled_sale_raises_deferred_and_is_replayed(self):
        store = FlakyStore()
        clock = FakeClock()
        notifier = RecordingNotifier()
        engine = make_engine(
            store=store,
            clock=clock,
            notifier=notifier,
            max_retries=1,
            offer_accept_policy=OfferAcceptPolicy.CLOSE_AUCTION,
        )
        offers = OfferService(engine)
        auction = await create_active_auction(engine, clock)
        chosen = await offers.create(auction.id, "buyer-1", 180)
        other = await offers.create(auction.id, "buyer-2", 170)
        notifier.events.clear()

        store.failing.add("offers")
        with self.assertRaises(DeferredUpdateError):
            await offers.accept(chosen.id, SELLER)
        self.assertIn(("auction_ended", auction.id), notifier.events)

        sold = await engine.auction_get(auction.id)
        self.assertEqual(AuctionStatus.SOLD_OFFER, sold.data.status)
        self.assertEqual(chosen.id, sold.data.pending_offer_id)
        self.assertEqual(OfferStatus.PENDING, (await offers.offers.get(chosen.id)).data.status)

        store.failing.clear()
        await engine.auction_replay_pending(auction.id)

        self.assertEqual(OfferStatus.ACCEPTED, (await offers.offers.get(chosen.id)).data.status)
        self.assertEqual(OfferStatus.EXPIRED, (await offers.offers.get(other.id)).data.status)
        settled = await engine.auction_get(auction.id)
        self.assertIsNone(settled.data.pending_offer_id)
        self.assertFalse(settled.data.cascade_pending)


class CrossProcessOfferTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_one_open_offer_per_buyer_across_engines(self):
        store = OfferBarrierStore(parties=2)
        clock = FakeClock()
        first = make_engine(store=store, clock=clock)
        second = make_engine(store=store, clock=clock)
        auction = await create_active_auction(first, clock)

        results = await asyncio.gather(
            OfferService(first).create(auction.id, "buyer-1", 150),
            OfferService(second).create(auction.id, "buyer-1", 160),
            return_exceptions=True,
        )
        created = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, InvalidOfferError)]
        self.assertEqual(1, len(created))
        self.assertEqual(1, len(rejected))
        self.assertEqual("You already have an active offer for this auction", rejected[0].message)

        listed = await OfferService(first).list_for_auction(auction.id, SELLER)
        self.assertEqual([created[0].id], [o.id for o in listed])

        final = await first.auction_get(auction.id)
        self.assertEqual({"buyer-1": created[0].id}, final.data.buyer_offer_ids)
        self.assertEqual([created[0].id], final.data.offer_ids)
