import unittest
from datetime import timedelta

from models.entities.couchbase.auctions import AuctionStatus
from models.operations.errors import InvalidInputError, NotFoundError

from support import ADMIN, SELLER, FakeClock, create_active_auction, draft, make_engine


class AuctionQueryTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        self.engine = make_engine(clock=self.clock)

    async def test_search_paginates_newest_first(self):
        created = []
        for i in range(5):
            created.append(await self.engine.auction_create(SELLER, draft(self.clock, title=f"Lot {i}")))
            self.clock.advance(seconds=1)

        page = await self.engine.auction_search(page=1, limit=2)
        self.assertEqual(5, page.total)
        self.assertEqual(3, page.pages)
        self.assertEqual([created[4].id, created[3].id], [a.id for a in page.auctions])

        last = await self.engine.auction_search(page=3, limit=2)
        self.assertEqual([created[0].id], [a.id for a in last.auctions])

        with self.assertRaises(InvalidInputError):
            await self.engine.auction_search(page=0)

    async def test_search_filters_by_status_and_owner(self):
        scheduled = await self.engine.auction_create(SELLER, draft(self.clock))
        active = await create_active_auction(self.engine, self.clock, owner=ADMIN)

        page = await self.engine.auction_search(status=AuctionStatus.ACTIVE)
        self.assertEqual([active.id], [a.id for a in page.auctions])

        page = await self.engine.auction_get_by_owner(SELLER.user_id)
        self.assertEqual([scheduled.id], [a.id for a in page.auctions])

        page = await self.engine.auction_search(status="scheduled", owner_id=ADMIN.user_id)
        self.assertEqual(0, page.total)

    async def test_active_and_ending_soon(self):
        soon = await create_active_auction(
            self.engine, self.clock, end_time=self.clock() + timedelta(minutes=10)
        )
        later = await create_active_auction(self.engine, self.clock)
        self.clock.set(soon.data.end_time - timedelta(minutes=3))

        active = await self.engine.auction_find_active()
        self.assertEqual([soon.id, later.id], [a.id for a in active])

        ending = await self.engine.auction_find_ending_soon(minutes=5)
        self.assertEqual([soon.id], [a.id for a in ending])

    async def test_snapshot(self):
        auction = await create_active_auction(self.engine, self.clock)
        snapshot = await self.engine.auction_snapshot(auction.id)
        self.assertEqual(100, snapshot.high_bid)
        self.assertIsNone(snapshot.high_bidder)
        self.assertEqual(int((auction.data.end_time - self.clock()).total_seconds()), snapshot.time_remaining)

        self.clock.set(auction.data.end_time + timedelta(minutes=5))
        self.assertEqual(0, (await self.engine.auction_snapshot(auction.id)).time_remaining)

        with self.assertRaises(NotFoundError):
            await self.engine.auction_snapshot("missing")


class BidQueryTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        self.engine = make_engine(clock=self.clock)
        self.auction = await create_active_auction(self.engine, self.clock)
        await self.engine.place_bid(self.auction.id, "bidder-1", 110)
        self.clock.advance(seconds=1)
        await self.engine.place_bid(self.auction.id, "bidder-2", 120)
        self.clock.advance(seconds=1)
        await self.engine.place_bid(self.auction.id, "bidder-1", 130)

    async def test_history_newest_first(self):
        history = await self.engine.bid_history(self.auction.id)
        self.assertEqual([130, 120, 110], [b.data.amount for b in history])
        self.assertEqual(2, len(await self.engine.bid_history(self.auction.id, limit=2)))

        with self.assertRaises(NotFoundError):
            await self.engine.bid_history("missing")

    async def test_user_bids(self):
        bids = await self.engine.bid_get_user_bids(self.auction.id, "bidder-1")
        self.assertEqual([130, 110], [b.data.amount for b in bids])

    async def test_is_winning(self):
        first, latest = (await self.engine.bid_get_user_bids(self.auction.id, "bidder-1"))[::-1]
        self.assertTrue(await self.engine.bid_is_winning(latest.id))
        self.assertFalse(await self.engine.bid_is_winning(first.id))

        with self.assertRaises(NotFoundError):
            await self.engine.bid_is_winning("missing")
