"""Shared helpers for the auction test cases."""

from datetime import datetime, timedelta, timezone
from typing import List, Tuple

from clients.documents import MemoryDocumentStore
from models.entities.couchbase.auctions import Auction
from models.operations.auctions import AuctionEngine
from models.operations.settings import Actor, EngineSettings

T0 = datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

SELLER = Actor(user_id="seller-1")
ADMIN = Actor(user_id="admin-1", roles=["admin"])
STRANGER = Actor(user_id="someone-else")


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: List[Tuple[str, str]] = []

    async def bid_updated(self, auction_id: str) -> None:
        self.events.append(("bid_updated", auction_id))

    async def auction_ended(self, auction_id: str) -> None:
        self.events.append(("auction_ended", auction_id))

    async def offer_updated(self, auction_id: str) -> None:
        self.events.append(("offer_updated", auction_id))


class BrokenNotifier:
    async def bid_updated(self, auction_id: str) -> None:
        raise RuntimeError("websocket room gone")

    async def auction_ended(self, auction_id: str) -> None:
        raise RuntimeError("websocket room gone")

    async def offer_updated(self, auction_id: str) -> None:
        raise RuntimeError("websocket room gone")


def make_engine(store=None, clock=None, notifier=None, **settings) -> AuctionEngine:
    return AuctionEngine(
        store or MemoryDocumentStore(),
        notifier=notifier,
        settings=EngineSettings(**settings),
        clock=clock or FakeClock(),
    )


def draft(clock: FakeClock, **overrides) -> dict:
    values = {
        "title": "Signed first edition",
        "description": "Hardcover, excellent condition",
        "currency": "USD",
        "starting_price": 100.0,
        "min_increment": 10.0,
        "start_time": clock() + timedelta(minutes=1),
        "end_time": clock() + timedelta(hours=1),
    }
    values.update(overrides)
    return values


async def create_active_auction(engine: AuctionEngine, clock: FakeClock, owner: Actor = SELLER, **overrides) -> Auction:
    """Create an auction starting in one minute, then move the clock past its start and activate it."""
    auction = await engine.auction_create(owner, draft(clock, **overrides))
    clock.set(auction.data.start_time + timedelta(seconds=1))
    return await engine.auction_activate(auction.id)
