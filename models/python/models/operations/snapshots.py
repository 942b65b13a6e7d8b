from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from models.entities.couchbase.auctions import Auction, AuctionStatus


class AuctionSnapshot(BaseModel):
    """Public view of an auction.

    Only says whether the reserve has been met, never the reserve itself,
    and identifies the leader by display name only. A leader who bid
    without a display name shows as None.
    """

    id: str
    title: str
    currency: str
    status: AuctionStatus
    current_bid: Optional[float] = None
    high_bid: float
    high_bidder: Optional[str] = None
    start_time: datetime
    end_time: datetime
    time_remaining: int
    online: int = 0
    buy_now_price: Optional[float] = None
    reserve_price_met: bool
    images: List[str] = []


def auction_to_snapshot(auction: Auction, now: datetime) -> AuctionSnapshot:
    d = auction.data
    if d.status == AuctionStatus.ACTIVE:
        time_remaining = max(0, int((d.end_time - now).total_seconds()))
    else:
        time_remaining = 0

    return AuctionSnapshot(
        id=auction.id,
        title=d.title,
        currency=d.currency,
        status=d.status,
        current_bid=d.current_bid,
        high_bid=d.current_bid or d.starting_price,
        high_bidder=d.high_bidder_name if d.high_bidder_id else None,
        start_time=d.start_time,
        end_time=d.end_time,
        time_remaining=time_remaining,
        online=0,
        buy_now_price=d.buy_now_price,
        reserve_price_met=d.reserve_met,
        images=list(d.images),
    )
