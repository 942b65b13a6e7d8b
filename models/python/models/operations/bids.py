"""
Bid query operations.

Simple reads and status cascades; the bid-placement logic lives in
operations/auctions.py.
"""

from typing import List, Optional

from clients.couchbase import Repository

from models.entities.couchbase.bids import Bid, BidStatus


async def bid_get(bids: Repository[Bid], bid_id: str) -> Optional[Bid]:
    return await bids.get(bid_id)


async def bid_get_by_auction(
    bids: Repository[Bid],
    auction_id: str,
    limit: int = 50,
    status: Optional[BidStatus] = None,
) -> List[Bid]:
    """Get bids for an auction, newest first."""
    where = [("auction_id", "=", auction_id)]
    if status is not None:
        where.append(("status", "=", status))
    return await bids.find(where, order_by=[("placed_at", True)], limit=limit)


async def bid_get_by_bidder(
    bids: Repository[Bid],
    bidder_id: str,
    auction_id: Optional[str] = None,
    limit: int = 50,
) -> List[Bid]:
    """Get a bidder's bid history, optionally for one auction, newest first."""
    where = [("bidder_id", "=", bidder_id)]
    if auction_id is not None:
        where.append(("auction_id", "=", auction_id))
    return await bids.find(where, order_by=[("placed_at", True)], limit=limit)


async def bid_get_accepted(bids: Repository[Bid], auction_id: str) -> List[Bid]:
    return await bids.find(
        [("auction_id", "=", auction_id), ("status", "=", BidStatus.ACCEPTED)]
    )


async def bid_mark_outbid(
    bids: Repository[Bid], auction_id: str, below: float, keep_bid_id: Optional[str] = None
) -> int:
    """Demote ACCEPTED bids on the auction that are under *below*.

    Committed high bids only ever increase, so *below* taken from a stale
    read of the auction can never demote the current leader.
    """
    where = [
        ("auction_id", "=", auction_id),
        ("status", "=", BidStatus.ACCEPTED),
        ("amount", "<", below),
    ]
    if keep_bid_id is not None:
        where.append(("id", "!=", keep_bid_id))
    return await bids.update_where(where, {"status": BidStatus.OUTBID})
