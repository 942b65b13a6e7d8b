from enum import Enum
from typing import Dict, List, Literal, Optional
from pydantic import Field
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData, UtcDatetime
from models.entities.couchbase.bids import BidData


class AuctionStatus(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    SOLD = "sold"
    SOLD_BUY_NOW = "sold_buy_now"
    SOLD_OFFER = "sold_offer"
    ENDED_NO_SALE = "ended_no_sale"


TERMINAL_STATUSES = (
    AuctionStatus.SOLD,
    AuctionStatus.SOLD_BUY_NOW,
    AuctionStatus.SOLD_OFFER,
    AuctionStatus.ENDED_NO_SALE,
)

Currency = Literal["USD", "EUR", "GBP", "CAD", "AUD"]


class AuctionData(BaseCouchbaseEntityData):
    # Ownership
    owner_id: str

    # Listing
    title: str
    description: str
    currency: Currency = "USD"
    images: List[str] = Field(default_factory=list)

    # Pricing (reserve_price is never exposed to bidders)
    starting_price: float
    reserve_price: Optional[float] = None
    buy_now_price: Optional[float] = None
    min_increment: float = 1.0

    # Schedule
    start_time: UtcDatetime
    end_time: UtcDatetime  # pushed back by anti-snipe extensions
    extend_seconds: int = 30
    extensions_count: int = 0

    # Current state
    status: AuctionStatus = AuctionStatus.SCHEDULED

    # Denormalized high bid (updated atomically via CAS on each bid)
    current_bid: Optional[float] = None
    high_bid_id: Optional[str] = None
    high_bidder_id: Optional[str] = None
    high_bidder_name: Optional[str] = None

    bid_ids: List[str] = Field(default_factory=list)
    offer_ids: List[str] = Field(default_factory=list)

    # Latest offer per buyer; the CAS on this document guards one open offer each
    buyer_offer_ids: Dict[str, str] = Field(default_factory=dict)

    # Follow-up writes committed together with this document and applied
    # afterwards. cascade_pending stays set until all of them have landed.
    pending_bids: Dict[str, BidData] = Field(default_factory=dict)
    pending_offer_id: Optional[str] = None
    cascade_pending: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def reserve_met(self) -> bool:
        if not self.reserve_price:
            return True
        return (self.current_bid or self.starting_price) >= self.reserve_price


class Auction(BaseModelCouchbase[AuctionData]):
    _collection_name = "auctions"
