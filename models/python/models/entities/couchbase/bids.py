from enum import Enum
from typing import Optional
from pydantic import BaseModel
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData, UtcDatetime


class BidStatus(str, Enum):
    ACCEPTED = "accepted"
    OUTBID = "outbid"


class ShippingInfo(BaseModel):
    country: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class BidData(BaseCouchbaseEntityData):
    auction_id: str
    bidder_id: str
    amount: float
    placed_at: UtcDatetime
    status: BidStatus = BidStatus.ACCEPTED

    # Informational only
    ip_address: str = "unknown"
    user_agent: Optional[str] = None
    shipping_info: Optional[ShippingInfo] = None


class Bid(BaseModelCouchbase[BidData]):
    _collection_name = "bids"
