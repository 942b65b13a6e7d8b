from enum import Enum
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData, UtcDatetime


class OfferStatus(str, Enum):
    PENDING = "pending"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


# Offers in these states block the buyer from opening another one
OPEN_OFFER_STATUSES = (OfferStatus.PENDING, OfferStatus.COUNTERED)


class OfferData(BaseCouchbaseEntityData):
    auction_id: str
    buyer_id: str
    amount: float
    expires_at: UtcDatetime
    status: OfferStatus = OfferStatus.PENDING


class Offer(BaseModelCouchbase[OfferData]):
    _collection_name = "offers"
