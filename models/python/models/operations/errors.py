"""Typed errors raised by the auction operations.

Every error carries a stable ``kind`` that callers (HTTP controllers,
workers) can map to a response without parsing messages.
"""


class AuctionError(Exception):
    """Base exception for auction operations."""

    kind = "auction_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class NotFoundError(AuctionError):
    """Unknown auction, bid or offer id."""

    kind = "not_found"


class InvalidAuctionStateError(AuctionError):
    """The auction's status forbids the operation."""

    kind = "invalid_auction_state"


class InvalidBidError(AuctionError):
    """Bid below the increment floor or at/above the buy-now price."""

    kind = "invalid_bid"


class InvalidOfferError(AuctionError):
    """Offer amount out of band, duplicate open offer, or offer no longer pending."""

    kind = "invalid_offer"


class OfferExpiredError(InvalidOfferError):
    kind = "offer_expired"


class ForbiddenError(AuctionError):
    """Actor is neither the auction owner nor an admin."""

    kind = "forbidden"


class InvalidInputError(AuctionError):
    """Malformed amount, date or id, or violated static auction terms."""

    kind = "invalid_input"


class ConcurrentUpdateError(AuctionError):
    """CAS retry budget exhausted while serializing a write."""

    kind = "conflict"


class DeferredUpdateError(AuctionError):
    """The auction change committed but its follow-up writes did not.

    The pending writes are recorded on the auction document and replayed by
    the lifecycle scheduler; the committed change itself stands.
    """

    kind = "deferred"

    def __init__(self, message: str, auction_id: str) -> None:
        super().__init__(message)
        self.auction_id = auction_id
