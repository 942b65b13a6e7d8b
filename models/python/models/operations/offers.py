"""
Offer operations.

Offers are private price proposals from a buyer to the auction owner. The
bulk expiry helpers are used by the auction engine's cascades; the
owner-facing workflow lives in ``OfferService``, which shares the engine's
per-auction locks so offer changes serialize with bids.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, List, Optional

from clients.couchbase import Repository
from clients.documents import TransientStoreError

from models.entities.couchbase.auctions import AuctionData, AuctionStatus
from models.entities.couchbase.offers import OPEN_OFFER_STATUSES, Offer, OfferData, OfferStatus
from models.operations.errors import (
    AuctionError,
    DeferredUpdateError,
    InvalidAuctionStateError,
    InvalidOfferError,
    NotFoundError,
    OfferExpiredError,
)
from models.operations.checks import check_amount, check_id, check_owner
from models.operations.locking import cas_retry
from models.operations.notifier import notify
from models.operations.settings import Actor, OfferAcceptPolicy

if TYPE_CHECKING:
    from models.operations.auctions import AuctionEngine

logger = logging.getLogger(__name__)

_OFFERABLE_STATUSES = (AuctionStatus.SCHEDULED, AuctionStatus.ACTIVE)

_DUPLICATE_OFFER = "You already have an active offer for this auction"


async def offer_expire_open(
    offers: Repository[Offer],
    auction_id: str,
    below: Optional[float] = None,
    keep_offer_id: Optional[str] = None,
) -> int:
    """Expire PENDING/COUNTERED offers on an auction.

    With *below*, only offers strictly under that amount are expired.
    """
    where = [("auction_id", "=", auction_id), ("status", "in", list(OPEN_OFFER_STATUSES))]
    if below is not None:
        where.append(("amount", "<", below))
    if keep_offer_id is not None:
        where.append(("id", "!=", keep_offer_id))
    return await offers.update_where(where, {"status": OfferStatus.EXPIRED})


class OfferService:
    def __init__(self, engine: "AuctionEngine") -> None:
        self.engine = engine
        self.offers = engine.offers

    async def _offer_cas_retry(self, offer_id: str, mutator) -> Offer:
        return await cas_retry(
            self.offers,
            offer_id,
            mutator,
            max_retries=self.engine.settings.max_retries,
            not_found_message="Offer not found",
        )

    async def _get_offer(self, offer_id: str) -> Offer:
        offer = await self.offers.get(offer_id)
        if offer is None:
            raise NotFoundError("Offer not found")
        return offer

    async def create(self, auction_id: str, buyer_id: str, amount: Any) -> Offer:
        """
        Open an offer on a scheduled or active auction.

        A buyer may hold at most one PENDING/COUNTERED offer per auction.
        The auction keeps the buyer's latest offer id in ``buyer_offer_ids``:
        the offer document is written first, then the auction's CAS replace
        claims the slot only if it still holds the offer this call checked.
        A writer that loses the slot removes its offer document again.
        """
        check_id(auction_id, "auction")
        check_id(buyer_id, "buyer")
        amount = check_amount(amount, "Valid offer amount is required")
        offer_id = str(uuid.uuid4())

        async with self.engine.locks.hold(auction_id):
            now = self.engine.clock()
            auction = await self.engine.auction_get(auction_id)
            _check_offerable(auction.data, amount)

            latest_id = auction.data.buyer_offer_ids.get(buyer_id)
            if latest_id is not None:
                latest = await self.offers.get(latest_id)
                if latest is not None and latest.data.status in OPEN_OFFER_STATUSES:
                    raise InvalidOfferError(_DUPLICATE_OFFER)

            data = OfferData(
                auction_id=auction_id,
                buyer_id=buyer_id,
                amount=amount,
                expires_at=now + timedelta(hours=self.engine.settings.offer_ttl_hours),
                status=OfferStatus.PENDING,
            )
            offer = await self.engine.with_retry(
                lambda: self.offers.create(data, key=offer_id, user_id=buyer_id)
            )

            def _mutate(d: AuctionData) -> None:
                _check_offerable(d, amount)
                if d.buyer_offer_ids.get(buyer_id) != latest_id:
                    raise InvalidOfferError(_DUPLICATE_OFFER)
                d.buyer_offer_ids[buyer_id] = offer_id
                d.offer_ids.append(offer_id)

            try:
                await self.engine.auction_cas_retry(auction_id, _mutate)
            except AuctionError:
                await self._discard(offer_id)
                raise

        logger.info(f"Offer {offer_id} of {amount:.2f} created on auction {auction_id} by {buyer_id}")
        await notify(self.engine.notifier.offer_updated, auction_id)
        return offer

    async def accept(self, offer_id: str, actor: Actor) -> Offer:
        check_id(offer_id, "offer")
        auction_id = (await self._get_offer(offer_id)).data.auction_id
        close_auction = self.engine.settings.offer_accept_policy == OfferAcceptPolicy.CLOSE_AUCTION

        async with self.engine.locks.hold(auction_id):
            now = self.engine.clock()
            offer = await self._get_offer(offer_id)
            auction = await self.engine.auction_get(auction_id)
            check_owner(auction.data, actor, "accept offers for")
            _check_acceptable(offer.data, now)

            deferred = None
            expired = 0
            if close_auction:
                # The offer is accepted as part of settling the sale
                def _sell(d: AuctionData) -> None:
                    check_owner(d, actor, "accept offers for")
                    if d.status not in _OFFERABLE_STATUSES:
                        raise InvalidAuctionStateError("Auction is not accepting offers")
                    d.status = AuctionStatus.SOLD_OFFER
                    d.current_bid = offer.data.amount
                    d.high_bidder_id = offer.data.buyer_id
                    d.high_bidder_name = None
                    d.pending_offer_id = offer_id
                    d.cascade_pending = True

                auction = await self.engine.auction_cas_retry(auction_id, _sell)
                try:
                    _, expired = await self.engine.auction_settle(auction)
                    offer = await self._get_offer(offer_id)
                except DeferredUpdateError as e:
                    deferred = e
            else:
                def _accept(d: OfferData) -> None:
                    _check_acceptable(d, now)
                    d.status = OfferStatus.ACCEPTED

                offer = await self._offer_cas_retry(offer_id, _accept)

        if deferred is None:
            logger.info(
                f"Offer {offer_id} accepted on auction {auction_id} by {actor.user_id}"
                f"{f' (auction sold, offers_expired={expired})' if close_auction else ''}"
            )
        await notify(self.engine.notifier.offer_updated, auction_id)
        if close_auction:
            await notify(self.engine.notifier.auction_ended, auction_id)
        if deferred is not None:
            raise deferred
        return offer

    async def _discard(self, offer_id: str) -> None:
        try:
            await self.engine.with_retry(lambda: self.offers.delete(offer_id))
        except TransientStoreError as e:
            logger.warning(f"Could not remove unclaimed offer {offer_id}: {e}")

    async def decline(self, offer_id: str, actor: Actor) -> Offer:
        check_id(offer_id, "offer")
        auction_id = (await self._get_offer(offer_id)).data.auction_id

        async with self.engine.locks.hold(auction_id):
            auction = await self.engine.auction_get(auction_id)
            check_owner(auction.data, actor, "decline offers for")

            def _decline(d: OfferData) -> None:
                if d.status not in OPEN_OFFER_STATUSES:
                    raise InvalidOfferError("Offer is no longer valid")
                d.status = OfferStatus.DECLINED

            offer = await self._offer_cas_retry(offer_id, _decline)

        logger.info(f"Offer {offer_id} declined on auction {auction_id} by {actor.user_id}")
        await notify(self.engine.notifier.offer_updated, auction_id)
        return offer

    async def list_for_auction(self, auction_id: str, actor: Actor) -> List[Offer]:
        auction = await self.engine.auction_get(auction_id)
        check_owner(auction.data, actor, "view offers for")
        return await self.offers.find(
            [("auction_id", "=", auction_id)], order_by=[("created_at", True)]
        )

    async def list_for_buyer(self, buyer_id: str) -> List[Offer]:
        return await self.offers.find(
            [("buyer_id", "=", buyer_id)], order_by=[("created_at", True)]
        )

    async def expire_stale(self) -> int:
        """Expire every open offer whose expires_at has passed."""
        now = self.engine.clock()
        expired = await self.offers.update_where(
            [("status", "in", list(OPEN_OFFER_STATUSES)), ("expires_at", "<", now)],
            {"status": OfferStatus.EXPIRED},
        )
        if expired:
            logger.info(f"Expired {expired} stale offers")
        return expired


def _check_offerable(d: AuctionData, amount: float) -> None:
    if d.status not in _OFFERABLE_STATUSES:
        raise InvalidAuctionStateError("Auction is not accepting offers")
    if amount < d.starting_price:
        raise InvalidOfferError("Offer amount must be at least the starting price")
    if d.buy_now_price and amount >= d.buy_now_price:
        raise InvalidOfferError("Offer amount cannot exceed or equal buy now price")


def _check_acceptable(data: OfferData, now: datetime) -> None:
    if data.status != OfferStatus.PENDING:
        raise InvalidOfferError("Offer is no longer valid")
    if now > data.expires_at:
        raise OfferExpiredError("Offer has expired")
