"""
Auction business logic with CAS-guarded atomic operations.

Every state change on an auction follows the same shape:
- take the per-auction ``KeyedLock``
- ``cas_retry`` the auction document: re-read, validate, mutate, CAS-replace.
  Follow-up writes (the new bid document, an accepted offer) are recorded
  on the auction in the same replace and ``cascade_pending`` is set
- settle: apply the follow-up writes and the status cascades (bid
  demotion, offer expiry), then clear the pending entries
- release the lock, then notify (best-effort)

The auction document is the linearization point: once its CAS replace
succeeds the operation has happened, and settling only brings the
dependent documents in line with it. Settling is idempotent; if it cannot
finish, the caller gets ``DeferredUpdateError`` and the scheduler replays
it from the pending entries.
"""

import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Tuple, Union

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from clients.couchbase import Repository, utc_now
from clients.documents import ConflictError, DocumentStore, TransientStoreError

from models.entities.couchbase.auctions import (
    Auction,
    AuctionData,
    AuctionStatus,
    Currency,
    TERMINAL_STATUSES,
)
from models.entities.couchbase.bids import Bid, BidData, BidStatus, ShippingInfo
from models.entities.couchbase.offers import Offer, OfferData, OfferStatus
from models.operations.bids import (
    bid_get,
    bid_get_by_auction,
    bid_get_by_bidder,
    bid_mark_outbid,
)
from models.operations.checks import (
    check_amount,
    check_id,
    check_owner,
    parse_payload,
    validate_terms,
)
from models.operations.errors import (
    ConcurrentUpdateError,
    DeferredUpdateError,
    InvalidAuctionStateError,
    InvalidBidError,
    InvalidInputError,
    NotFoundError,
)
from models.operations.locking import KeyedLock, cas_retry, retry_conflicts, retry_transient
from models.operations.notifier import Notifier, NullNotifier, notify
from models.operations.offers import offer_expire_open
from models.operations.settings import Actor, EngineSettings
from models.operations.snapshots import AuctionSnapshot, auction_to_snapshot

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class AuctionDraft(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1, max_length=2000)
    currency: Currency = "USD"
    starting_price: float = Field(gt=0)
    reserve_price: Optional[float] = Field(default=None, gt=0)
    buy_now_price: Optional[float] = Field(default=None, gt=0)
    start_time: AwareDatetime
    end_time: AwareDatetime
    extend_seconds: int = Field(default=30, ge=0, le=300)
    min_increment: float = Field(default=1.0, ge=0.01)
    images: List[str] = []


class AuctionUpdate(BaseModel):
    """Partial update; only fields explicitly present are applied."""

    model_config = ConfigDict(str_strip_whitespace=True)

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, min_length=1, max_length=2000)
    currency: Optional[Currency] = None
    starting_price: Optional[float] = Field(default=None, gt=0)
    reserve_price: Optional[float] = Field(default=None, gt=0)
    buy_now_price: Optional[float] = Field(default=None, gt=0)
    start_time: Optional[AwareDatetime] = None
    end_time: Optional[AwareDatetime] = None
    extend_seconds: Optional[int] = Field(default=None, ge=0, le=300)
    min_increment: Optional[float] = Field(default=None, ge=0.01)
    images: Optional[List[str]] = None


# Fields that must never be cleared by an update
_REQUIRED_FIELDS = (
    "title", "description", "currency", "starting_price",
    "start_time", "end_time", "extend_seconds", "min_increment", "images",
)


class AuctionPage(BaseModel):
    auctions: List[Auction]
    page: int
    limit: int
    total: int
    pages: int


# ---------------------------------------------------------------------------
# Bid rules
# ---------------------------------------------------------------------------


def minimum_bid(data: AuctionData) -> float:
    current = data.current_bid if data.current_bid is not None else data.starting_price
    return round(max(current, data.starting_price) + data.min_increment, 2)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class AuctionEngine:
    """Bidding, buy-now, lifecycle transitions and auction CRUD.

    Offer operations live in ``OfferService``, which shares this engine's
    repositories, lock table, clock and notifier.
    """

    def __init__(
        self,
        store: DocumentStore,
        notifier: Optional[Notifier] = None,
        settings: Optional[EngineSettings] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.auctions: Repository[Auction] = Repository(Auction, store, clock)
        self.bids: Repository[Bid] = Repository(Bid, store, clock)
        self.offers: Repository[Offer] = Repository(Offer, store, clock)
        self.notifier = notifier or NullNotifier()
        self.settings = settings or EngineSettings()
        self.clock = clock
        self.locks = KeyedLock()

    async def auction_cas_retry(
        self, auction_id: str, mutator: Callable[[AuctionData], None]
    ) -> Auction:
        return await cas_retry(
            self.auctions,
            auction_id,
            mutator,
            max_retries=self.settings.max_retries,
            not_found_message="Auction not found",
        )

    async def with_retry(self, operation):
        return await retry_transient(operation, self.settings.max_retries)

    # -----------------------------------------------------------------------
    # CRUD
    # -----------------------------------------------------------------------

    async def auction_create(self, owner: Actor, draft: Union[AuctionDraft, dict]) -> Auction:
        """Create a SCHEDULED auction. The start time must be in the future."""
        draft = parse_payload(AuctionDraft, draft)
        validate_terms(
            draft.starting_price,
            draft.reserve_price,
            draft.buy_now_price,
            draft.start_time,
            draft.end_time,
        )
        if draft.start_time <= self.clock():
            raise InvalidInputError("Start time must be in the future")

        data = AuctionData(
            owner_id=owner.user_id,
            status=AuctionStatus.SCHEDULED,
            **draft.model_dump(),
        )
        auction = await self.auctions.create(data, user_id=owner.user_id)
        logger.info(f"Auction {auction.id} created by {owner.user_id}, starts {data.start_time.isoformat()}")
        return auction

    async def auction_update(
        self, auction_id: str, actor: Actor, changes: Union[AuctionUpdate, dict]
    ) -> Auction:
        """Edit a SCHEDULED auction (owner or admin only)."""
        check_id(auction_id, "auction")
        changes = parse_payload(AuctionUpdate, changes)
        fields = changes.model_dump(exclude_unset=True)
        for name in _REQUIRED_FIELDS:
            if name in fields and fields[name] is None:
                raise InvalidInputError(f"{name} cannot be cleared")

        async with self.locks.hold(auction_id):
            now = self.clock()

            def _mutate(d: AuctionData) -> None:
                check_owner(d, actor, "update")
                if d.status == AuctionStatus.ACTIVE:
                    raise InvalidAuctionStateError("Cannot update active auctions")
                if d.is_terminal:
                    raise InvalidAuctionStateError(
                        f"Cannot update a closed auction (status: {d.status.value})"
                    )
                for name, value in fields.items():
                    setattr(d, name, value)
                validate_terms(
                    d.starting_price, d.reserve_price, d.buy_now_price, d.start_time, d.end_time
                )
                if "start_time" in fields and d.start_time <= now:
                    raise InvalidInputError("Start time must be in the future")

            auction = await self.auction_cas_retry(auction_id, _mutate)

        logger.info(f"Auction {auction_id} updated by {actor.user_id}: {sorted(fields)}")
        return auction

    async def auction_delete(self, auction_id: str, actor: Actor) -> None:
        """Delete a non-active auction together with its bids and offers."""
        check_id(auction_id, "auction")
        async def _attempt() -> None:
            auction = await self.auctions.get(auction_id)
            if auction is None:
                raise NotFoundError("Auction not found")
            check_owner(auction.data, actor, "delete")
            if auction.data.status == AuctionStatus.ACTIVE:
                raise InvalidAuctionStateError("Cannot delete active auctions")
            await self.auctions.delete(auction_id, cas=auction.cas)

        async with self.locks.hold(auction_id):
            await retry_conflicts(_attempt, self.settings.max_retries, f"delete of auction {auction_id}")

            bids_removed = await self.with_retry(
                lambda: self.bids.delete_where([("auction_id", "=", auction_id)])
            )
            offers_removed = await self.with_retry(
                lambda: self.offers.delete_where([("auction_id", "=", auction_id)])
            )

        logger.info(
            f"Auction {auction_id} deleted by {actor.user_id} "
            f"({bids_removed} bids, {offers_removed} offers removed)"
        )

    # -----------------------------------------------------------------------
    # Bidding
    # -----------------------------------------------------------------------

    async def place_bid(
        self,
        auction_id: str,
        bidder_id: str,
        amount: Any,
        shipping_info: Optional[Union[ShippingInfo, dict]] = None,
        bidder_name: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuctionSnapshot:
        """
        Atomically place a bid on an active auction.

        Flow:
        1. Validate status, timing and amount on a fresh read
        2. CAS-update the auction's denormalized high-bid fields, recording
           the bid document as pending
        3. If the anti-snipe window is hit, extend end_time by extend_seconds
        4. Settle: record the bid, demote lower ACCEPTED bids and expire
           open offers below the high bid

        Raises ``DeferredUpdateError`` when the bid committed but step 4
        could not finish.
        """
        check_id(auction_id, "auction")
        check_id(bidder_id, "bidder")
        amount = check_amount(amount, "Valid bid amount is required")
        shipping = parse_payload(ShippingInfo, shipping_info) if shipping_info is not None else None
        bid_id = str(uuid.uuid4())
        window = self.settings.anti_snipe_window_seconds

        async with self.locks.hold(auction_id):
            now = self.clock()
            extended = False
            bid_data = BidData(
                auction_id=auction_id,
                bidder_id=bidder_id,
                amount=amount,
                placed_at=now,
                status=BidStatus.ACCEPTED,
                ip_address=ip_address or "unknown",
                user_agent=user_agent[:500] if user_agent else None,
                shipping_info=shipping,
                created_at=now,
            )

            def _mutate(d: AuctionData) -> None:
                nonlocal extended
                extended = False
                if d.status != AuctionStatus.ACTIVE or not (d.start_time <= now <= d.end_time):
                    raise InvalidAuctionStateError("Auction is not accepting bids")

                floor = minimum_bid(d)
                if amount < floor:
                    raise InvalidBidError(f"Bid must be at least {floor:.2f} {d.currency}")
                if d.buy_now_price and amount >= d.buy_now_price:
                    raise InvalidBidError("Bid amount cannot exceed or equal buy now price")

                d.current_bid = amount
                d.high_bid_id = bid_id
                d.high_bidder_id = bidder_id
                d.high_bidder_name = bidder_name
                d.bid_ids.append(bid_id)
                d.pending_bids[bid_id] = bid_data
                d.cascade_pending = True

                # Anti-snipe extension, uncapped: every qualifying bid extends again
                if (d.end_time - now).total_seconds() <= window and d.extend_seconds > 0:
                    d.end_time += timedelta(seconds=d.extend_seconds)
                    d.extensions_count += 1
                    extended = True

            auction = await self.auction_cas_retry(auction_id, _mutate)
            deferred = None
            try:
                outbid, expired = await self.auction_settle(auction)
            except DeferredUpdateError as e:
                deferred = e

        if deferred is None:
            logger.info(
                f"Bid {bid_id} accepted on auction {auction_id}: {amount:.2f} {auction.data.currency} "
                f"by {bidder_id} (outbid={outbid}, offers_expired={expired}"
                f"{', extended to ' + auction.data.end_time.isoformat() if extended else ''})"
            )
        await notify(self.notifier.bid_updated, auction_id)
        if deferred is not None:
            raise deferred
        return auction_to_snapshot(auction, now)

    async def _record_bid(self, bid_id: str, data: BidData) -> None:
        try:
            await self.with_retry(lambda: self.bids.create(data, key=bid_id, user_id=data.bidder_id))
        except ConflictError:
            # Recorded by an earlier settle, or an ambiguous timeout persisted the first attempt
            logger.debug(f"Bid {bid_id} already recorded")

    async def _mark_offer_accepted(self, offer_id: str) -> None:
        def _accept(d: OfferData) -> None:
            d.status = OfferStatus.ACCEPTED

        await cas_retry(
            self.offers,
            offer_id,
            _accept,
            max_retries=self.settings.max_retries,
            not_found_message="Offer not found",
        )

    async def auction_settle(self, auction: Auction) -> Tuple[int, int]:
        """
        Apply the follow-up writes recorded on a committed auction.

        Inserts pending bids under their pre-generated keys, then re-reads
        the auction and demotes every ACCEPTED bid below its current high
        bid. The re-read comes after the inserts, so a bid that lost a race
        to a higher one is demoted here even when the winner settled first.
        Open offers are then expired: all but an accepted one on a sold
        auction, or those below the high bid otherwise. Finally the settled
        entries are cleared from the auction.

        Must run under the auction's lock. Returns ``(outbid, expired)``.
        """
        auction_id = auction.id
        pending = auction.data
        try:
            for bid_id, bid_data in pending.pending_bids.items():
                await self._record_bid(bid_id, bid_data)

            fresh = (await self.auction_get(auction_id)).data
            outbid = 0
            if fresh.current_bid is not None:
                outbid = await self.with_retry(
                    lambda: bid_mark_outbid(
                        self.bids, auction_id, below=fresh.current_bid, keep_bid_id=fresh.high_bid_id
                    )
                )

            if pending.pending_offer_id:
                await self._mark_offer_accepted(pending.pending_offer_id)
                expired = await self.with_retry(
                    lambda: offer_expire_open(self.offers, auction_id, keep_offer_id=pending.pending_offer_id)
                )
            elif fresh.is_terminal:
                expired = await self.with_retry(lambda: offer_expire_open(self.offers, auction_id))
            elif fresh.current_bid is not None:
                expired = await self.with_retry(
                    lambda: offer_expire_open(self.offers, auction_id, below=fresh.current_bid)
                )
            else:
                expired = 0

            if pending.cascade_pending:
                def _clear(d: AuctionData) -> None:
                    for bid_id in pending.pending_bids:
                        d.pending_bids.pop(bid_id, None)
                    if d.pending_offer_id == pending.pending_offer_id:
                        d.pending_offer_id = None
                    d.cascade_pending = bool(d.pending_bids or d.pending_offer_id)

                await self.auction_cas_retry(auction_id, _clear)
        except (TransientStoreError, ConcurrentUpdateError) as e:
            logger.warning(f"Follow-up writes for auction {auction_id} deferred: {e}")
            raise DeferredUpdateError(
                "Change saved; related records are still being updated", auction_id
            ) from e

        return outbid, expired

    async def auction_replay_pending(self, auction_id: str) -> Auction:
        """Settle an auction whose follow-up writes were left unfinished."""
        async with self.locks.hold(auction_id):
            auction = await self.auction_get(auction_id)
            if auction.data.cascade_pending:
                outbid, expired = await self.auction_settle(auction)
                logger.info(
                    f"Replayed follow-up writes for auction {auction_id} "
                    f"(bids={len(auction.data.pending_bids)}, outbid={outbid}, offers_expired={expired})"
                )
        return auction

    async def buy_now(
        self, auction_id: str, buyer_id: str, buyer_name: Optional[str] = None
    ) -> AuctionSnapshot:
        """End an active auction immediately as a sale at its buy-now price."""
        check_id(auction_id, "auction")
        check_id(buyer_id, "buyer")

        async with self.locks.hold(auction_id):
            now = self.clock()

            def _mutate(d: AuctionData) -> None:
                if not d.buy_now_price:
                    raise InvalidAuctionStateError("This auction does not have a buy now option")
                if d.status != AuctionStatus.ACTIVE:
                    raise InvalidAuctionStateError("Auction is not active")
                if now > d.end_time:
                    raise InvalidAuctionStateError("Auction has ended")
                d.status = AuctionStatus.SOLD_BUY_NOW
                d.current_bid = d.buy_now_price
                d.high_bidder_id = buyer_id
                d.high_bidder_name = buyer_name
                d.cascade_pending = True

            auction = await self.auction_cas_retry(auction_id, _mutate)
            deferred = None
            try:
                _, expired = await self.auction_settle(auction)
            except DeferredUpdateError as e:
                deferred = e

        if deferred is None:
            logger.info(
                f"Auction {auction_id} bought now by {buyer_id} at "
                f"{auction.data.buy_now_price:.2f} {auction.data.currency} (offers_expired={expired})"
            )
        await notify(self.notifier.auction_ended, auction_id)
        if deferred is not None:
            raise deferred
        return auction_to_snapshot(auction, now)

    # -----------------------------------------------------------------------
    # Lifecycle transitions (driven by the scheduler)
    # -----------------------------------------------------------------------

    async def auction_activate(self, auction_id: str) -> Auction:
        """Transition a scheduled auction whose start time has passed to active."""
        async with self.locks.hold(auction_id):
            now = self.clock()

            def _mutate(d: AuctionData) -> None:
                if d.status != AuctionStatus.SCHEDULED:
                    raise InvalidAuctionStateError(f"Cannot activate: status is {d.status.value}")
                if d.start_time > now:
                    raise InvalidAuctionStateError("Cannot activate: start time not reached")
                d.status = AuctionStatus.ACTIVE

            auction = await self.auction_cas_retry(auction_id, _mutate)

        logger.info(f"Auction {auction_id} started")
        await notify(self.notifier.bid_updated, auction_id)
        return auction

    async def auction_close(self, auction_id: str) -> Auction:
        """
        Close an active auction whose end time has passed.

        SOLD when there is a high bidder and the reserve (if any) is met by
        ``current_bid or starting_price``; ENDED_NO_SALE otherwise. The end
        time is re-checked on the fresh read, so a late bid that extended
        the auction keeps it open.
        """
        async with self.locks.hold(auction_id):
            now = self.clock()

            def _mutate(d: AuctionData) -> None:
                if d.status != AuctionStatus.ACTIVE:
                    raise InvalidAuctionStateError(f"Cannot close: status is {d.status.value}")
                if d.end_time > now:
                    raise InvalidAuctionStateError("Cannot close: end time not reached")
                if d.reserve_met and d.high_bidder_id:
                    d.status = AuctionStatus.SOLD
                else:
                    d.status = AuctionStatus.ENDED_NO_SALE

            auction = await self.auction_cas_retry(auction_id, _mutate)

        logger.info(f"Auction {auction_id} ended with status: {auction.data.status.value}")
        await notify(self.notifier.auction_ended, auction_id)
        return auction

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    async def auction_get(self, auction_id: str) -> Auction:
        check_id(auction_id, "auction")
        auction = await self.auctions.get(auction_id)
        if auction is None:
            raise NotFoundError("Auction not found")
        return auction

    async def auction_snapshot(self, auction_id: str) -> AuctionSnapshot:
        auction = await self.auction_get(auction_id)
        return auction_to_snapshot(auction, self.clock())

    async def auction_search(
        self,
        status: Optional[AuctionStatus] = None,
        owner_id: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> AuctionPage:
        """Paginated listing, newest first."""
        if page < 1 or limit < 1:
            raise InvalidInputError("page and limit must be positive")
        where = []
        if status is not None:
            try:
                status = AuctionStatus(status)
            except ValueError as e:
                raise InvalidInputError(f"Invalid auction status: {status}") from e
            where.append(("status", "=", status))
        if owner_id is not None:
            where.append(("owner_id", "=", owner_id))

        auctions = await self.auctions.find(
            where,
            order_by=[("created_at", True)],
            skip=(page - 1) * limit,
            limit=limit,
        )
        total = await self.auctions.count(where)
        return AuctionPage(
            auctions=auctions,
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit),
        )

    async def auction_get_by_owner(
        self, owner_id: str, status: Optional[AuctionStatus] = None, page: int = 1, limit: int = 10
    ) -> AuctionPage:
        return await self.auction_search(status=status, owner_id=owner_id, page=page, limit=limit)

    async def auction_find_active(self) -> List[Auction]:
        return await self.auctions.find(
            [("status", "=", AuctionStatus.ACTIVE), ("end_time", ">", self.clock())],
            order_by=[("end_time", False)],
        )

    async def auction_find_ending_soon(self, minutes: int = 5) -> List[Auction]:
        now = self.clock()
        return await self.auctions.find(
            [
                ("status", "=", AuctionStatus.ACTIVE),
                ("end_time", ">", now),
                ("end_time", "<=", now + timedelta(minutes=minutes)),
            ],
            order_by=[("end_time", False)],
        )

    async def auction_find_due_for_activation(self, now: datetime) -> List[Auction]:
        return await self.auctions.find(
            [("status", "=", AuctionStatus.SCHEDULED), ("start_time", "<=", now)],
            order_by=[("start_time", False)],
        )

    async def auction_find_due_for_close(self, now: datetime) -> List[Auction]:
        return await self.auctions.find(
            [("status", "=", AuctionStatus.ACTIVE), ("end_time", "<=", now)],
            order_by=[("end_time", False)],
        )

    async def auction_find_archivable(self, cutoff: datetime, limit: int = 100) -> List[Auction]:
        """Closed auctions not touched since *cutoff* (oldest first)."""
        return await self.auctions.find(
            [("status", "in", list(TERMINAL_STATUSES)), ("updated_at", "<", cutoff)],
            order_by=[("updated_at", False)],
            limit=limit,
        )

    async def auction_find_pending_cascades(self, limit: int = 100) -> List[Auction]:
        return await self.auctions.find(
            [("cascade_pending", "=", True)],
            order_by=[("updated_at", False)],
            limit=limit,
        )

    async def bid_history(self, auction_id: str, limit: int = 50) -> List[Bid]:
        await self.auction_get(auction_id)
        return await bid_get_by_auction(self.bids, auction_id, limit=limit)

    async def bid_get_user_bids(self, auction_id: str, bidder_id: str) -> List[Bid]:
        check_id(auction_id, "auction")
        return await bid_get_by_bidder(self.bids, bidder_id, auction_id=auction_id)

    async def bid_is_winning(self, bid_id: str) -> bool:
        """True when the bid is the auction's current high bid and its bidder still leads."""
        check_id(bid_id, "bid")
        bid = await bid_get(self.bids, bid_id)
        if bid is None:
            raise NotFoundError("Bid not found")
        auction = await self.auctions.get(bid.data.auction_id)
        if auction is None:
            return False
        return (
            auction.data.high_bid_id == bid.id
            and auction.data.high_bidder_id == bid.data.bidder_id
        )
