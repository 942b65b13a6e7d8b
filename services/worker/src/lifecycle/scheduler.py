"""APScheduler-driven auction lifecycle: follow-up replay, activation, closing, archival scan."""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel

from models.operations.auctions import AuctionEngine
from models.operations.errors import InvalidAuctionStateError
from models.operations.offers import OfferService
from utils import log

logger = log.get_logger(__name__)

JOB_ID = "auction_lifecycle"


class TickReport(BaseModel):
    started_at: datetime
    replayed: List[str] = []
    activated: List[str] = []
    closed: List[str] = []
    skipped: List[str] = []
    failed: List[str] = []
    archival_candidates: List[str] = []
    expired_offers: int = 0


class AuctionScheduler:
    """
    Periodic lifecycle driver for auctions.

    Each tick first replays follow-up writes that an earlier operation left
    unfinished, then activates SCHEDULED auctions whose start time has passed,
    closes ACTIVE auctions whose end time has passed, and logs long-closed
    auctions as archival candidates. Transitions go through the engine, so
    they serialize with bids on the same auction. A failure on one auction
    is logged and the tick moves on.
    """

    def __init__(
        self,
        engine: AuctionEngine,
        interval_seconds: int = 60,
        retention_days: int = 30,
        archive_batch_size: int = 100,
        sweep_offers: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.engine = engine
        self.offers = OfferService(engine)
        self.interval_seconds = interval_seconds
        self.retention_days = retention_days
        self.archive_batch_size = archive_batch_size
        self.sweep_offers = sweep_offers
        self.clock = clock or engine.clock
        self.last_report: Optional[TickReport] = None
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Start the interval job; the first tick runs immediately. Must be called from a running event loop."""
        if self.is_running:
            logger.info("Auction scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._run_tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=JOB_ID,
            name="Auction Lifecycle",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Auction scheduler started (every {self.interval_seconds}s)")

    def stop(self) -> None:
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Auction scheduler stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "last_tick": self.last_report.started_at if self.last_report else None,
        }

    async def _run_tick(self) -> None:
        try:
            await self.tick()
        except Exception as e:
            logger.error(f"Auction lifecycle tick failed: {e}", exc_info=True)

    async def tick(self) -> TickReport:
        now = self.clock()
        report = TickReport(started_at=now)

        for auction in await self.engine.auction_find_pending_cascades(limit=self.archive_batch_size):
            await self._transition(self.engine.auction_replay_pending, auction.id, report.replayed, report)

        for auction in await self.engine.auction_find_due_for_activation(now):
            await self._transition(self.engine.auction_activate, auction.id, report.activated, report)

        for auction in await self.engine.auction_find_due_for_close(now):
            await self._transition(self.engine.auction_close, auction.id, report.closed, report)

        cutoff = now - timedelta(days=self.retention_days)
        archivable = await self.engine.auction_find_archivable(cutoff, limit=self.archive_batch_size)
        for auction in archivable:
            logger.info(
                f"Auction {auction.id} ({auction.data.status.value}) is an archival candidate, "
                f"last updated {auction.data.updated_at.isoformat()}"
            )
            report.archival_candidates.append(auction.id)

        if self.sweep_offers:
            report.expired_offers = await self.offers.expire_stale()

        if report.replayed or report.activated or report.closed or report.failed:
            logger.info(
                f"Lifecycle tick: {len(report.replayed)} replayed, {len(report.activated)} activated, "
                f"{len(report.closed)} closed, "
                f"{len(report.skipped)} skipped, {len(report.failed)} failed"
            )
        self.last_report = report
        return report

    async def _transition(self, operation, auction_id: str, done: List[str], report: TickReport) -> None:
        try:
            await operation(auction_id)
            done.append(auction_id)
        except InvalidAuctionStateError as e:
            # Another writer got there first (e.g. a bid extended end_time)
            logger.info(f"Skipping auction {auction_id}: {e}")
            report.skipped.append(auction_id)
        except Exception as e:
            logger.error(f"Lifecycle transition failed for auction {auction_id}: {e}", exc_info=True)
            report.failed.append(auction_id)
