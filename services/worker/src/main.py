import asyncio
import signal

import conf
from lifecycle import AuctionScheduler
from utils import log

from clients.couchbase import (
    CouchbaseDocumentStore,
    check_connection,
    ensure_collections,
    ensure_indexes,
)
from clients.documents import DocumentStore, MemoryDocumentStore
from models.entities.couchbase.auctions import Auction
from models.entities.couchbase.bids import Bid
from models.entities.couchbase.offers import Offer
from models.operations.auctions import AuctionEngine
from models.operations.notifier import LoggingNotifier

log.init(conf.get_log_level(), conf.get_environment())
logger = log.get_logger(__name__)

# Secondary indexes backing the engine's filtered queries
INDEXES = {
    Auction.collection_name(): [
        ("status", "start_time"),
        ("status", "end_time"),
        ("status", "updated_at"),
        ("owner_id", "created_at"),
        ("cascade_pending", "updated_at"),
    ],
    Bid.collection_name(): [
        ("auction_id", "status"),
        ("auction_id", "placed_at"),
        ("bidder_id", "placed_at"),
    ],
    Offer.collection_name(): [
        ("auction_id", "buyer_id", "status"),
        ("buyer_id", "created_at"),
        ("status", "expires_at"),
    ],
}


async def init_store() -> DocumentStore:
    backend = conf.get_store_backend()
    if backend == "memory":
        logger.warning("Using the in-memory store; state is lost on exit")
        return MemoryDocumentStore()

    logger.info("Verifying Couchbase connection...")
    await check_connection()
    logger.info("Couchbase connection verified.")
    await ensure_collections(INDEXES.keys())
    await ensure_indexes(INDEXES)
    return CouchbaseDocumentStore()


async def run() -> None:
    store = await init_store()
    engine = AuctionEngine(
        store,
        notifier=LoggingNotifier(),
        settings=conf.get_engine_settings(),
    )

    scheduler_conf = conf.get_scheduler_conf()
    scheduler = AuctionScheduler(
        engine,
        interval_seconds=scheduler_conf.interval_seconds,
        retention_days=scheduler_conf.retention_days,
        archive_batch_size=scheduler_conf.archive_batch_size,
        sweep_offers=scheduler_conf.sweep_offers,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    scheduler.start()
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down auction worker...")
        scheduler.stop()


if not conf.validate():
    raise ValueError("Invalid configuration.")

if __name__ == "__main__":
    logger.info("Starting auction worker")
    asyncio.run(run())
