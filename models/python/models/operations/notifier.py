"""Outbound auction events.

The engine only knows this narrow interface; fan-out to websocket rooms or
other subscribers lives elsewhere. Delivery is best-effort: ``notify``
logs and drops any failure so a broken subscriber can never undo or fail
a committed bid.
"""

import logging
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def bid_updated(self, auction_id: str) -> None: ...

    async def auction_ended(self, auction_id: str) -> None: ...

    async def offer_updated(self, auction_id: str) -> None: ...


class NullNotifier:
    async def bid_updated(self, auction_id: str) -> None:
        pass

    async def auction_ended(self, auction_id: str) -> None:
        pass

    async def offer_updated(self, auction_id: str) -> None:
        pass


class LoggingNotifier:
    """Notifier for headless workers: records events in the log only."""

    async def bid_updated(self, auction_id: str) -> None:
        logger.info(f"Event bid_updated auction={auction_id}")

    async def auction_ended(self, auction_id: str) -> None:
        logger.info(f"Event auction_ended auction={auction_id}")

    async def offer_updated(self, auction_id: str) -> None:
        logger.info(f"Event offer_updated auction={auction_id}")


async def notify(event: Callable[[str], Awaitable[None]], auction_id: str) -> None:
    try:
        await event(auction_id)
    except Exception as e:
        logger.warning(f"Failed to deliver {event.__name__} for auction {auction_id}: {e}")
