from .scheduler import AuctionScheduler, TickReport

__all__ = ["AuctionScheduler", "TickReport"]
