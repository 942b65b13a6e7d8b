"""
Per-auction write serialization.

Two layers, both required:
- ``KeyedLock`` serializes writers for the same key inside one process, so
  same-auction requests and scheduler transitions queue up FIFO.
- ``cas_retry`` makes the read-modify-write itself conditional on the
  document's CAS, which covers writers in other processes. On a CAS
  mismatch (or a transient store error) the helper re-reads, re-runs the
  mutator against the fresh document and retries with exponential backoff
  (10 ms, 20 ms, 40 ms, ...).
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, TypeVar

from clients.couchbase import Repository
from clients.documents import ConflictError, TransientStoreError

from .errors import ConcurrentUpdateError, NotFoundError

logger = logging.getLogger(__name__)

R = TypeVar("R")


class KeyedLock:
    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


async def retry_conflicts(
    attempt: Callable[[], Awaitable[R]], max_retries: int = 5, what: str = "write"
) -> R:
    """Run a CAS-guarded *attempt*, re-running it on conflicts with backoff.

    Each attempt must re-read what it writes. Exhausting the budget raises
    ``ConcurrentUpdateError``.
    """
    backoff_ms = 10
    for n in range(max_retries + 1):
        try:
            return await attempt()
        except (ConflictError, TransientStoreError) as e:
            if n == max_retries:
                raise ConcurrentUpdateError("Concurrent update conflict, please retry") from e
            logger.debug(f"Retrying {what} (attempt {n + 1}/{max_retries}): {e}")
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms *= 2

    raise ConcurrentUpdateError("Max retries exceeded")


async def cas_retry(
    repository: Repository,
    key: str,
    mutator: Callable[..., None],
    max_retries: int = 5,
    not_found_message: str = "Document not found",
):
    """Read-modify-write one document with CAS-guarded retry.

    *mutator* receives the entity's data and mutates it in place; it aborts
    the whole operation by raising (typically an ``AuctionError``). Returns
    the committed entity.
    """

    async def _attempt():
        item = await repository.get(key)
        if item is None:
            raise NotFoundError(not_found_message)
        mutator(item.data)
        return await repository.update(item)

    return await retry_conflicts(_attempt, max_retries, f"write to {repository.collection}/{key}")


async def retry_transient(operation: Callable[[], Awaitable[R]], max_retries: int = 5) -> R:
    """Run a follow-up write, retrying only transient store failures."""
    backoff_ms = 10
    attempt = 0
    while True:
        try:
            return await operation()
        except TransientStoreError as e:
            if attempt >= max_retries:
                raise
            attempt += 1
            logger.debug(f"Transient store error, retrying (attempt {attempt}/{max_retries}): {e}")
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms *= 2
