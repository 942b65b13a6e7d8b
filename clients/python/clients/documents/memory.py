"""In-process document store used by the test suite and local runs.

Each operation yields to the event loop once before touching state, so
concurrent callers interleave the way they would against a remote store,
while the mutation itself stays atomic.
"""

import asyncio
import copy
import itertools
import operator
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .base import Condition, ConflictError, OrderBy, StoredDocument, check_condition

_COMPARATORS = {
    "=": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def _value(key: str, content: Dict[str, Any], field: str) -> Any:
    return key if field == "id" else content.get(field)


def _sort_key(row: Tuple[str, Dict[str, Any], int], field: str) -> Tuple[bool, Any]:
    # NULL/missing sorts before any value, as in N1QL
    value = _value(row[0], row[1], field)
    return (value is not None, value if value is not None else 0)


def _matches(key: str, content: Dict[str, Any], where: Sequence[Condition]) -> bool:
    for field, op, expected in where:
        actual = _value(key, content, field)
        if op == "in":
            if actual not in expected:
                return False
            continue
        if expected is None:
            # "= None" / "!= None" mean IS NULL / IS NOT NULL
            if op == "=":
                matched = actual is None
            elif op == "!=":
                matched = actual is not None
            else:
                raise ValueError(f"Operator {op!r} cannot compare against None")
        elif actual is None:
            matched = False
        else:
            matched = _COMPARATORS[op](actual, expected)
        if not matched:
            return False
    return True


class MemoryDocumentStore:
    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Tuple[Dict[str, Any], int]]] = defaultdict(dict)
        self._cas = itertools.count(1)

    async def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        await asyncio.sleep(0)
        entry = self._collections[collection].get(key)
        if entry is None:
            return None
        content, cas = entry
        return StoredDocument(key=key, content=copy.deepcopy(content), cas=cas)

    async def insert(self, collection: str, key: str, content: Dict[str, Any]) -> int:
        await asyncio.sleep(0)
        docs = self._collections[collection]
        if key in docs:
            raise ConflictError(f"Document {collection}/{key} already exists")
        cas = next(self._cas)
        docs[key] = (copy.deepcopy(content), cas)
        return cas

    async def replace(
        self, collection: str, key: str, content: Dict[str, Any], cas: Optional[int] = None
    ) -> int:
        await asyncio.sleep(0)
        docs = self._collections[collection]
        entry = docs.get(key)
        if entry is None:
            raise ConflictError(f"Document {collection}/{key} does not exist")
        if cas is not None and entry[1] != cas:
            raise ConflictError(f"CAS mismatch on {collection}/{key}")
        new_cas = next(self._cas)
        docs[key] = (copy.deepcopy(content), new_cas)
        return new_cas

    async def remove(self, collection: str, key: str, cas: Optional[int] = None) -> bool:
        await asyncio.sleep(0)
        docs = self._collections[collection]
        entry = docs.get(key)
        if entry is None:
            return False
        if cas is not None and entry[1] != cas:
            raise ConflictError(f"CAS mismatch on {collection}/{key}")
        del docs[key]
        return True

    def _select(self, collection: str, where: Sequence[Condition]) -> List[Tuple[str, Dict[str, Any], int]]:
        for condition in where:
            check_condition(condition)
        return [
            (key, content, cas)
            for key, (content, cas) in self._collections[collection].items()
            if _matches(key, content, where)
        ]

    async def find(
        self,
        collection: str,
        where: Sequence[Condition] = (),
        order_by: Sequence[OrderBy] = (),
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[StoredDocument]:
        await asyncio.sleep(0)
        rows = self._select(collection, where)
        # Stable sorts applied last-key-first give a multi-key ordering
        for field, descending in reversed(list(order_by)):
            rows.sort(key=lambda row: _sort_key(row, field), reverse=descending)
        end = None if limit is None else skip + limit
        return [
            StoredDocument(key=key, content=copy.deepcopy(content), cas=cas)
            for key, content, cas in rows[skip:end]
        ]

    async def count(self, collection: str, where: Sequence[Condition] = ()) -> int:
        await asyncio.sleep(0)
        return len(self._select(collection, where))

    async def update_where(
        self, collection: str, where: Sequence[Condition], changes: Dict[str, Any]
    ) -> int:
        await asyncio.sleep(0)
        docs = self._collections[collection]
        rows = self._select(collection, where)
        for key, content, _ in rows:
            updated = copy.deepcopy(content)
            updated.update(copy.deepcopy(changes))
            docs[key] = (updated, next(self._cas))
        return len(rows)

    async def delete_where(self, collection: str, where: Sequence[Condition]) -> int:
        await asyncio.sleep(0)
        docs = self._collections[collection]
        rows = self._select(collection, where)
        for key, _, _ in rows:
            del docs[key]
        return len(rows)
