"""Document store contract shared by the Couchbase and in-memory backends.

A store deals in plain JSON-compatible dicts keyed by collection name and
document key. Every write returns the new CAS value; ``replace`` and
``remove`` accept an expected CAS and raise ``ConflictError`` when the
document changed underneath the caller.

Filters are sequences of ``(field, op, value)`` conditions joined with AND.
``field == "id"`` addresses the document key. Supported operators are
``= != < <= > >= in``. Timestamps must already be rendered with
``format_timestamp`` so that both backends can compare them as strings.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

Condition = Tuple[str, str, Any]
OrderBy = Tuple[str, bool]  # (field, descending)

OPERATORS = ("=", "!=", "<", "<=", ">", ">=", "in")

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class StoreError(Exception):
    """Base exception for document store failures."""
    pass


class ConflictError(StoreError):
    """CAS mismatch, missing document on replace, or duplicate key on insert."""
    pass


class TransientStoreError(StoreError):
    """Timeouts and temporary failures that are safe to retry."""
    pass


@dataclass
class StoredDocument:
    key: str
    content: Dict[str, Any]
    cas: int


def format_timestamp(value: datetime) -> str:
    """Render a datetime as a fixed-width UTC string that sorts lexically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def check_field(field: str) -> str:
    if not _FIELD_RE.match(field):
        raise ValueError(f"Invalid field name: {field!r}")
    return field


def check_condition(condition: Condition) -> Condition:
    field, op, _ = condition
    check_field(field)
    if op not in OPERATORS:
        raise ValueError(f"Unsupported filter operator: {op!r}")
    return condition


class DocumentStore(Protocol):
    async def get(self, collection: str, key: str) -> Optional[StoredDocument]: ...

    async def insert(self, collection: str, key: str, content: Dict[str, Any]) -> int: ...

    async def replace(
        self, collection: str, key: str, content: Dict[str, Any], cas: Optional[int] = None
    ) -> int: ...

    async def remove(self, collection: str, key: str, cas: Optional[int] = None) -> bool: ...

    async def find(
        self,
        collection: str,
        where: Sequence[Condition] = (),
        order_by: Sequence[OrderBy] = (),
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[StoredDocument]: ...

    async def count(self, collection: str, where: Sequence[Condition] = ()) -> int: ...

    async def update_where(
        self, collection: str, where: Sequence[Condition], changes: Dict[str, Any]
    ) -> int: ...

    async def delete_where(self, collection: str, where: Sequence[Condition]) -> int: ...
