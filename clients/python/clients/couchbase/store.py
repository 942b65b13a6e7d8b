"""Couchbase implementation of the document store contract.

Key-value operations go through the collection API (so replace/remove can
carry a CAS); filtered reads and bulk writes are N1QL statements over the
collection keyspace. SDK exceptions are translated into the store error
types so callers never import couchbase themselves.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from couchbase.exceptions import (
    AmbiguousTimeoutException,
    CASMismatchException,
    DocumentExistsException,
    DocumentLockedException,
    DocumentNotFoundException,
    ServiceUnavailableException,
    TemporaryFailException,
    UnAmbiguousTimeoutException,
)

from clients.documents import (
    Condition,
    ConflictError,
    OrderBy,
    StoredDocument,
    TransientStoreError,
    check_condition,
    check_field,
)

from .keyspace import Keyspace, get_keyspace

_TRANSIENT = (
    AmbiguousTimeoutException,
    UnAmbiguousTimeoutException,
    TemporaryFailException,
    ServiceUnavailableException,
    DocumentLockedException,
)


def _column(field: str) -> str:
    return "META().id" if field == "id" else f"`{field}`"


def build_where(where: Sequence[Condition]) -> Tuple[str, Dict[str, Any]]:
    """Render AND-ed conditions as a N1QL predicate with named parameters."""
    parts = []
    params: Dict[str, Any] = {}
    for i, condition in enumerate(where):
        field, op, value = check_condition(condition)
        column = _column(field)
        if value is None and op in ("=", "!="):
            parts.append(f"{column} IS {'NOT ' if op == '!=' else ''}NULL")
            continue
        name = f"w{i}"
        params[name] = list(value) if op == "in" else value
        parts.append(f"{column} {'IN' if op == 'in' else op} ${name}")
    return (" AND ".join(parts) if parts else "TRUE"), params


class CouchbaseDocumentStore:
    def __init__(self, scope_name: str = "_default", bucket_name: Optional[str] = None) -> None:
        self.scope_name = scope_name
        self.bucket_name = bucket_name

    def _keyspace(self, collection: str) -> Keyspace:
        return get_keyspace(collection, self.scope_name, self.bucket_name)

    async def _query(self, keyspace: Keyspace, statement: str, params: Dict[str, Any]) -> list:
        try:
            return await keyspace.query(statement, params)
        except _TRANSIENT as e:
            raise TransientStoreError(str(e)) from e

    async def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        try:
            result = await self._keyspace(collection).get(key)
        except DocumentNotFoundException:
            return None
        except _TRANSIENT as e:
            raise TransientStoreError(str(e)) from e
        return StoredDocument(key=key, content=result.content_as[dict], cas=result.cas)

    async def insert(self, collection: str, key: str, content: Dict[str, Any]) -> int:
        try:
            result = await self._keyspace(collection).insert(key, content)
        except DocumentExistsException as e:
            raise ConflictError(f"Document {collection}/{key} already exists") from e
        except _TRANSIENT as e:
            raise TransientStoreError(str(e)) from e
        return result.cas

    async def replace(
        self, collection: str, key: str, content: Dict[str, Any], cas: Optional[int] = None
    ) -> int:
        try:
            result = await self._keyspace(collection).replace(key, content, cas=cas)
        except (CASMismatchException, DocumentNotFoundException) as e:
            raise ConflictError(f"Replace of {collection}/{key} lost a race: {e}") from e
        except _TRANSIENT as e:
            raise TransientStoreError(str(e)) from e
        return result.cas

    async def remove(self, collection: str, key: str, cas: Optional[int] = None) -> bool:
        try:
            await self._keyspace(collection).remove(key, cas=cas)
        except DocumentNotFoundException:
            return False
        except CASMismatchException as e:
            raise ConflictError(f"CAS mismatch removing {collection}/{key}") from e
        except _TRANSIENT as e:
            raise TransientStoreError(str(e)) from e
        return True

    async def find(
        self,
        collection: str,
        where: Sequence[Condition] = (),
        order_by: Sequence[OrderBy] = (),
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[StoredDocument]:
        keyspace = self._keyspace(collection)
        predicate, params = build_where(where)
        query = f"SELECT META().id, META().cas, * FROM {keyspace} WHERE {predicate}"
        if order_by:
            ordering = ", ".join(
                f"{_column(check_field(field))} {'DESC' if desc else 'ASC'}"
                for field, desc in order_by
            )
            query += f" ORDER BY {ordering}"
        if limit is not None:
            query += f" LIMIT {int(limit)}"
        if skip:
            query += f" OFFSET {int(skip)}"
        rows = await self._query(keyspace, query, params)
        return [
            StoredDocument(key=row["id"], content=row[collection], cas=row.get("cas", 0))
            for row in rows if row.get(collection)
        ]

    async def count(self, collection: str, where: Sequence[Condition] = ()) -> int:
        keyspace = self._keyspace(collection)
        predicate, params = build_where(where)
        rows = await self._query(
            keyspace, f"SELECT RAW COUNT(*) FROM {keyspace} WHERE {predicate}", params
        )
        return int(rows[0]) if rows else 0

    async def update_where(
        self, collection: str, where: Sequence[Condition], changes: Dict[str, Any]
    ) -> int:
        keyspace = self._keyspace(collection)
        predicate, params = build_where(where)
        assignments = []
        for i, (field, value) in enumerate(changes.items()):
            check_field(field)
            params[f"s{i}"] = value
            assignments.append(f"`{field}` = $s{i}")
        rows = await self._query(
            keyspace,
            f"UPDATE {keyspace} SET {', '.join(assignments)} WHERE {predicate} RETURNING RAW META().id",
            params,
        )
        return len(rows)

    async def delete_where(self, collection: str, where: Sequence[Condition]) -> int:
        keyspace = self._keyspace(collection)
        predicate, params = build_where(where)
        rows = await self._query(
            keyspace, f"DELETE FROM {keyspace} WHERE {predicate} RETURNING RAW META().id", params
        )
        return len(rows)
