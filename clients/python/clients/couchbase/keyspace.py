from dataclasses import dataclass
from typing import Any, Dict, Optional

from couchbase.n1ql import QueryScanConsistency
from couchbase.options import QueryOptions, RemoveOptions, ReplaceOptions
from couchbase.result import GetResult, MutationResult

from .config import get_cluster, DEFAULT_BUCKET_NAME


@dataclass
class Keyspace:
    bucket_name: str
    scope_name: str
    collection_name: str

    def __str__(self) -> str:
        return f"`{self.bucket_name}`.`{self.scope_name}`.`{self.collection_name}`"

    async def query(self, statement: str, params: Optional[Dict[str, Any]] = None) -> list:
        cluster = await get_cluster()
        # REQUEST_PLUS so that N1QL reads observe preceding KV writes
        options = QueryOptions(
            named_parameters=params or {},
            scan_consistency=QueryScanConsistency.REQUEST_PLUS,
        )
        result = cluster.query(statement, options)
        return [row async for row in result]

    async def get_collection(self):
        cluster = await get_cluster()
        return cluster.bucket(self.bucket_name).scope(self.scope_name).collection(self.collection_name)

    async def get(self, key: str) -> GetResult:
        collection = await self.get_collection()
        return await collection.get(key)

    async def insert(self, key: str, value: dict) -> MutationResult:
        collection = await self.get_collection()
        return await collection.insert(key, value)

    async def replace(self, key: str, value: dict, cas: Optional[int] = None) -> MutationResult:
        """Replace a document; with *cas*, only if it is unchanged since that read."""
        collection = await self.get_collection()
        if cas:
            return await collection.replace(key, value, ReplaceOptions(cas=cas))
        return await collection.replace(key, value)

    async def remove(self, key: str, cas: Optional[int] = None) -> MutationResult:
        collection = await self.get_collection()
        if cas:
            return await collection.remove(key, RemoveOptions(cas=cas))
        return await collection.remove(key)


def get_keyspace(collection_name: str, scope_name: str = "_default", bucket_name: Optional[str] = None) -> Keyspace:
    """Keyspace for a collection, defaulting to the configured bucket."""
    return Keyspace(bucket_name or DEFAULT_BUCKET_NAME, scope_name, collection_name)
