import logging
from typing import Dict, Iterable, Optional, Sequence

from couchbase.exceptions import CollectionAlreadyExistsException

from .config import get_cluster, DEFAULT_BUCKET_NAME
from .keyspace import get_keyspace

logger = logging.getLogger(__name__)


async def ensure_collections(
    collection_names: Iterable[str],
    scope_name: str = "_default",
    bucket_name: Optional[str] = None,
) -> None:
    """Create any missing collections in an existing bucket/scope."""
    bucket_name = bucket_name or DEFAULT_BUCKET_NAME
    cluster = await get_cluster()
    collection_manager = cluster.bucket(bucket_name).collections()

    all_scopes = await collection_manager.get_all_scopes()
    existing = set()
    for scope in all_scopes:
        if scope.name == scope_name:
            existing = {c.name for c in scope.collections}
            break

    for name in collection_names:
        if name in existing:
            logger.debug(f"Collection '{name}' already exists in scope '{scope_name}'")
            continue
        logger.info(f"Creating collection '{name}' in scope '{scope_name}'...")
        try:
            await collection_manager.create_collection(scope_name, name)
        except CollectionAlreadyExistsException:
            logger.info(f"Collection '{name}' already exists")


async def ensure_indexes(
    indexes: Dict[str, Sequence[Sequence[str]]],
    scope_name: str = "_default",
    bucket_name: Optional[str] = None,
) -> None:
    """Create a primary index plus the given secondary indexes per collection.

    *indexes* maps a collection name to a list of field tuples; each tuple
    becomes one composite secondary index.
    """
    for collection_name, field_sets in indexes.items():
        keyspace = get_keyspace(collection_name, scope_name, bucket_name)
        await keyspace.query(f"CREATE PRIMARY INDEX IF NOT EXISTS ON {keyspace}")
        for fields in field_sets:
            index_name = f"idx_{collection_name}_{'_'.join(fields)}"
            columns = ", ".join(f"`{f}`" for f in fields)
            await keyspace.query(
                f"CREATE INDEX `{index_name}` IF NOT EXISTS ON {keyspace}({columns})"
            )
            logger.debug(f"Ensured index {index_name}")
