from .config import (
    USERNAME,
    DEFAULT_BUCKET_NAME,
    HOST,
    PROTOCOL,
    auth,
    validate_config,
    get_cluster,
    get_default_bucket,
    check_connection
)
from .keyspace import (
    Keyspace,
    get_keyspace
)
from .base_model import (
    BaseModelCouchbase,
    BaseCouchbaseEntityData,
    Repository,
    UtcDatetime,
    DataT,
    T,
    to_document_value,
    utc_now
)
from .store import CouchbaseDocumentStore
from .provisioning import ensure_collections, ensure_indexes
