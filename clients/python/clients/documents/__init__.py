from .base import (
    Condition,
    OrderBy,
    DocumentStore,
    StoredDocument,
    StoreError,
    ConflictError,
    TransientStoreError,
    format_timestamp,
    check_condition,
    check_field,
)
from .memory import MemoryDocumentStore
