import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Callable, ClassVar, Dict, Generic, List, Optional, Sequence, TypeVar

from pydantic import BaseModel, PlainSerializer

from clients.documents import Condition, DocumentStore, OrderBy, format_timestamp

# Datetimes are stored as fixed-width UTC strings so N1QL and the memory
# store can both compare and sort them lexically.
UtcDatetime = Annotated[datetime, PlainSerializer(format_timestamp, return_type=str, when_used="json")]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BaseCouchbaseEntityData(BaseModel):
    created_at: Optional[UtcDatetime] = None
    updated_at: Optional[UtcDatetime] = None
    created_by_user_id: Optional[str] = None

DataT = TypeVar("DataT", bound=BaseCouchbaseEntityData)
T = TypeVar("T", bound="BaseModelCouchbase")

class BaseModelCouchbase(BaseModel, Generic[DataT]):
    id: str
    data: DataT
    cas: Optional[int] = None

    _collection_name: ClassVar[str] = ""

    @classmethod
    def collection_name(cls) -> str:
        if not cls._collection_name:
            raise ValueError(f"_collection_name not set for {cls.__name__}")
        return cls._collection_name

    @staticmethod
    def model_dump_with_excluded_attributes(data: BaseCouchbaseEntityData) -> dict:
        """
        Converts the model to a dictionary for database storage,
        ensuring fields marked with exclude=True are included.
        """
        doc = data.model_dump(mode='json')
        for field_name, field_info in type(data).model_fields.items():
            if field_info.exclude:
                value = getattr(data, field_name)
                if value is not None:
                    doc[field_name] = value
        return doc


def to_document_value(value: Any) -> Any:
    """Convert a filter or SET value into its stored JSON form."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_document_value(v) for v in value]
    return value


def _conditions(where: Sequence[Condition]) -> List[Condition]:
    return [(field, op, to_document_value(value)) for field, op, value in where]


class Repository(Generic[T]):
    """Typed access to one collection of a ``DocumentStore``.

    Timestamps (``created_at``/``updated_at``) and the optional
    ``created_by_user_id`` are maintained here, the same way for every
    entity. ``update`` is CAS-guarded whenever the item carries a CAS.
    """

    def __init__(
        self, model: type[T], store: DocumentStore, clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.model = model
        self.store = store
        self.clock = clock
        self.collection = model.collection_name()

    async def get(self, id: str) -> Optional[T]:
        doc = await self.store.get(self.collection, id)
        if doc is None:
            return None
        return self.model(id=doc.key, data=doc.content, cas=doc.cas)

    async def create(self, data: DataT, key: Optional[str] = None, user_id: Optional[str] = None) -> T:
        if key is None:
            key = str(uuid.uuid4())

        now = self.clock()
        if data.created_at is None:
            data.created_at = now
        data.updated_at = now

        if user_id:
            data.created_by_user_id = user_id

        doc = self.model.model_dump_with_excluded_attributes(data)
        cas = await self.store.insert(self.collection, key, doc)
        return self.model(id=key, data=data, cas=cas)

    async def update(self, item: T) -> T:
        item.data.updated_at = self.clock()
        doc = self.model.model_dump_with_excluded_attributes(item.data)
        item.cas = await self.store.replace(self.collection, item.id, doc, cas=item.cas)
        return item

    async def delete(self, id: str, cas: Optional[int] = None) -> bool:
        return await self.store.remove(self.collection, id, cas=cas)

    async def find(
        self,
        where: Sequence[Condition] = (),
        order_by: Sequence[OrderBy] = (),
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[T]:
        docs = await self.store.find(
            self.collection, _conditions(where), order_by=order_by, skip=skip, limit=limit
        )
        return [self.model(id=doc.key, data=doc.content, cas=doc.cas) for doc in docs]

    async def count(self, where: Sequence[Condition] = ()) -> int:
        return await self.store.count(self.collection, _conditions(where))

    async def update_where(self, where: Sequence[Condition], changes: Dict[str, Any]) -> int:
        changes = {k: to_document_value(v) for k, v in changes.items()}
        changes["updated_at"] = format_timestamp(self.clock())
        return await self.store.update_where(self.collection, _conditions(where), changes)

    async def delete_where(self, where: Sequence[Condition]) -> int:
        return await self.store.delete_where(self.collection, _conditions(where))
