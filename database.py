"""
Document store access for the shop (MongoDB via pymongo).

Each collection name is the lowercase name of its schema class (see schemas.py).
Documents are keyed by string ids generated from bson ObjectIds and come back
from every read as plain dicts carrying an "id" key.

Writes may carry field sentinels that the server resolves:
- SERVER_TIMESTAMP -> server clock at write time ($currentDate / $$NOW)
- Increment(delta) -> atomic counter update ($inc)
- ArrayUnion(values) -> add values not already present ($addToSet)

Multi-document transactions need a replica set (or Atlas) deployment.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient

from config import Settings, get_settings
from errors import NotFoundError
from logger import get_logger

logger = get_logger("database")

T = TypeVar("T")

Filter = Tuple[str, str, Any]
OrderBy = Tuple[str, str]


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class Increment:
    delta: float


@dataclass(frozen=True)
class ArrayUnion:
    values: Sequence[Any]


_RANGE_OPS = {"<": "$lt", "<=": "$lte", ">": "$gt", ">=": "$gte", "in": "$in"}
FILTER_OPS = ("==", "array-contains") + tuple(_RANGE_OPS)


# Utils

def _field(name: str) -> str:
    return "_id" if name == "id" else name


def to_entity(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    # Store dates are UTC
    for k, v in list(d.items()):
        if isinstance(v, datetime) and v.tzinfo is None:
            d[k] = v.replace(tzinfo=timezone.utc)
    return d


def build_filter(filters: Iterable[Filter]) -> Dict[str, Any]:
    """Translate (field, op, value) triples into a Mongo filter document."""
    spec: Dict[str, Dict[str, Any]] = {}
    for name, op, value in filters:
        if op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter operator: {op}")
        # $eq against an array field matches any element, which covers array-contains
        mongo_op = "$eq" if op in ("==", "array-contains") else _RANGE_OPS[op]
        if op == "in":
            value = list(value)
        spec.setdefault(_field(name), {})[mongo_op] = value
    return spec


def build_sort(order_by: Iterable[OrderBy]) -> List[Tuple[str, int]]:
    """Sort keys for a query; the document id is always the final tie-break."""
    sort = []
    for name, direction in order_by:
        if direction not in ("asc", "desc"):
            raise ValueError(f"Unsupported sort direction: {direction}")
        sort.append((_field(name), ASCENDING if direction == "asc" else DESCENDING))
    if not any(key == "_id" for key, _ in sort):
        sort.append(("_id", sort[-1][1] if sort else ASCENDING))
    return sort


def build_start_after(sort: Sequence[Tuple[str, int]], snapshot: Dict[str, Any]) -> Dict[str, Any]:
    """Keyset condition selecting documents strictly after `snapshot` in `sort` order."""
    def value(key):
        return snapshot["id"] if key == "_id" else snapshot.get(key)

    clauses = []
    for i, (key, direction) in enumerate(sort):
        clause = {k: value(k) for k, _ in sort[:i]}
        clause[key] = {"$gt" if direction == ASCENDING else "$lt": value(key)}
        clauses.append(clause)
    return {"$or": clauses}


def build_update(fields: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Translate a field patch (with sentinels) into Mongo update operators."""
    update: Dict[str, Dict[str, Any]] = {}
    for name, value in fields.items():
        if value is SERVER_TIMESTAMP:
            update.setdefault("$currentDate", {})[name] = True
        elif isinstance(value, Increment):
            update.setdefault("$inc", {})[name] = value.delta
        elif isinstance(value, ArrayUnion):
            update.setdefault("$addToSet", {})[name] = {"$each": list(value.values)}
        else:
            update.setdefault("$set", {})[name] = value
    return update


def build_replacement(doc_id: str, fields: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Update pipeline that overwrites a whole document, stamping server times."""
    plain: Dict[str, Any] = {"_id": doc_id}
    stamps: Dict[str, Any] = {}
    for name, value in fields.items():
        if value is SERVER_TIMESTAMP:
            stamps[name] = "$$NOW"
        elif isinstance(value, Increment):
            plain[name] = value.delta
        elif isinstance(value, ArrayUnion):
            plain[name] = list(value.values)
        else:
            plain[name] = value
    pipeline: List[Dict[str, Any]] = [{"$replaceWith": {"$literal": plain}}]
    if stamps:
        pipeline.append({"$set": stamps})
    return pipeline


class MongoTransaction:
    """Reads and writes bound to one transaction session."""

    def __init__(self, store: "MongoStore", session):
        self._store = store
        self._session = session

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return self._store.get(collection, doc_id, session=self._session)

    def query(self, collection: str, filters: Sequence[Filter] = (), order_by: Sequence[OrderBy] = (),
              limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self._store.query(collection, filters, order_by, limit, session=self._session)

    def set(self, collection: str, doc_id: str, fields: Dict[str, Any], merge: bool = False) -> None:
        self._store.set(collection, doc_id, fields, merge=merge, session=self._session)

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        self._store.update(collection, doc_id, fields, session=self._session)

    def delete(self, collection: str, doc_id: str) -> None:
        self._store.delete(collection, doc_id, session=self._session)


class WriteBatch:
    """Queued writes committed together in one transaction."""

    def __init__(self, store):
        self._store = store
        self._ops: List[Tuple[str, str, str, Any, bool]] = []

    def set(self, collection: str, doc_id: str, fields: Dict[str, Any], merge: bool = False) -> "WriteBatch":
        self._ops.append(("set", collection, doc_id, fields, merge))
        return self

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> "WriteBatch":
        self._ops.append(("update", collection, doc_id, fields, False))
        return self

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        self._ops.append(("delete", collection, doc_id, None, False))
        return self

    def __len__(self) -> int:
        return len(self._ops)

    def commit(self) -> None:
        ops = list(self._ops)

        def apply(tx):
            for op, collection, doc_id, fields, merge in ops:
                if op == "set":
                    tx.set(collection, doc_id, fields, merge=merge)
                elif op == "update":
                    tx.update(collection, doc_id, fields)
                else:
                    tx.delete(collection, doc_id)

        self._store.run_transaction(apply)
        self._ops.clear()


class MongoStore:
    """
    Document store over a pymongo Database.

    The store is the only shared mutable resource; construct one per process
    and pass it to every service.
    """

    def __init__(self, database, client: Optional[MongoClient] = None):
        self._db = database
        self._client = client if client is not None else database.client

    @classmethod
    def from_url(cls, url: str, name: str) -> "MongoStore":
        client = MongoClient(url, tz_aware=True)
        return cls(client[name], client)

    @property
    def name(self) -> str:
        return self._db.name

    def new_id(self) -> str:
        return str(ObjectId())

    def get(self, collection: str, doc_id: str, session=None) -> Optional[Dict[str, Any]]:
        return to_entity(self._db[collection].find_one({"_id": doc_id}, session=session))

    def query(self, collection: str, filters: Sequence[Filter] = (), order_by: Sequence[OrderBy] = (),
              limit: Optional[int] = None, start_after: Optional[Dict[str, Any]] = None,
              session=None) -> List[Dict[str, Any]]:
        spec = build_filter(filters)
        sort = build_sort(order_by)
        if start_after is not None:
            cursor_spec = build_start_after(sort, start_after)
            spec = {"$and": [spec, cursor_spec]} if spec else cursor_spec
        cursor = self._db[collection].find(spec, session=session).sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return [to_entity(doc) for doc in cursor]

    def count(self, collection: str, filters: Sequence[Filter] = (), session=None) -> int:
        return self._db[collection].count_documents(build_filter(filters), session=session)

    def add(self, collection: str, fields: Dict[str, Any], session=None) -> str:
        doc_id = self.new_id()
        self.set(collection, doc_id, fields, session=session)
        return doc_id

    def set(self, collection: str, doc_id: str, fields: Dict[str, Any], merge: bool = False, session=None) -> None:
        if merge:
            update = build_update(fields)
        else:
            update = build_replacement(doc_id, fields)
        self._db[collection].update_one({"_id": doc_id}, update, upsert=True, session=session)

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any], session=None) -> None:
        result = self._db[collection].update_one({"_id": doc_id}, build_update(fields), session=session)
        if result.matched_count == 0:
            raise NotFoundError(collection, doc_id)

    def delete(self, collection: str, doc_id: str, session=None) -> None:
        self._db[collection].delete_one({"_id": doc_id}, session=session)

    def run_transaction(self, body: Callable[[MongoTransaction], T]) -> T:
        """
        Run `body` in one all-or-nothing transaction.

        with_transaction re-invokes `body` on transient conflicts, so the body
        must only depend on its own transactional reads.
        """
        with self._client.start_session() as session:
            return session.with_transaction(lambda s: body(MongoTransaction(self, s)))

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def list_collection_names(self) -> List[str]:
        return self._db.list_collection_names()


def get_store(settings: Optional[Settings] = None) -> MongoStore:
    settings = settings or get_settings()
    logger.info("Connecting to database %s", settings.database_name)
    return MongoStore.from_url(settings.database_url, settings.database_name)
