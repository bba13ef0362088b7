"""
Collection-agnostic document access: CRUD, pagination, counting and
transaction/batch pass-through.

Reads decode raw documents into the schema registered for the collection in
schemas.COLLECTIONS; collections without a schema come back as dicts.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, TypeVar, Union

from pydantic import BaseModel, ValidationError

from database import SERVER_TIMESTAMP, Filter, OrderBy
from errors import DocumentDecodeError, NotFoundError
from logger import get_logger
from schemas import COLLECTIONS, to_fields

logger = get_logger("repository")

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: List[T]
    last_cursor: Optional[Dict[str, Any]]  # raw snapshot of the last item, opaque to callers
    has_more: bool


def decode(collection: str, raw: Optional[Dict[str, Any]]):
    """Map a raw document into its typed entity, rejecting malformed ones."""
    if raw is None:
        return None
    model = COLLECTIONS.get(collection)
    if model is None:
        return raw
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise DocumentDecodeError(collection, raw.get("id"), e.errors()) from e


def _fields(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return to_fields(data)
    return {k: v for k, v in data.items() if k != "id"}


class Repository:
    def __init__(self, store):
        self.store = store

    def get_by_id(self, collection: str, doc_id: str):
        """Return the document or None; a missing id is not an error."""
        try:
            return decode(collection, self.store.get(collection, doc_id))
        except Exception as e:
            logger.error("Error getting %s from %s: %s", doc_id, collection, e)
            raise

    def get_all(self, collection: str) -> list:
        try:
            return [decode(collection, raw) for raw in self.store.query(collection)]
        except Exception as e:
            logger.error("Error getting documents from %s: %s", collection, e)
            raise

    def get_paginated(
        self,
        collection: str,
        page_size: int = 10,
        cursor: Optional[Dict[str, Any]] = None,
        filters: Sequence[Filter] = (),
        order_by: Sequence[OrderBy] = (),
    ) -> Page:
        """
        One page of a filtered, ordered listing.

        Fetches page_size + 1 documents so has_more needs no count query.
        `cursor` is the last_cursor of the previous page.
        """
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        try:
            docs = self.store.query(collection, filters, order_by, limit=page_size + 1, start_after=cursor)
        except Exception as e:
            logger.error("Error getting paginated documents from %s: %s", collection, e)
            raise
        has_more = len(docs) > page_size
        docs = docs[:page_size]
        return Page(
            items=[decode(collection, raw) for raw in docs],
            last_cursor=docs[-1] if docs else None,
            has_more=has_more,
        )

    def get_count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        try:
            return self.store.count(collection, filters)
        except Exception as e:
            logger.error("Error counting %s: %s", collection, e)
            raise

    def query(self, collection: str, filters: Sequence[Filter] = (), order_by: Sequence[OrderBy] = (),
              limit: Optional[int] = None) -> list:
        try:
            docs = self.store.query(collection, filters, order_by, limit=limit)
        except Exception as e:
            logger.error("Error querying %s: %s", collection, e)
            raise
        return [decode(collection, raw) for raw in docs]

    def add(self, collection: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
        """Insert with a generated id; returns the id."""
        fields = _fields(data)
        fields["created_at"] = SERVER_TIMESTAMP
        fields["updated_at"] = SERVER_TIMESTAMP
        try:
            return self.store.add(collection, fields)
        except Exception as e:
            logger.error("Error adding document to %s: %s", collection, e)
            raise

    def create(self, collection: str, doc_id: str, data: Union[BaseModel, Dict[str, Any]]) -> None:
        """Write a document under an explicit id, replacing any existing one."""
        fields = _fields(data)
        fields["created_at"] = SERVER_TIMESTAMP
        fields["updated_at"] = SERVER_TIMESTAMP
        try:
            self.store.set(collection, doc_id, fields)
        except Exception as e:
            logger.error("Error creating %s in %s: %s", doc_id, collection, e)
            raise

    def update(self, collection: str, doc_id: str, patch: Dict[str, Any]) -> None:
        # Existence check then write: racy, never used where inventory is touched
        try:
            if self.store.get(collection, doc_id) is None:
                raise NotFoundError(collection, doc_id)
            fields = {k: v for k, v in patch.items() if k not in ("id", "created_at")}
            fields["updated_at"] = SERVER_TIMESTAMP
            self.store.update(collection, doc_id, fields)
        except Exception as e:
            logger.error("Error updating %s in %s: %s", doc_id, collection, e)
            raise

    def delete(self, collection: str, doc_id: str) -> None:
        try:
            if self.store.get(collection, doc_id) is None:
                raise NotFoundError(collection, doc_id)
            self.store.delete(collection, doc_id)
        except Exception as e:
            logger.error("Error deleting %s from %s: %s", doc_id, collection, e)
            raise

    def create_batch(self):
        return self.store.batch()

    def run_transaction(self, body: Callable[[Any], T]) -> T:
        return self.store.run_transaction(body)
