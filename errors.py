"""
Error kinds raised by the shop data layer.

- NotFoundError: a referenced document does not exist at the time of the check
- BusinessValidationError: a business rule was violated (stock, order state, duplicates)
- StoreError: the document store failed or returned a malformed document

Driver errors (pymongo.errors.PyMongoError) are never wrapped; they reach the caller as-is.
"""
from typing import Any, List, Optional


class ShopError(Exception):
    """Base class for all shop errors."""


class NotFoundError(ShopError):
    def __init__(self, collection: str, doc_id: str, message: Optional[str] = None):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(message or f"{collection} {doc_id} not found")


class BusinessValidationError(ShopError):
    pass


class InsufficientStockError(BusinessValidationError):
    def __init__(self, product_id: str, available: int, requested: int, name: Optional[str] = None):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        label = name or product_id
        super().__init__(f"Insufficient stock for {label}: {available} available, {requested} requested")


class StoreError(ShopError):
    pass


class DocumentDecodeError(StoreError):
    """A stored document does not match its collection schema."""

    def __init__(self, collection: str, doc_id: Any, errors: List[Any]):
        self.collection = collection
        self.doc_id = doc_id
        self.errors = errors
        super().__init__(f"Malformed {collection} document {doc_id}: {errors}")
