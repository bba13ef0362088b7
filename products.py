"""
Product catalog: filtered listing with page numbers, stock maintenance and
name search.
"""
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from database import SERVER_TIMESTAMP, Increment
from errors import BusinessValidationError, InsufficientStockError, NotFoundError
from logger import get_logger
from repository import Repository, decode
from schemas import Product

logger = get_logger("products")

SORT_FIELDS = ("price", "name", "created_at")
STOCK_OPERATIONS = ("increment", "decrement", "set")

# Last private-use code point of the BMP; sorts after ordinary text and closes a prefix range
PREFIX_END = "\uf8ff"


@dataclass
class ProductListing:
    products: List[Product]
    total: int
    pages: int
    current_page: int
    has_more: bool
    last_cursor: Optional[Dict[str, Any]]


class ProductService:
    def __init__(self, store):
        self.store = store
        self.repo = Repository(store)

    def get_product(self, product_id: str) -> Optional[Product]:
        return self.repo.get_by_id("product", product_id)

    def create_product(self, product: Product) -> str:
        product_id = self.repo.add("product", product)
        logger.info("Created product %s (%s)", product_id, product.sku)
        return product_id

    def update_product(self, product_id: str, patch: Dict[str, Any]) -> None:
        """Patch a product; the merged document must still be a valid Product."""
        current = self.store.get("product", product_id)
        if current is None:
            raise NotFoundError("product", product_id)
        try:
            checked = Product.model_validate({**current, **patch}).model_dump()
        except ValidationError as e:
            fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err["loc"])
            raise BusinessValidationError(f"Invalid product update for {product_id}: {fields}") from e
        self.repo.update("product", product_id, {k: checked.get(k, v) for k, v in patch.items()})

    def delete_product(self, product_id: str) -> None:
        self.repo.delete("product", product_id)

    def get_products(
        self,
        category: Optional[str] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        featured: Optional[bool] = None,
        sort_by: str = "created_at",
        sort_direction: str = "desc",
        page: int = 1,
        limit: int = 10,
    ) -> ProductListing:
        """
        One page of the catalog.

        Pages are numbered from 1. Reaching page N walks the first
        (N - 1) * limit matches to find the resume cursor.
        """
        if sort_by not in SORT_FIELDS:
            raise BusinessValidationError(f"Cannot sort products by {sort_by}")
        if page < 1 or limit < 1:
            raise BusinessValidationError("page and limit must be at least 1")

        filters = []
        if category:
            filters.append(("categories", "array-contains", category))
        if min_price is not None:
            filters.append(("price", ">=", min_price))
        if max_price is not None:
            filters.append(("price", "<=", max_price))
        if featured is not None:
            filters.append(("featured", "==", featured))
        order_by = [(sort_by, sort_direction)]

        total = self.repo.get_count("product", filters)
        cursor = None
        if page > 1:
            previous = self.store.query("product", filters, order_by, limit=(page - 1) * limit)
            if previous:
                cursor = previous[-1]

        result = self.repo.get_paginated("product", limit, cursor, filters, order_by)
        return ProductListing(
            products=result.items,
            total=total,
            pages=math.ceil(total / limit),
            current_page=page,
            has_more=result.has_more,
            last_cursor=result.last_cursor,
        )

    def update_stock(self, product_id: str, quantity: int, operation: str = "set") -> None:
        """
        Adjust stock. Decrement refuses to take stock below zero; increment is
        an atomic counter update; set overwrites the value.
        """
        if operation not in STOCK_OPERATIONS:
            raise BusinessValidationError(f"Unknown stock operation: {operation}")
        if quantity < 0:
            raise BusinessValidationError("Stock quantity cannot be negative")

        try:
            if operation == "increment":
                self.store.update("product", product_id, {"stock": Increment(quantity), "updated_at": SERVER_TIMESTAMP})
            elif operation == "set":
                self.store.update("product", product_id, {"stock": quantity, "updated_at": SERVER_TIMESTAMP})
            else:
                def body(tx):
                    product = decode("product", tx.get("product", product_id))
                    if product is None:
                        raise NotFoundError("product", product_id)
                    if product.stock < quantity:
                        raise InsufficientStockError(product_id, product.stock, quantity, product.name)
                    tx.update("product", product_id, {"stock": Increment(-quantity), "updated_at": SERVER_TIMESTAMP})

                self.store.run_transaction(body)
        except Exception as e:
            logger.error("Error updating stock of product %s: %s", product_id, e)
            raise
        logger.info("Stock of product %s: %s %d", product_id, operation, quantity)

    def search(self, term: str, limit: int = 10) -> List[Product]:
        """Products whose name starts with `term` (case-sensitive)."""
        return self.repo.query(
            "product",
            [("name", ">=", term), ("name", "<=", term + PREFIX_END)],
            [("name", "asc")],
            limit=limit,
        )
