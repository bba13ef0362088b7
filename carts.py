"""
Per-user carts.

A user has at most one cart, stored under the user's id. Adding or changing a
quantity re-checks product stock inside a transaction; stock is only checked,
never reserved, until an order is placed.
"""
from typing import Any, Dict, List, Optional

from database import SERVER_TIMESTAMP
from errors import BusinessValidationError, InsufficientStockError, NotFoundError
from logger import get_logger
from repository import Repository, decode
from schemas import Cart, CartItem

logger = get_logger("carts")


def _check_stock(tx, product_id: str, quantity: int) -> None:
    product = decode("product", tx.get("product", product_id))
    if product is None:
        raise NotFoundError("product", product_id)
    if product.stock < quantity:
        raise InsufficientStockError(product_id, product.stock, quantity, product.name)


def _dump(items: List[CartItem]) -> List[Dict[str, Any]]:
    return [item.model_dump() for item in items]


class CartService:
    def __init__(self, store):
        self.store = store
        self.repo = Repository(store)

    def get_user_cart(self, user_id: str) -> Optional[Cart]:
        return self.repo.get_by_id("cart", user_id)

    def get_cart_details(self, user_id: str) -> Dict[str, Any]:
        """Cart lines enriched with current product name and price, plus the total."""
        cart = self.get_user_cart(user_id)
        if cart is None:
            return {"items": [], "total": 0}
        items = []
        total = 0.0
        for item in cart.items:
            product = self.repo.get_by_id("product", item.product_id)
            if product is None:
                continue
            subtotal = product.unit_price * item.quantity
            total += subtotal
            items.append({
                "product_id": item.product_id,
                "name": product.name,
                "price": product.unit_price,
                "quantity": item.quantity,
                "subtotal": round(subtotal, 2),
            })
        return {"items": items, "total": round(total, 2)}

    def add_to_cart(self, user_id: str, product_id: str, quantity: int) -> None:
        """Add `quantity` units, merging into an existing line for the product."""
        if quantity <= 0:
            raise BusinessValidationError("Quantity must be positive")

        def body(tx):
            _check_stock(tx, product_id, quantity)
            cart = decode("cart", tx.get("cart", user_id))
            items = []
            merged = False
            for item in (cart.items if cart else []):
                if item.product_id == product_id:
                    item = CartItem(product_id=product_id, quantity=item.quantity + quantity)
                    merged = True
                items.append(item)
            if not merged:
                items.append(CartItem(product_id=product_id, quantity=quantity))

            fields = {"user_id": user_id, "items": _dump(items), "updated_at": SERVER_TIMESTAMP}
            if cart is None:
                fields["created_at"] = SERVER_TIMESTAMP
                tx.set("cart", user_id, fields)
            else:
                tx.set("cart", user_id, fields, merge=True)

        try:
            self.store.run_transaction(body)
        except Exception as e:
            logger.error("Error adding product %s to cart of user %s: %s", product_id, user_id, e)
            raise

    def update_cart_item(self, user_id: str, product_id: str, quantity: int) -> None:
        """Set a line's quantity; 0 removes the line."""
        if quantity < 0:
            raise BusinessValidationError("Quantity cannot be negative")

        def body(tx):
            if quantity > 0:
                _check_stock(tx, product_id, quantity)
            cart = decode("cart", tx.get("cart", user_id))
            if cart is None:
                raise NotFoundError("cart", user_id, f"Cart not found for user {user_id}")
            items = []
            replaced = False
            for item in cart.items:
                if item.product_id == product_id:
                    if quantity > 0 and not replaced:
                        items.append(CartItem(product_id=product_id, quantity=quantity))
                    replaced = True
                    continue
                items.append(item)
            if quantity > 0 and not replaced:
                items.append(CartItem(product_id=product_id, quantity=quantity))
            tx.update("cart", user_id, {"items": _dump(items), "updated_at": SERVER_TIMESTAMP})

        try:
            self.store.run_transaction(body)
        except Exception as e:
            logger.error("Error updating product %s in cart of user %s: %s", product_id, user_id, e)
            raise

    def remove_from_cart(self, user_id: str, product_id: str) -> None:
        """Drop a product's line; a missing cart or line is not an error."""
        def body(tx):
            cart = decode("cart", tx.get("cart", user_id))
            if cart is None:
                return
            items = [item for item in cart.items if item.product_id != product_id]
            tx.update("cart", user_id, {"items": _dump(items), "updated_at": SERVER_TIMESTAMP})

        try:
            self.store.run_transaction(body)
        except Exception as e:
            logger.error("Error removing product %s from cart of user %s: %s", product_id, user_id, e)
            raise

    def clear_cart(self, user_id: str) -> None:
        try:
            if self.store.get("cart", user_id) is not None:
                self.store.update("cart", user_id, {"items": [], "updated_at": SERVER_TIMESTAMP})
        except Exception as e:
            logger.error("Error clearing cart of user %s: %s", user_id, e)
            raise
