"""
Order lifecycle with inventory consistency.

    pending -> processing -> shipped -> delivered
    pending | processing -> cancelled

Creating an order checks and decrements stock for every line, writes the order
and empties the buyer's cart in one transaction; cancelling restores stock in
one transaction. Transaction bodies only depend on their own reads, so the
store may run them more than once on conflict.
"""
from typing import Dict, List, Optional

from database import SERVER_TIMESTAMP, Increment
from errors import BusinessValidationError, InsufficientStockError, NotFoundError
from logger import get_logger
from repository import Repository, decode
from schemas import ORDER_STATUSES, Order, OrderDraft, OrderItem, OrderItemDraft, Product, to_fields

logger = get_logger("orders")

TRANSITIONS = {
    "pending": {"processing", "cancelled"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
}
CANCELLABLE = ("pending", "processing")


def _quantities(items) -> Dict[str, int]:
    """Total quantity per product; a product may appear on several lines."""
    totals: Dict[str, int] = {}
    for item in items:
        totals[item.product_id] = totals.get(item.product_id, 0) + item.quantity
    return totals


def snapshot_item(item: OrderItemDraft, product: Product) -> OrderItem:
    """Freeze name and price for a line; explicit draft values win over the catalog."""
    price = item.price if item.price is not None else product.unit_price
    return OrderItem(
        product_id=item.product_id,
        product_name=item.product_name or product.name,
        quantity=item.quantity,
        price=price,
        total_price=round(price * item.quantity, 2),
    )


class OrderService:
    def __init__(self, store, enforce_transitions: bool = True):
        self.store = store
        self.repo = Repository(store)
        self.enforce_transitions = enforce_transitions

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.repo.get_by_id("order", order_id)

    def get_user_orders(self, user_id: str) -> List[Order]:
        """A user's orders, newest first."""
        return self.repo.query("order", [("user_id", "==", user_id)], [("created_at", "desc")])

    def create_order(self, draft: OrderDraft) -> str:
        """
        Place an order and deduct inventory atomically.

        Raises NotFoundError for an unknown product and InsufficientStockError
        when any product cannot cover its quantity; in both cases nothing is
        written. Returns the new order id once the transaction has committed.
        """
        if not draft.items:
            raise BusinessValidationError("An order needs at least one item")
        order_id = self.store.new_id()
        requested = _quantities(draft.items)

        def body(tx) -> str:
            products: Dict[str, Product] = {}
            for product_id, quantity in requested.items():
                product = decode("product", tx.get("product", product_id))
                if product is None:
                    raise NotFoundError("product", product_id)
                if product.stock < quantity:
                    raise InsufficientStockError(product_id, product.stock, quantity, product.name)
                products[product_id] = product
            cart = tx.get("cart", draft.user_id)

            items = [snapshot_item(item, products[item.product_id]) for item in draft.items]
            total = draft.total_amount
            if total is None:
                total = round(sum(i.total_price for i in items), 2)
            order = Order(
                user_id=draft.user_id,
                items=items,
                status="pending",
                total_amount=total,
                shipping_address=draft.shipping_address,
                payment_method=draft.payment_method,
                payment_status=draft.payment_status,
            )

            for product_id, quantity in requested.items():
                tx.update("product", product_id, {"stock": Increment(-quantity), "updated_at": SERVER_TIMESTAMP})
            fields = to_fields(order)
            fields["created_at"] = SERVER_TIMESTAMP
            fields["updated_at"] = SERVER_TIMESTAMP
            tx.set("order", order_id, fields)
            if cart is not None:
                tx.update("cart", draft.user_id, {"items": [], "updated_at": SERVER_TIMESTAMP})
            return order_id

        try:
            self.store.run_transaction(body)
        except Exception as e:
            logger.error("Error creating order for user %s: %s", draft.user_id, e)
            raise
        logger.info("Created order %s for user %s (%d lines)", order_id, draft.user_id, len(draft.items))
        return order_id

    def cancel_order(self, order_id: str, tracking_number: Optional[str] = None) -> None:
        """
        Cancel a pending or processing order and put its stock back.

        Cancelling an already cancelled order restores nothing again, it only
        attaches `tracking_number` when one is given. Lines whose product has
        since been deleted are skipped rather than blocking the cancellation.
        """
        patch = {"status": "cancelled", "updated_at": SERVER_TIMESTAMP}
        if tracking_number:
            patch["tracking_number"] = tracking_number

        def body(tx):
            order = decode("order", tx.get("order", order_id))
            if order is None:
                raise NotFoundError("order", order_id)
            if order.status == "cancelled":
                if tracking_number:
                    tx.update("order", order_id, patch)
                return None
            if order.status not in CANCELLABLE:
                raise BusinessValidationError(f"Cannot cancel order {order_id} in state {order.status}")

            restock = _quantities(order.items)
            skipped = [pid for pid in restock if tx.get("product", pid) is None]
            for product_id, quantity in restock.items():
                if product_id not in skipped:
                    tx.update("product", product_id, {"stock": Increment(quantity), "updated_at": SERVER_TIMESTAMP})
            tx.update("order", order_id, patch)
            return skipped

        try:
            skipped = self.store.run_transaction(body)
        except Exception as e:
            logger.error("Error cancelling order %s: %s", order_id, e)
            raise
        if skipped is None:
            logger.info("Order %s already cancelled", order_id)
            return
        if skipped:
            logger.warning("Order %s cancelled without restocking deleted products %s", order_id, skipped)
        logger.info("Cancelled order %s", order_id)

    def update_order_status(self, order_id: str, status: str, tracking_number: Optional[str] = None) -> None:
        """
        Move an order to `status`, optionally attaching a tracking number.

        With transition enforcement on (the default) only the lifecycle edges
        are accepted, re-setting the current status is allowed, and
        "cancelled" goes through cancel_order so stock is restored. With it
        off, any known status is written after an existence check.
        """
        if status not in ORDER_STATUSES:
            raise BusinessValidationError(f"Unknown order status: {status}")

        patch = {"status": status}
        if tracking_number:
            patch["tracking_number"] = tracking_number

        if not self.enforce_transitions:
            self.repo.update("order", order_id, patch)
            logger.info("Order %s status set to %s", order_id, status)
            return

        if status == "cancelled":
            self.cancel_order(order_id, tracking_number)
            return

        def body(tx):
            raw = tx.get("order", order_id)
            if raw is None:
                raise NotFoundError("order", order_id)
            current = raw.get("status")
            if status != current and status not in TRANSITIONS.get(current, ()):
                raise BusinessValidationError(f"Cannot move order {order_id} from {current} to {status}")
            tx.update("order", order_id, {**patch, "updated_at": SERVER_TIMESTAMP})

        try:
            self.store.run_transaction(body)
        except Exception as e:
            logger.error("Error updating status of order %s: %s", order_id, e)
            raise
        logger.info("Order %s status set to %s", order_id, status)
