"""
Tests for the inventory-consistent order lifecycle: creation with stock
deduction, cancellation with stock restore, and status transitions.
"""
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from carts import CartService
from errors import BusinessValidationError, InsufficientStockError, NotFoundError
from orders import OrderService
from schemas import OrderDraft, OrderItemDraft


def stock(store, product_id):
    return store.get("product", product_id)["stock"]


def draft(user_id, address, *lines, **kwargs):
    return OrderDraft(
        user_id=user_id,
        shipping_address=address,
        items=[OrderItemDraft(product_id=p, quantity=q) for p, q in lines],
        **kwargs,
    )


@pytest.fixture
def orders(store):
    return OrderService(store)


# ============================================================================
# create_order
# ============================================================================

class TestCreateOrder:
    def test_decrements_stock_and_creates_pending_order(self, store, orders, add_product, address):
        p1 = add_product(price=10.0, stock=5)
        p2 = add_product(name="Gadget", price=2.5, stock=3)

        order_id = orders.create_order(draft("u1", address, (p1, 2), (p2, 3)))

        assert stock(store, p1) == 3
        assert stock(store, p2) == 0
        order = orders.get_order(order_id)
        assert order.id == order_id
        assert order.status == "pending"
        assert order.user_id == "u1"
        assert [i.total_price for i in order.items] == [20.0, 7.5]
        assert order.total_amount == 27.5
        assert order.created_at is not None
        assert order.updated_at is not None

    def test_exact_stock_can_be_bought(self, store, orders, add_product, address):
        p = add_product(stock=2)
        orders.create_order(draft("u1", address, (p, 2)))
        assert stock(store, p) == 0

    def test_price_is_a_snapshot(self, store, orders, add_product, address):
        p = add_product(price=10.0, discount_price=8.0, stock=5)
        order_id = orders.create_order(draft("u1", address, (p, 2)))

        store.update("product", p, {"price": 99.0, "discount_price": None})

        item = orders.get_order(order_id).items[0]
        assert item.price == 8.0
        assert item.total_price == 16.0
        assert item.product_name == "Widget"

    def test_explicit_draft_values_are_kept(self, orders, add_product, address):
        p = add_product(price=10.0, stock=5)
        order_id = orders.create_order(OrderDraft(
            user_id="u1",
            shipping_address=address,
            items=[OrderItemDraft(product_id=p, quantity=2, product_name="Promo widget", price=1.0)],
            total_amount=5.0,
            payment_method="card",
        ))
        order = orders.get_order(order_id)
        assert order.items[0].product_name == "Promo widget"
        assert order.items[0].total_price == 2.0
        assert order.total_amount == 5.0
        assert order.payment_method == "card"

    def test_missing_product_aborts_everything(self, store, orders, add_product, address):
        p = add_product(stock=5)
        with pytest.raises(NotFoundError):
            orders.create_order(draft("u1", address, (p, 1), ("missing", 1)))
        assert stock(store, p) == 5
        assert store.query("order") == []

    def test_insufficient_stock_on_later_item_aborts_earlier_items(self, store, orders, add_product, address):
        p1 = add_product(stock=5)
        p2 = add_product(name="Gadget", stock=1)
        with pytest.raises(InsufficientStockError) as exc:
            orders.create_order(draft("u1", address, (p1, 2), (p2, 2)))
        assert exc.value.product_id == p2
        assert "Gadget" in str(exc.value)
        assert stock(store, p1) == 5
        assert stock(store, p2) == 1
        assert store.query("order") == []

    def test_repeated_product_lines_are_checked_together(self, store, orders, add_product, address):
        p = add_product(stock=3)
        with pytest.raises(InsufficientStockError):
            orders.create_order(draft("u1", address, (p, 2), (p, 2)))
        assert stock(store, p) == 3

        order_id = orders.create_order(draft("u1", address, (p, 1), (p, 2)))
        assert stock(store, p) == 0
        assert len(orders.get_order(order_id).items) == 2

    def test_empty_order_is_rejected(self, orders, address):
        with pytest.raises(BusinessValidationError):
            orders.create_order(OrderDraft(user_id="u1", shipping_address=address, items=[]))

    def test_clears_buyer_cart(self, store, orders, add_product, address):
        p = add_product(stock=5)
        carts = CartService(store)
        carts.add_to_cart("u1", p, 2)
        carts.add_to_cart("u2", p, 1)

        orders.create_order(draft("u1", address, (p, 2)))

        assert carts.get_user_cart("u1").items == []
        assert len(carts.get_user_cart("u2").items) == 1

    def test_buyer_without_cart_gets_none(self, store, orders, add_product, address):
        p = add_product(stock=5)
        orders.create_order(draft("u1", address, (p, 1)))
        assert store.get("cart", "u1") is None


# ============================================================================
# create_order under contention
# ============================================================================

class TestCreateOrderConcurrency:
    def test_concurrent_buyers_never_oversell(self, store, orders, add_product, address):
        p = add_product(stock=5)
        store.after_read = lambda collection, doc_id: time.sleep(0.001)

        def buy(n):
            try:
                orders.create_order(draft(f"u{n}", address, (p, 1)))
                return True
            except InsufficientStockError:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(buy, range(12)))

        assert sum(results) == 5
        assert stock(store, p) == 0
        assert len(store.query("order")) == 5

    def test_conflict_reruns_body_against_fresh_stock(self, store, orders, add_product, address):
        p = add_product(stock=5)
        fired = []

        def concurrent_writer(collection, doc_id):
            if collection == "product" and not fired:
                fired.append(doc_id)
                store.update("product", p, {"stock": 1})

        store.after_read = concurrent_writer
        attempts = store.transaction_attempts

        with pytest.raises(InsufficientStockError):
            orders.create_order(draft("u1", address, (p, 2)))

        assert store.transaction_attempts - attempts == 2
        assert stock(store, p) == 1
        assert store.query("order") == []

    def test_decrement_composes_with_retry(self, store, orders, add_product, address):
        p = add_product(stock=5)
        fired = []

        def concurrent_writer(collection, doc_id):
            if collection == "product" and not fired:
                fired.append(doc_id)
                store.update("product", p, {"stock": 3})

        store.after_read = concurrent_writer
        orders.create_order(draft("u1", address, (p, 2)))

        assert stock(store, p) == 1
        assert len(store.query("order")) == 1


# ============================================================================
# cancel_order
# ============================================================================

class TestCancelOrder:
    def test_restores_stock_of_processing_order(self, store, orders, add_product, address):
        p = add_product(stock=5)
        order_id = orders.create_order(draft("u1", address, (p, 2)))
        orders.update_order_status(order_id, "processing")
        assert stock(store, p) == 3

        orders.cancel_order(order_id)

        assert stock(store, p) == 5
        assert orders.get_order(order_id).status == "cancelled"

    def test_cancelling_twice_restores_once(self, store, orders, add_product, address):
        p = add_product(stock=5)
        order_id = orders.create_order(draft("u1", address, (p, 2)))

        orders.cancel_order(order_id)
        orders.cancel_order(order_id)

        assert stock(store, p) == 5
        assert orders.get_order(order_id).status == "cancelled"

    @pytest.mark.parametrize("path", [["processing", "shipped"], ["processing", "shipped", "delivered"]])
    def test_shipped_or_delivered_cannot_be_cancelled(self, store, orders, add_product, address, path):
        p = add_product(stock=5)
        order_id = orders.create_order(draft("u1", address, (p, 2)))
        for status in path:
            orders.update_order_status(order_id, status)

        with pytest.raises(BusinessValidationError):
            orders.cancel_order(order_id)

        assert stock(store, p) == 3
        assert orders.get_order(order_id).status == path[-1]

    def test_missing_order(self, orders):
        with pytest.raises(NotFoundError):
            orders.cancel_order("missing")

    def test_deleted_product_is_skipped(self, store, orders, add_product, address):
        p1 = add_product(stock=5)
        p2 = add_product(name="Gadget", stock=5)
        order_id = orders.create_order(draft("u1", address, (p1, 1), (p2, 2)))
        store.delete("product", p2)

        orders.cancel_order(order_id)

        assert stock(store, p1) == 5
        assert store.get("product", p2) is None
        assert orders.get_order(order_id).status == "cancelled"


# ============================================================================
# update_order_status
# ============================================================================

class TestUpdateOrderStatus:
    def test_follows_lifecycle(self, orders, add_product, address):
        p = add_product(stock=5)
        order_id = orders.create_order(draft("u1", address, (p, 1)))

        orders.update_order_status(order_id, "processing")
        orders.update_order_status(order_id, "shipped", tracking_number="TRK-1")
        orders.update_order_status(order_id, "delivered")

        order = orders.get_order(order_id)
        assert order.status == "delivered"
        assert order.tracking_number == "TRK-1"

    def test_rejects_skipping_states(self, orders, add_product, address):
        p = add_product(stock=5)
        order_id = orders.create_order(draft("u1", address, (p, 1)))
        with pytest.raises(BusinessValidationError):
            orders.update_order_status(order_id, "shipped")
        assert orders.get_order(order_id).status == "pending"

    def test_terminal_states_are_final(self, orders, add_product, address):
        p = add_product(stock=5)
        order_id = orders.create_order(draft("u1", address, (p, 1)))
        orders.cancel_order(order_id)
        with pytest.raises(BusinessValidationError):
            orders.update_order_status(order_id, "pending")

    def test_same_status_can_attach_tracking_number(self, orders, add_product, address):
        p = add_product(stock=5)
        order_id = orders.create_order(draft("u1", address, (p, 1)))
        orders.update_order_status(order_id, "processing")
        orders.update_order_status(order_id, "shipped")
        orders.update_order_status(order_id, "shipped", tracking_number="TRK-2")
        assert orders.get_order(order_id).tracking_number == "TRK-2"

    def test_cancelled_target_restores_stock(self, store, orders, add_product, address):
        p = add_product(stock=5)
        order_id = orders.create_order(draft("u1", address, (p, 4)))
        orders.update_order_status(order_id, "cancelled")
        assert stock(store, p) == 5
        assert orders.get_order(order_id).status == "cancelled"

    def test_cancelled_target_keeps_tracking_number(self, store, orders, add_product, address):
        p = add_product(stock=5)
        order_id = orders.create_order(draft("u1", address, (p, 2)))

        orders.update_order_status(order_id, "cancelled", tracking_number="TRK-1")

        order = orders.get_order(order_id)
        assert (order.status, order.tracking_number) == ("cancelled", "TRK-1")
        assert stock(store, p) == 5

        orders.update_order_status(order_id, "cancelled", tracking_number="TRK-RETURN")
        assert orders.get_order(order_id).tracking_number == "TRK-RETURN"
        assert stock(store, p) == 5

    def test_unknown_status(self, orders, add_product, address):
        p = add_product(stock=5)
        order_id = orders.create_order(draft("u1", address, (p, 1)))
        with pytest.raises(BusinessValidationError):
            orders.update_order_status(order_id, "lost")

    def test_missing_order(self, orders):
        with pytest.raises(NotFoundError):
            orders.update_order_status("missing", "processing")

    def test_permissive_mode_accepts_any_known_status(self, store, add_product, address):
        orders = OrderService(store, enforce_transitions=False)
        p = add_product(stock=5)
        order_id = orders.create_order(draft("u1", address, (p, 1)))

        orders.update_order_status(order_id, "delivered", tracking_number="TRK-3")

        order = orders.get_order(order_id)
        assert order.status == "delivered"
        assert order.tracking_number == "TRK-3"
        assert stock(store, p) == 4
        with pytest.raises(NotFoundError):
            orders.update_order_status("missing", "processing")


# ============================================================================
# Queries
# ============================================================================

class TestUserOrders:
    def test_newest_first_and_scoped_to_user(self, orders, add_product, address):
        p = add_product(stock=10)
        first = orders.create_order(draft("u1", address, (p, 1)))
        second = orders.create_order(draft("u1", address, (p, 1)))
        orders.create_order(draft("u2", address, (p, 1)))
        third = orders.create_order(draft("u1", address, (p, 1)))

        assert [o.id for o in orders.get_user_orders("u1")] == [third, second, first]

    def test_get_missing_order_is_none(self, orders):
        assert orders.get_order("missing") is None
