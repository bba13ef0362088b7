"""
Sales and inventory statistics.

Every report is a full scan of the matching orders or products; there are no
precomputed counters, so cost grows with the number of orders.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from repository import Repository
from schemas import Product

# Orders that count as sales
SALE_STATUSES = ["processing", "shipped", "delivered"]


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


@dataclass
class SalesStats:
    total_sales: float
    order_count: int
    average_order_value: float


@dataclass
class TopSeller:
    product_id: str
    product_name: str
    total_quantity: int
    total_sales: float


class StatisticsService:
    def __init__(self, store, low_stock_threshold: int = 5):
        self.store = store
        self.repo = Repository(store)
        self.low_stock_threshold = low_stock_threshold

    def get_sales_stats(self, start_date: datetime, end_date: datetime) -> SalesStats:
        orders = self.repo.query("order", [
            ("created_at", ">=", _aware(start_date)),
            ("created_at", "<=", _aware(end_date)),
            ("status", "in", SALE_STATUSES),
        ])
        if not orders:
            return SalesStats(total_sales=0, order_count=0, average_order_value=0)
        total = sum(o.total_amount for o in orders)
        return SalesStats(
            total_sales=total,
            order_count=len(orders),
            average_order_value=total / len(orders),
        )

    def get_top_selling_products(self, limit: int = 10) -> List[TopSeller]:
        """Products ranked by units sold across all sale orders."""
        orders = self.repo.query("order", [("status", "in", SALE_STATUSES)])
        sellers: Dict[str, TopSeller] = {}
        for order in orders:
            for item in order.items:
                seller = sellers.get(item.product_id)
                if seller is None:
                    seller = sellers[item.product_id] = TopSeller(item.product_id, item.product_name, 0, 0.0)
                seller.total_quantity += item.quantity
                seller.total_sales += item.total_price
        ranked = sorted(sellers.values(), key=lambda s: s.total_quantity, reverse=True)
        return ranked[:limit]

    def get_low_stock_products(self, threshold: Optional[int] = None) -> List[Product]:
        if threshold is None:
            threshold = self.low_stock_threshold
        return self.repo.query("product", [("stock", "<=", threshold)], [("stock", "asc")])
