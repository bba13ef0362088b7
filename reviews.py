"""
Product reviews.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from errors import BusinessValidationError, NotFoundError
from logger import get_logger
from repository import Page, Repository
from schemas import Review

logger = get_logger("reviews")


@dataclass
class RatingSummary:
    average: float
    count: int


class ReviewService:
    def __init__(self, store):
        self.store = store
        self.repo = Repository(store)

    def add_review(self, review: Review) -> str:
        """
        Store a review; one per (user, product).

        The duplicate check is a plain query before the insert, so two
        concurrent calls for the same pair can both succeed.
        """
        if self.store.get("product", review.product_id) is None:
            raise NotFoundError("product", review.product_id)
        existing = self.repo.query(
            "review",
            [("user_id", "==", review.user_id), ("product_id", "==", review.product_id)],
            limit=1,
        )
        if existing:
            raise BusinessValidationError("User has already reviewed this product")
        review_id = self.repo.add("review", review)
        logger.info("Added review %s for product %s", review_id, review.product_id)
        return review_id

    def get_product_reviews(self, product_id: str, limit: int = 10,
                            cursor: Optional[Dict[str, Any]] = None) -> Page:
        """Newest reviews first, one page at a time."""
        return self.repo.get_paginated(
            "review", limit, cursor,
            filters=[("product_id", "==", product_id)],
            order_by=[("created_at", "desc")],
        )

    def get_product_rating_average(self, product_id: str) -> RatingSummary:
        reviews = self.repo.query("review", [("product_id", "==", product_id)])
        if not reviews:
            return RatingSummary(average=0, count=0)
        return RatingSummary(
            average=sum(r.rating for r in reviews) / len(reviews),
            count=len(reviews),
        )
