"""
Tests for product reviews.
"""
import pytest

from errors import BusinessValidationError, NotFoundError
from reviews import ReviewService
from schemas import Review


@pytest.fixture
def reviews(store):
    return ReviewService(store)


def review(user_id, product_id, rating=5, comment=""):
    return Review(user_id=user_id, product_id=product_id, rating=rating, comment=comment)


class TestAddReview:
    def test_add_review(self, store, reviews, add_product):
        p = add_product()
        review_id = reviews.add_review(review("u1", p, 4, "Solid"))
        saved = store.get("review", review_id)
        assert saved["rating"] == 4
        assert saved["created_at"] is not None

    def test_one_review_per_user_and_product(self, reviews, add_product):
        p1 = add_product()
        p2 = add_product(name="Gadget")
        reviews.add_review(review("u1", p1))
        reviews.add_review(review("u2", p1))
        reviews.add_review(review("u1", p2))
        with pytest.raises(BusinessValidationError):
            reviews.add_review(review("u1", p1, 1))

    def test_product_must_exist(self, reviews):
        with pytest.raises(NotFoundError):
            reviews.add_review(review("u1", "missing"))


class TestProductReviews:
    def test_pages_newest_first(self, reviews, add_product):
        p = add_product()
        ids = [reviews.add_review(review(f"u{n}", p, rating=1 + n % 5)) for n in range(5)]

        first = reviews.get_product_reviews(p, limit=2)
        assert [r.id for r in first.items] == [ids[4], ids[3]]
        assert first.has_more

        second = reviews.get_product_reviews(p, limit=2, cursor=first.last_cursor)
        assert [r.id for r in second.items] == [ids[2], ids[1]]

        third = reviews.get_product_reviews(p, limit=2, cursor=second.last_cursor)
        assert [r.id for r in third.items] == [ids[0]]
        assert not third.has_more

    def test_rating_average(self, reviews, add_product):
        p = add_product()
        other = add_product(name="Gadget")
        reviews.add_review(review("u1", p, 5))
        reviews.add_review(review("u2", p, 2))
        reviews.add_review(review("u1", other, 1))

        summary = reviews.get_product_rating_average(p)
        assert summary.average == 3.5
        assert summary.count == 2

    def test_rating_average_without_reviews(self, reviews):
        summary = reviews.get_product_rating_average("nothing")
        assert summary.average == 0
        assert summary.count == 0
