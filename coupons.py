"""
Coupon / discount code validation.

A coupon is checked in this order and the first failing rule is reported:
  1. exists and is active
  2. today falls inside [start_date, end_date]
  3. usage limit not yet reached
  4. minimum purchase met

Applying a coupon only bumps its usage counter. It is not tied to order
placement, so a limited coupon can be redeemed more times than its limit
when validations and applications interleave.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from database import SERVER_TIMESTAMP, Increment
from errors import BusinessValidationError
from logger import get_logger
from repository import Repository
from schemas import Coupon

logger = get_logger("coupons")

NOT_FOUND = "Coupon not found or inactive"
OUT_OF_WINDOW = "Coupon expired or not yet valid"
LIMIT_REACHED = "Coupon has reached its usage limit"


@dataclass
class CouponValidation:
    valid: bool
    coupon: Optional[Coupon] = None
    error_message: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calculate_discount(coupon: Coupon, amount: float) -> float:
    """Discount in dollars for `amount`; never more than the amount itself."""
    if coupon.discount_type == "percentage":
        discount = amount * coupon.discount_value / 100
    else:
        discount = coupon.discount_value
    return round(min(discount, amount), 2)


class CouponService:
    def __init__(self, store, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.repo = Repository(store)
        self.clock = clock

    def _find_active(self, code: str) -> Optional[Coupon]:
        coupons = self.repo.query("coupon", [("code", "==", code), ("is_active", "==", True)], limit=1)
        return coupons[0] if coupons else None

    def get_by_code(self, code: str) -> Optional[Coupon]:
        coupons = self.repo.query("coupon", [("code", "==", code)], limit=1)
        return coupons[0] if coupons else None

    def create_coupon(self, coupon: Coupon) -> str:
        if coupon.end_date < coupon.start_date:
            raise BusinessValidationError("Coupon end_date is before start_date")
        if self.get_by_code(coupon.code) is not None:
            raise BusinessValidationError(f"Coupon code {coupon.code} already exists")
        return self.repo.add("coupon", coupon)

    def validate_coupon(self, code: str, total_amount: float) -> CouponValidation:
        try:
            coupon = self._find_active(code)
        except Exception as e:
            logger.error("Error validating coupon %s: %s", code, e)
            raise
        if coupon is None:
            return CouponValidation(valid=False, error_message=NOT_FOUND)

        now = self.clock()
        if now < coupon.start_date or now > coupon.end_date:
            return CouponValidation(valid=False, error_message=OUT_OF_WINDOW)

        if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
            return CouponValidation(valid=False, error_message=LIMIT_REACHED)

        if coupon.min_purchase is not None and total_amount < coupon.min_purchase:
            return CouponValidation(
                valid=False,
                error_message=f"Minimum purchase not reached. Requires {coupon.min_purchase}",
            )

        return CouponValidation(valid=True, coupon=coupon)

    def apply_coupon(self, code: str) -> bool:
        """Count one redemption of an active coupon. Returns False when there is none."""
        try:
            coupon = self._find_active(code)
            if coupon is None:
                return False
            self.store.update("coupon", coupon.id, {"usage_count": Increment(1), "updated_at": SERVER_TIMESTAMP})
        except Exception as e:
            logger.error("Error applying coupon %s: %s", code, e)
            raise
        logger.info("Applied coupon %s", code)
        return True
