# backend/tests/factories/discount.py

from datetime import timedelta

from factory import LazyAttribute, LazyFunction, Sequence, SubFactory

from .base import BaseFactory
from .user import UserFactory
from core.clock import utcnow
from modules.discounts.models.discount_models import Discount, DiscountAssignment, DiscountType


class DiscountFactory(BaseFactory):
    """Factory for an active, public, unlimited 10% discount."""

    class Meta:
        model = Discount

    code = Sequence(lambda n: f"SAVE{n:04d}")
    description = "Test discount"
    type = DiscountType.PERCENT
    value = 10
    max_discount_amount = 0
    min_order_amount = 0
    start_at = LazyFunction(lambda: utcnow() - timedelta(days=1))
    end_at = LazyAttribute(lambda obj: obj.start_at + timedelta(days=60))
    usage_limit = 0
    used_count = 0
    is_active = True
    is_public = True
    owner_id = None
    item_id = None
    allowed_user_ids = LazyFunction(list)


class DiscountAssignmentFactory(BaseFactory):
    """Factory for a single-use grant of a private discount."""

    class Meta:
        model = DiscountAssignment
        exclude = ("user",)

    discount = SubFactory(DiscountFactory, is_public=False)
    user = SubFactory(UserFactory)
    user_id = LazyAttribute(lambda obj: obj.user.id)
    per_user_limit = 1
    used_count = 0
    effective_from = None
    effective_to = None
