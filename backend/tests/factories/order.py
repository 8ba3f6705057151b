# backend/tests/factories/order.py

from datetime import datetime, timedelta

from factory import LazyAttribute, SubFactory

from .base import BaseFactory
from .item import ItemFactory
from .user import UserFactory
from modules.orders.enums.order_enums import OrderStatus, PaymentStatus
from modules.orders.models.order_models import Order


class OrderFactory(BaseFactory):
    """
    Factory for orders placed directly in a given state. Amounts follow the
    item's pricing for a two-day, single-unit rental with a 5% service fee.
    """

    class Meta:
        model = Order

    item = SubFactory(ItemFactory)
    renter = SubFactory(UserFactory)
    owner = LazyAttribute(lambda obj: obj.item.owner)
    item_snapshot = LazyAttribute(
        lambda obj: {
            "title": obj.item.title,
            "images": [],
            "base_price": obj.item.base_price,
            "price_unit": obj.item.price_unit,
        }
    )

    quantity = 1
    start_at = datetime(2026, 1, 10, 9, 0)
    end_at = LazyAttribute(lambda obj: obj.start_at + timedelta(days=2))
    price_unit = LazyAttribute(lambda obj: obj.item.price_unit)
    rental_duration = 2

    rental_amount = LazyAttribute(lambda obj: obj.item.base_price * obj.rental_duration * obj.quantity)
    deposit_amount = LazyAttribute(lambda obj: obj.item.deposit_amount * obj.quantity)
    service_fee = LazyAttribute(lambda obj: obj.rental_amount * 5 // 100)
    service_fee_rate = 5.0
    total_amount = LazyAttribute(lambda obj: obj.rental_amount + obj.service_fee + obj.deposit_amount)
    discount_amount = 0
    discount_breakdown = None
    final_amount = LazyAttribute(lambda obj: obj.total_amount - obj.discount_amount)

    status = OrderStatus.PENDING
    payment_status = PaymentStatus.PENDING
    is_contract_signed = False
