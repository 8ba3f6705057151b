# backend/tests/factories/item.py

from factory import Faker, LazyAttribute, LazyFunction, SubFactory

from .base import BaseFactory
from .user import OwnerFactory
from modules.items.models.item_models import Item, ItemStatus, PriceUnit


class ItemFactory(BaseFactory):
    """Factory for creating rentable items, priced per day by default."""

    class Meta:
        model = Item

    owner = SubFactory(OwnerFactory)
    title = Faker("sentence", nb_words=3)
    description = Faker("paragraph")
    images = LazyFunction(list)
    price_unit = PriceUnit.DAY
    base_price = 100000
    deposit_amount = 50000
    quantity = 3
    available_quantity = LazyAttribute(lambda obj: obj.quantity)
    rent_count = 0
    max_rental_duration = None
    status = ItemStatus.AVAILABLE
