# backend/tests/factories/__init__.py

"""
Shared test factories for the rental core.
"""

from .base import BaseFactory, bind_session
from .user import UserFactory, OwnerFactory, AdminFactory
from .item import ItemFactory
from .order import OrderFactory
from .discount import DiscountFactory, DiscountAssignmentFactory
from .contract import ContractTemplateFactory, ContractFactory

__all__ = [
    'BaseFactory',
    'bind_session',
    'UserFactory',
    'OwnerFactory',
    'AdminFactory',
    'ItemFactory',
    'OrderFactory',
    'DiscountFactory',
    'DiscountAssignmentFactory',
    'ContractTemplateFactory',
    'ContractFactory',
]
