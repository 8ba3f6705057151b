# backend/modules/loyalty/__init__.py

"""
Loyalty points ledger.
"""

from .models.loyalty_models import LoyaltyPointTransaction, LoyaltyTransactionType

__all__ = [
    "LoyaltyPointTransaction",
    "LoyaltyTransactionType",
]
