from .loyalty_models import LoyaltyPointTransaction, LoyaltyTransactionType

__all__ = ["LoyaltyPointTransaction", "LoyaltyTransactionType"]
