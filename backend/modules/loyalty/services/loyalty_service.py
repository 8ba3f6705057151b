# backend/modules/loyalty/services/loyalty_service.py

"""
Loyalty points ledger.

Every balance change runs in one transaction: lock the user, compute the new
balance, append an immutable ledger row carrying it, then write it back to the
user. The user's ``points`` therefore always equals the newest row's
``points_balance_after``.
"""

from sqlalchemy import func
from sqlalchemy.orm import Query
from typing import List, Optional, Tuple
from datetime import datetime
from pydantic import BaseModel
import logging

from core.auth_context import Actor
from core.clock import utcnow, local_date, local_day_bounds, add_months
from core.config import settings
from core.error_handling import (
    APIValidationError,
    AuthorizationError,
    ConflictError,
    DomainRuleError,
    NotFoundError,
)
from core.notification_adapter import NotificationCategory, NotificationService
from core.pagination import paginate
from core.unit_of_work import UnitOfWork
from modules.discounts.models.discount_models import Discount, DiscountAssignment, DiscountType
from modules.discounts.schemas.discount_schemas import DiscountCreate
from modules.discounts.services.discount_service import DiscountService
from modules.users.models.user_models import User
from ..models.loyalty_models import LoyaltyPointTransaction, LoyaltyTransactionType
from ..schemas.loyalty_schemas import (
    AdminAdjustmentMetadata,
    DailyLoginMetadata,
    DailyLoginResult,
    LoyaltyStats,
    OrderPointsMetadata,
    PointsHistoryPage,
    PointsToDiscountMetadata,
    PointsTransactionResponse,
    parse_metadata,
)

logger = logging.getLogger(__name__)

INSUFFICIENT_POINTS = "INSUFFICIENT_POINTS"
INVALID_TIER = "INVALID_TIER"


class LoyaltyService:
    """Service for the loyalty points ledger"""

    def __init__(
        self,
        uow: UnitOfWork,
        notifications: Optional[NotificationService] = None,
    ):
        self.uow = uow
        self.db = uow.session
        self.notifications = notifications or NotificationService()

    # ========== Ledger primitives (caller commits) ==========

    def _lock_user(self, user_id: int) -> User:
        user = self.db.query(User).filter(User.id == user_id).with_for_update().first()
        if not user:
            raise NotFoundError("User", user_id)
        return user

    def _append(
        self,
        user: User,
        delta: int,
        transaction_type: LoyaltyTransactionType,
        description: str,
        order_id: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        metadata: Optional[BaseModel] = None,
    ) -> LoyaltyPointTransaction:
        balance_before = user.points or 0
        balance_after = balance_before + delta
        if balance_after < 0:
            raise DomainRuleError(
                INSUFFICIENT_POINTS,
                "Insufficient points balance",
                details={"current_balance": balance_before, "requested": abs(delta)},
            )

        # Compare-and-set on the balance we read, so a concurrent writer that
        # slipped past the row lock cannot be overwritten.
        updated = (
            self.db.query(User)
            .filter(User.id == user.id, User.points == balance_before)
            .update({User.points: balance_after}, synchronize_session=False)
        )
        if updated != 1:
            raise ConflictError(
                "Points balance changed concurrently, please retry",
                {"user_id": user.id},
            )
        self.db.expire(user, ["points"])

        transaction = LoyaltyPointTransaction(
            user_id=user.id,
            transaction_type=transaction_type,
            points_change=delta,
            points_balance_before=balance_before,
            points_balance_after=balance_after,
            description=description,
            order_id=order_id,
            expires_at=expires_at,
            transaction_data=metadata.model_dump(mode="json") if metadata else None,
        )
        self.db.add(transaction)
        self.db.flush()
        return transaction

    # ========== Balance mutations ==========

    def add_points(
        self,
        user_id: int,
        points: int,
        transaction_type: LoyaltyTransactionType,
        description: str,
        order_id: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        metadata: Optional[BaseModel] = None,
    ) -> LoyaltyPointTransaction:
        """Credit points to a user"""
        if points <= 0:
            raise APIValidationError("Points to add must be positive", {"points": points})
        try:
            user = self._lock_user(user_id)
            transaction = self._append(
                user, points, transaction_type, description, order_id, expires_at, metadata
            )
            self.uow.commit()
            logger.info(f"Added {points} points to user {user_id} ({transaction_type.value})")
            return transaction

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error adding points for user {user_id}: {str(e)}")
            raise

    def deduct_points(
        self,
        user_id: int,
        points: int,
        transaction_type: LoyaltyTransactionType,
        description: str,
        order_id: Optional[int] = None,
        metadata: Optional[BaseModel] = None,
    ) -> LoyaltyPointTransaction:
        """Debit points; fails with INSUFFICIENT_POINTS rather than going negative"""
        if points <= 0:
            raise APIValidationError("Points to deduct must be positive", {"points": points})
        try:
            user = self._lock_user(user_id)
            transaction = self._append(
                user, -points, transaction_type, description, order_id, None, metadata
            )
            self.uow.commit()
            logger.info(f"Deducted {points} points from user {user_id} ({transaction_type.value})")
            return transaction

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error deducting points for user {user_id}: {str(e)}")
            raise

    def add_daily_login_points(self, user_id: int, now: Optional[datetime] = None) -> DailyLoginResult:
        """Award the daily login bonus at most once per calendar day"""
        now = now or utcnow()
        day_start, day_end = local_day_bounds(now, settings.business_timezone)
        points = settings.daily_login_points

        try:
            user = self._lock_user(user_id)
            claimed = (
                self.db.query(LoyaltyPointTransaction.id)
                .filter(
                    LoyaltyPointTransaction.user_id == user_id,
                    LoyaltyPointTransaction.transaction_type == LoyaltyTransactionType.DAILY_LOGIN,
                    LoyaltyPointTransaction.created_at >= day_start,
                    LoyaltyPointTransaction.created_at < day_end,
                )
                .first()
            )
            if claimed:
                self.uow.rollback()
                self.db.refresh(user)
                return DailyLoginResult(
                    already_claimed=True, points_awarded=0, points_balance=user.points
                )

            transaction = self._append(
                user,
                points,
                LoyaltyTransactionType.DAILY_LOGIN,
                "Daily login bonus",
                metadata=DailyLoginMetadata(login_date=local_date(now, settings.business_timezone)),
            )
            # Stamp the row with the claim time so the per-day check is stable
            transaction.created_at = now
            self.uow.commit()
            logger.info(f"Daily login points awarded to user {user_id}")
            return DailyLoginResult(
                already_claimed=False,
                points_awarded=points,
                points_balance=transaction.points_balance_after,
            )

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error awarding daily login points to user {user_id}: {str(e)}")
            raise

    def add_order_points(
        self, user_id: int, order_id: int, order_amount: int
    ) -> Optional[LoyaltyPointTransaction]:
        """One point per ``order_points_divisor`` currency units; nothing below one point"""
        points = int(order_amount // settings.order_points_divisor) if order_amount > 0 else 0
        if points <= 0:
            logger.debug(f"Order {order_id} amount {order_amount} earns no points")
            return None

        try:
            user = self._lock_user(user_id)
            transaction = self._append(
                user,
                points,
                LoyaltyTransactionType.ORDER_COMPLETED,
                f"Points for order #{order_id}",
                order_id=order_id,
                metadata=OrderPointsMetadata(order_id=order_id, order_amount=order_amount),
            )
            self.uow.after_commit(
                self.notifications.notify,
                user_id,
                NotificationCategory.LOYALTY,
                "Points earned",
                f"You earned {points} points for order #{order_id}",
                {"order_id": order_id, "points": points},
                description=f"notify order points user {user_id}",
            )
            self.uow.commit()
            logger.info(f"Awarded {points} points to user {user_id} for order {order_id}")
            return transaction

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error awarding order points for order {order_id}: {str(e)}")
            raise

    def adjust_points(self, actor: Actor, user_id: int, points: int, reason: str) -> LoyaltyPointTransaction:
        """Admin correction, positive or negative"""
        if not actor.is_admin:
            raise AuthorizationError("Only admins can adjust points")
        if points == 0:
            raise APIValidationError("Adjustment must not be zero")

        metadata = AdminAdjustmentMetadata(adjusted_by=actor.id, reason=reason)
        if points > 0:
            return self.add_points(
                user_id, points, LoyaltyTransactionType.ADMIN_ADJUSTMENT, reason, metadata=metadata
            )
        return self.deduct_points(
            user_id, -points, LoyaltyTransactionType.ADMIN_ADJUSTMENT, reason, metadata=metadata
        )

    # ========== Points -> discount ==========

    def convert_points_to_discount(
        self, user_id: int, points: int, now: Optional[datetime] = None
    ) -> Tuple[Discount, DiscountAssignment, LoyaltyPointTransaction]:
        """
        Exchange a fixed tier of points for a private, single-use percent
        discount valid for one month.

        The discount, its assignment and the debit row commit together or not
        at all.
        """
        tiers = settings.points_discount_tiers
        percent = tiers.get(points)
        if percent is None:
            raise DomainRuleError(
                INVALID_TIER,
                "Unsupported points tier",
                details={"points": points, "tiers": sorted(tiers)},
            )

        now = now or utcnow()
        end_at = add_months(now, settings.points_discount_validity_months)
        discount_service = DiscountService(self.uow, self.notifications)

        try:
            user = self._lock_user(user_id)
            if (user.points or 0) < points:
                raise DomainRuleError(
                    INSUFFICIENT_POINTS,
                    "Insufficient points balance",
                    details={"current_balance": user.points, "requested": points},
                )

            discount = discount_service.build_discount(
                DiscountCreate(
                    code_length=settings.loyalty_code_length,
                    description=f"{percent}% discount redeemed with {points} points",
                    type=DiscountType.PERCENT,
                    value=percent,
                    start_at=now,
                    end_at=end_at,
                    usage_limit=0,
                    is_public=False,
                    allowed_user_ids=[user_id],
                ),
                created_by=user_id,
                code_length=settings.loyalty_code_length,
                max_attempts=settings.loyalty_code_max_attempts,
            )
            assignment = DiscountAssignment(
                discount_id=discount.id,
                user_id=user_id,
                per_user_limit=1,
                used_count=0,
                effective_from=now,
                effective_to=end_at,
            )
            self.db.add(assignment)

            transaction = self._append(
                user,
                -points,
                LoyaltyTransactionType.POINTS_TO_DISCOUNT,
                f"Converted {points} points to a {percent}% discount",
                metadata=PointsToDiscountMetadata(
                    discount_id=discount.id,
                    discount_code=discount.code,
                    discount_percent=percent,
                ),
            )
            self.uow.after_commit(
                self.notifications.notify,
                user_id,
                NotificationCategory.LOYALTY,
                "Discount created",
                f"Your {percent}% discount code is {discount.code}",
                {"discount_id": discount.id},
            )
            self.uow.commit()
            logger.info(f"User {user_id} converted {points} points into discount {discount.code}")
            return discount, assignment, transaction

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error converting points for user {user_id}: {str(e)}")
            raise

    # ========== Queries ==========

    def _history_query(self, user_id: int) -> Query:
        return self.db.query(LoyaltyPointTransaction).filter(
            LoyaltyPointTransaction.user_id == user_id
        )

    def get_history(
        self,
        user_id: int,
        page: int = 1,
        limit: Optional[int] = None,
        transaction_type: Optional[LoyaltyTransactionType] = None,
    ) -> PointsHistoryPage:
        query = self._history_query(user_id)
        if transaction_type is not None:
            query = query.filter(LoyaltyPointTransaction.transaction_type == transaction_type)
        rows, total, page, limit = paginate(
            query.order_by(LoyaltyPointTransaction.id.desc()), page, limit
        )
        items: List[PointsTransactionResponse] = []
        for row in rows:
            entry = PointsTransactionResponse.model_validate(row)
            entry.details = parse_metadata(row.transaction_data)
            items.append(entry)
        return PointsHistoryPage(items=items, total=total, page=page, limit=limit)

    def get_stats(self, user_id: int) -> LoyaltyStats:
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundError("User", user_id)

        earned = (
            self.db.query(func.sum(LoyaltyPointTransaction.points_change))
            .filter(
                LoyaltyPointTransaction.user_id == user_id,
                LoyaltyPointTransaction.points_change > 0,
            )
            .scalar()
        )
        spent = (
            self.db.query(func.sum(func.abs(LoyaltyPointTransaction.points_change)))
            .filter(
                LoyaltyPointTransaction.user_id == user_id,
                LoyaltyPointTransaction.points_change < 0,
            )
            .scalar()
        )
        return LoyaltyStats(
            user_id=user_id,
            points_balance=user.points or 0,
            lifetime_points_earned=earned or 0,
            lifetime_points_spent=spent or 0,
        )
