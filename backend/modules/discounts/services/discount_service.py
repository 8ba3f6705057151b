# backend/modules/discounts/services/discount_service.py

from sqlalchemy import or_, func, select
from sqlalchemy.exc import IntegrityError
from typing import Optional, List, Tuple
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import math
import re
import string
import secrets
import logging

from core.auth_context import Actor, UserRole
from core.clock import utcnow
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
from ..models.discount_models import (
    Discount,
    DiscountAssignment,
    DiscountRedemption,
    DiscountType,
    RedemptionStatus,
)
from ..schemas.discount_schemas import (
    DiscountCreate,
    DiscountUpdate,
    AssignUsersRequest,
    AvailableDiscount,
)

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_CODE_LENGTH = 32


class DiscountReason:
    """Stable reason codes reported when a code cannot be applied"""

    INVALID_CODE = "INVALID_CODE"
    NOT_STARTED = "NOT_STARTED"
    EXPIRED = "EXPIRED"
    BELOW_MIN_ORDER = "BELOW_MIN_ORDER"
    OWNER_NOT_MATCH = "OWNER_NOT_MATCH"
    ITEM_NOT_MATCH = "ITEM_NOT_MATCH"
    NOT_ALLOWED_USER = "NOT_ALLOWED_USER"
    ASSIGN_NOT_STARTED = "ASSIGN_NOT_STARTED"
    ASSIGN_EXPIRED = "ASSIGN_EXPIRED"
    PER_USER_LIMIT = "PER_USER_LIMIT"
    USAGE_LIMIT = "USAGE_LIMIT"


@dataclass
class DiscountEvaluation:
    """A discount that passed validation, with the amount it takes off"""

    discount: Discount
    amount: int
    base_amount: int
    assignment: Optional[DiscountAssignment] = None

    def summary(self) -> dict:
        return {
            "discount_id": self.discount.id,
            "code": self.discount.code,
            "type": self.discount.type.value,
            "value": self.discount.value,
            "is_public": self.discount.is_public,
            "amount_applied": self.amount,
        }


def compute_discount_amount(discount: Discount, base_amount: int) -> int:
    """
    Reduction for ``base_amount``: percent or fixed value, capped by the
    discount's max when non-zero, floored, and clamped to [0, base_amount].
    """
    if base_amount <= 0:
        return 0
    value = Decimal(str(discount.value))
    if discount.type == DiscountType.PERCENT:
        raw = Decimal(base_amount) * value / Decimal(100)
    else:
        raw = value
    if discount.max_discount_amount and discount.max_discount_amount > 0:
        raw = min(raw, Decimal(discount.max_discount_amount))
    return max(0, min(base_amount, math.floor(raw)))


def sanitize_code_prefix(prefix: Optional[str]) -> str:
    if not prefix:
        return ""
    return re.sub(r"[^A-Z0-9]", "", prefix.upper())


class DiscountService:
    """Discount codes: eligibility, computation, usage accounting and management"""

    def __init__(self, uow: UnitOfWork, notifications: Optional[NotificationService] = None):
        self.uow = uow
        self.db = uow.session
        self.notifications = notifications or NotificationService()

    # ========== Code generation ==========

    def generate_code(
        self,
        prefix: Optional[str] = None,
        length: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> str:
        """
        Generate a code not yet used by any discount.

        Args:
            prefix: Optional prefix, reduced to A-Z0-9
            length: Total length including the prefix (1-32)
            max_attempts: Collision retries before giving up
        """
        length = length or settings.discount_code_length
        max_attempts = max_attempts or settings.discount_code_max_attempts
        if length < 1 or length > MAX_CODE_LENGTH:
            raise APIValidationError(f"Code length must be between 1 and {MAX_CODE_LENGTH}")

        prefix = sanitize_code_prefix(prefix)[:length]
        random_length = length - len(prefix)

        for _ in range(max_attempts):
            code = prefix + "".join(secrets.choice(CODE_ALPHABET) for _ in range(random_length))
            exists = self.db.query(Discount.id).filter(Discount.code == code).first()
            if not exists:
                return code

        raise ConflictError(
            f"Could not generate unique discount code after {max_attempts} attempts",
            {"prefix": prefix, "length": length},
        )

    # ========== Validation & computation ==========

    def get_by_code(self, code: str) -> Discount:
        normalized = (code or "").strip().upper()
        discount = (
            self.db.query(Discount).filter(func.upper(Discount.code) == normalized).first()
            if normalized
            else None
        )
        if not discount:
            raise NotFoundError("Discount", code)
        return discount

    def _reject(self, reason: str, message: str, code: str):
        raise DomainRuleError(reason, message, details={"code": code})

    def validate_and_compute(
        self,
        code: str,
        base_amount: int,
        owner_id: Optional[int],
        item_id: Optional[int],
        user_id: int,
        require_public: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> DiscountEvaluation:
        """
        Check every eligibility rule for ``code`` and compute its amount.

        Raises DomainRuleError carrying one of the DiscountReason codes.
        ``require_public`` pins the code to the public or private slot.
        """
        now = now or utcnow()
        normalized = (code or "").strip().upper()
        discount = None
        if normalized:
            discount = (
                self.db.query(Discount)
                .filter(func.upper(Discount.code) == normalized)
                .first()
            )

        if not discount or not discount.is_active:
            self._reject(DiscountReason.INVALID_CODE, "Discount code is invalid", code)
        if require_public is not None and discount.is_public != require_public:
            kind = "public" if require_public else "private"
            self._reject(DiscountReason.INVALID_CODE, f"Discount code is not a {kind} code", code)
        if now < discount.start_at:
            self._reject(DiscountReason.NOT_STARTED, "Discount is not active yet", code)
        if now > discount.end_at:
            self._reject(DiscountReason.EXPIRED, "Discount has expired", code)
        if base_amount < (discount.min_order_amount or 0):
            self._reject(
                DiscountReason.BELOW_MIN_ORDER,
                f"Order amount must be at least {discount.min_order_amount}",
                code,
            )
        if discount.owner_id and discount.owner_id != owner_id:
            self._reject(DiscountReason.OWNER_NOT_MATCH, "Discount does not apply to this owner", code)
        if discount.item_id and discount.item_id != item_id:
            self._reject(DiscountReason.ITEM_NOT_MATCH, "Discount does not apply to this item", code)

        assignment = None
        if not discount.is_public:
            assignment = self._check_private_eligibility(discount, user_id, now, code)

        if discount.usage_limit and discount.used_count >= discount.usage_limit:
            self._reject(DiscountReason.USAGE_LIMIT, "Discount usage limit reached", code)

        return DiscountEvaluation(
            discount=discount,
            amount=compute_discount_amount(discount, base_amount),
            base_amount=base_amount,
            assignment=assignment,
        )

    def _check_private_eligibility(
        self, discount: Discount, user_id: int, now: datetime, code: str
    ) -> Optional[DiscountAssignment]:
        # An assignment, when present, governs eligibility with its own window
        # and per-user cap; otherwise the allow-list grants uncapped access.
        assignment = (
            self.db.query(DiscountAssignment)
            .filter(
                DiscountAssignment.discount_id == discount.id,
                DiscountAssignment.user_id == user_id,
            )
            .first()
        )
        if assignment:
            if assignment.effective_from and now < assignment.effective_from:
                self._reject(DiscountReason.ASSIGN_NOT_STARTED, "Your discount is not active yet", code)
            if assignment.effective_to and now > assignment.effective_to:
                self._reject(DiscountReason.ASSIGN_EXPIRED, "Your discount has expired", code)
            if assignment.per_user_limit and assignment.used_count >= assignment.per_user_limit:
                self._reject(DiscountReason.PER_USER_LIMIT, "You have used this discount already", code)
            return assignment

        if user_id in (discount.allowed_user_ids or []):
            return None

        self._reject(DiscountReason.NOT_ALLOWED_USER, "Discount is not available to you", code)

    # ========== Usage accounting (caller commits) ==========

    def consume(self, evaluation: DiscountEvaluation, order_id: int, user_id: int) -> DiscountRedemption:
        """
        Record one use of an evaluated discount against an order.

        Counters move through conditional updates so concurrent orders cannot
        push them past their limits; the loser gets USAGE_LIMIT or
        PER_USER_LIMIT and its transaction must roll back.
        """
        discount = evaluation.discount
        updated = (
            self.db.query(Discount)
            .filter(
                Discount.id == discount.id,
                or_(Discount.usage_limit == 0, Discount.used_count < Discount.usage_limit),
            )
            .update({Discount.used_count: Discount.used_count + 1}, synchronize_session=False)
        )
        if updated != 1:
            raise DomainRuleError(
                DiscountReason.USAGE_LIMIT,
                "Discount usage limit reached",
                status_code=409,
                details={"code": discount.code},
            )
        self.db.expire(discount, ["used_count"])

        assignment = evaluation.assignment
        if assignment is not None:
            updated = (
                self.db.query(DiscountAssignment)
                .filter(
                    DiscountAssignment.id == assignment.id,
                    or_(
                        DiscountAssignment.per_user_limit == 0,
                        DiscountAssignment.used_count < DiscountAssignment.per_user_limit,
                    ),
                )
                .update(
                    {DiscountAssignment.used_count: DiscountAssignment.used_count + 1},
                    synchronize_session=False,
                )
            )
            if updated != 1:
                raise DomainRuleError(
                    DiscountReason.PER_USER_LIMIT,
                    "You have used this discount already",
                    status_code=409,
                    details={"code": discount.code},
                )
            self.db.expire(assignment, ["used_count"])

        redemption = DiscountRedemption(
            discount_id=discount.id,
            assignment_id=assignment.id if assignment is not None else None,
            user_id=user_id,
            order_id=order_id,
            amount_applied=evaluation.amount,
            status=RedemptionStatus.APPLIED,
        )
        self.db.add(redemption)
        logger.info(f"Discount {discount.code} applied to order {order_id}: {evaluation.amount}")
        return redemption

    def refund_order_redemptions(self, order_id: int) -> List[DiscountRedemption]:
        """
        Flip an order's redemptions to refunded and give the uses back.

        Each redemption flips through a conditional update on its APPLIED
        status, so concurrent refunds of the same order decrement once.
        """
        candidates = (
            self.db.query(DiscountRedemption)
            .filter(
                DiscountRedemption.order_id == order_id,
                DiscountRedemption.status == RedemptionStatus.APPLIED,
            )
            .all()
        )
        now = utcnow()
        refunded = []
        for redemption in candidates:
            flipped = (
                self.db.query(DiscountRedemption)
                .filter(
                    DiscountRedemption.id == redemption.id,
                    DiscountRedemption.status == RedemptionStatus.APPLIED,
                )
                .update(
                    {
                        DiscountRedemption.status: RedemptionStatus.REFUNDED,
                        DiscountRedemption.refunded_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if flipped != 1:
                continue
            self.db.query(Discount).filter(
                Discount.id == redemption.discount_id, Discount.used_count > 0
            ).update({Discount.used_count: Discount.used_count - 1}, synchronize_session=False)
            if redemption.assignment_id:
                self.db.query(DiscountAssignment).filter(
                    DiscountAssignment.id == redemption.assignment_id,
                    DiscountAssignment.used_count > 0,
                ).update(
                    {DiscountAssignment.used_count: DiscountAssignment.used_count - 1},
                    synchronize_session=False,
                )
            refunded.append(redemption)

        if refunded:
            # bulk updates bypass the identity map; keep pending changes, reload the rest
            self.db.flush()
            self.db.expire_all()
            logger.info(f"Refunded {len(refunded)} discount redemptions for order {order_id}")
        return refunded

    # ========== Management ==========

    def _get_discount(self, discount_id: int) -> Discount:
        discount = self.db.query(Discount).filter(Discount.id == discount_id).first()
        if not discount:
            raise NotFoundError("Discount", discount_id)
        return discount

    def _ensure_can_manage(self, actor: Actor, discount: Discount):
        if actor.is_admin:
            return
        if actor.role == UserRole.OWNER and discount.owner_id == actor.id:
            return
        raise AuthorizationError("You cannot manage this discount")

    def build_discount(
        self,
        data: DiscountCreate,
        created_by: Optional[int],
        code_length: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> Discount:
        """Add a discount to the session without committing."""
        code = self.generate_code(
            prefix=data.code_prefix,
            length=code_length or data.code_length,
            max_attempts=max_attempts,
        )
        discount = Discount(
            code=code,
            description=data.description,
            type=data.type,
            value=data.value,
            max_discount_amount=data.max_discount_amount,
            min_order_amount=data.min_order_amount,
            start_at=data.start_at,
            end_at=data.end_at,
            usage_limit=data.usage_limit,
            used_count=0,
            is_active=True,
            is_public=data.is_public,
            owner_id=data.owner_id,
            item_id=data.item_id,
            allowed_user_ids=list(dict.fromkeys(data.allowed_user_ids)),
            created_by=created_by,
        )
        self.db.add(discount)
        self.db.flush()
        return discount

    def create_discount(self, actor: Actor, data: DiscountCreate) -> Discount:
        """Create a discount; owners may only create discounts scoped to themselves"""
        if actor.role == UserRole.OWNER:
            if data.owner_id not in (None, actor.id):
                raise AuthorizationError("Owners can only create discounts for their own items")
            data = data.model_copy(update={"owner_id": actor.id})
        elif not actor.is_admin:
            raise AuthorizationError("Only admins and owners can create discounts")

        try:
            discount = self.build_discount(data, created_by=actor.id)
            self.uow.commit()
            self.db.refresh(discount)
            logger.info(f"Created discount {discount.code} by user {actor.id}")
            return discount

        except IntegrityError as e:
            self.uow.rollback()
            logger.error(f"Discount code collision on insert: {e}")
            raise ConflictError("Discount code already exists, please retry")
        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error creating discount: {str(e)}")
            raise

    def update_discount(self, actor: Actor, discount_id: int, data: DiscountUpdate) -> Discount:
        discount = self._get_discount(discount_id)
        self._ensure_can_manage(actor, discount)

        changes = data.model_dump(exclude_unset=True)
        start_at = changes.get("start_at", discount.start_at)
        end_at = changes.get("end_at", discount.end_at)
        if end_at <= start_at:
            raise APIValidationError("End date must be after start date")

        value = changes.get("value", discount.value)
        if discount.type == DiscountType.PERCENT and value > 100:
            raise APIValidationError("Percentage discount cannot exceed 100%")
        if discount.type == DiscountType.FIXED and "value" in changes:
            changes["value"] = float(math.floor(value))
            if changes["value"] <= 0:
                raise APIValidationError("Fixed discount must be at least 1")

        usage_limit = changes.get("usage_limit", discount.usage_limit)
        if usage_limit and usage_limit < discount.used_count:
            raise APIValidationError(
                f"Usage limit cannot be below the {discount.used_count} uses already made"
            )
        if "owner_id" in changes and not actor.is_admin and changes["owner_id"] != actor.id:
            raise AuthorizationError("Owners cannot move a discount to another owner")
        if "allowed_user_ids" in changes:
            changes["allowed_user_ids"] = list(dict.fromkeys(changes["allowed_user_ids"]))

        try:
            for field, field_value in changes.items():
                setattr(discount, field, field_value)
            self.uow.commit()
            self.db.refresh(discount)
            logger.info(f"Updated discount {discount.code}: {sorted(changes)}")
            return discount

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error updating discount {discount_id}: {str(e)}")
            raise

    def _set_active(self, actor: Actor, discount_id: int, is_active: bool) -> Discount:
        discount = self._get_discount(discount_id)
        self._ensure_can_manage(actor, discount)
        try:
            discount.is_active = is_active
            self.uow.commit()
            self.db.refresh(discount)
            logger.info(f"Discount {discount.code} {'activated' if is_active else 'deactivated'}")
            return discount
        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error changing discount {discount_id} state: {str(e)}")
            raise

    def activate_discount(self, actor: Actor, discount_id: int) -> Discount:
        return self._set_active(actor, discount_id, True)

    def deactivate_discount(self, actor: Actor, discount_id: int) -> Discount:
        return self._set_active(actor, discount_id, False)

    def set_public(self, actor: Actor, discount_id: int, is_public: bool) -> Discount:
        """
        Switch visibility. A discount going public drops its per-user
        assignments, except those already redeemed, which stay as history.
        """
        discount = self._get_discount(discount_id)
        self._ensure_can_manage(actor, discount)
        try:
            if is_public and not discount.is_public:
                redeemed = select(DiscountRedemption.assignment_id).where(
                    DiscountRedemption.assignment_id.isnot(None)
                )
                removed = (
                    self.db.query(DiscountAssignment)
                    .filter(
                        DiscountAssignment.discount_id == discount.id,
                        DiscountAssignment.id.not_in(redeemed),
                    )
                    .delete(synchronize_session=False)
                )
                logger.info(f"Removed {removed} assignments from discount {discount.code}")
            discount.is_public = is_public
            self.uow.commit()
            self.db.expire_all()
            return self._get_discount(discount_id)
        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error changing visibility of discount {discount_id}: {str(e)}")
            raise

    def assign_users(
        self, actor: Actor, discount_id: int, request: AssignUsersRequest
    ) -> List[DiscountAssignment]:
        """Grant a private discount to users, updating grants that already exist"""
        discount = self._get_discount(discount_id)
        self._ensure_can_manage(actor, discount)
        if discount.is_public:
            raise ConflictError(
                "Public discounts cannot be assigned to users",
                {"discount_id": discount_id},
            )

        try:
            assignments = []
            new_user_ids = []
            for user_id in dict.fromkeys(request.user_ids):
                assignment = (
                    self.db.query(DiscountAssignment)
                    .filter(
                        DiscountAssignment.discount_id == discount.id,
                        DiscountAssignment.user_id == user_id,
                    )
                    .first()
                )
                if assignment is None:
                    assignment = DiscountAssignment(
                        discount_id=discount.id, user_id=user_id, used_count=0
                    )
                    self.db.add(assignment)
                    new_user_ids.append(user_id)
                assignment.per_user_limit = request.per_user_limit
                assignment.effective_from = request.effective_from
                assignment.effective_to = request.effective_to
                assignments.append(assignment)

            self.db.flush()
            for user_id in new_user_ids:
                self.uow.after_commit(
                    self.notifications.notify,
                    user_id,
                    NotificationCategory.DISCOUNT,
                    "New discount",
                    f"You received discount code {discount.code}",
                    {"discount_id": discount.id},
                    description=f"notify discount assignment user {user_id}",
                )
            self.uow.commit()
            logger.info(f"Assigned discount {discount.code} to {len(assignments)} users")
            return assignments

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error assigning discount {discount_id}: {str(e)}")
            raise

    def list_discounts(
        self,
        is_active: Optional[bool] = None,
        is_public: Optional[bool] = None,
        owner_id: Optional[int] = None,
        item_id: Optional[int] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Tuple[List[Discount], int, int, int]:
        query = self.db.query(Discount)
        if is_active is not None:
            query = query.filter(Discount.is_active == is_active)
        if is_public is not None:
            query = query.filter(Discount.is_public == is_public)
        if owner_id is not None:
            query = query.filter(Discount.owner_id == owner_id)
        if item_id is not None:
            query = query.filter(Discount.item_id == item_id)
        return paginate(query.order_by(Discount.created_at.desc(), Discount.id.desc()), page, limit)

    def list_available_for_user(self, user_id: int, now: Optional[datetime] = None) -> List[AvailableDiscount]:
        """Public discounts plus private ones assigned or allow-listed to the user"""
        now = now or utcnow()
        candidates = (
            self.db.query(Discount)
            .filter(
                Discount.is_active.is_(True),
                Discount.start_at <= now,
                Discount.end_at >= now,
                or_(Discount.usage_limit == 0, Discount.used_count < Discount.usage_limit),
            )
            .order_by(Discount.end_at.asc())
            .all()
        )
        claimed = {
            a.discount_id: a
            for a in self.db.query(DiscountAssignment)
            .filter(DiscountAssignment.user_id == user_id)
            .all()
        }

        available = []
        for discount in candidates:
            assignment = claimed.get(discount.id)
            if not discount.is_public:
                if assignment is None and user_id not in (discount.allowed_user_ids or []):
                    continue
                if assignment is not None and assignment.per_user_limit and (
                    assignment.used_count >= assignment.per_user_limit
                ):
                    continue
            entry = AvailableDiscount.model_validate(discount)
            entry.is_claimed = assignment is not None
            available.append(entry)
        return available

    def claim_discount(self, user_id: int, discount_id: int, now: Optional[datetime] = None) -> DiscountAssignment:
        """Save a public discount to the user's wallet; claiming twice returns the same grant"""
        now = now or utcnow()
        discount = self._get_discount(discount_id)
        if not discount.is_public or not discount.is_active:
            raise DomainRuleError(DiscountReason.INVALID_CODE, "Discount cannot be claimed")
        if now < discount.start_at:
            raise DomainRuleError(DiscountReason.NOT_STARTED, "Discount is not active yet")
        if now > discount.end_at:
            raise DomainRuleError(DiscountReason.EXPIRED, "Discount has expired")

        existing = (
            self.db.query(DiscountAssignment)
            .filter(
                DiscountAssignment.discount_id == discount.id,
                DiscountAssignment.user_id == user_id,
            )
            .first()
        )
        if existing:
            return existing

        try:
            assignment = DiscountAssignment(
                discount_id=discount.id,
                user_id=user_id,
                # Public evaluation never consults claims, so a claim carries no limit
                per_user_limit=0,
                used_count=0,
                effective_from=discount.start_at,
                effective_to=discount.end_at,
            )
            self.db.add(assignment)
            self.uow.commit()
            self.db.refresh(assignment)
            logger.info(f"User {user_id} claimed discount {discount.code}")
            return assignment

        except IntegrityError:
            # A concurrent claim by the same user won the unique constraint
            self.uow.rollback()
            return (
                self.db.query(DiscountAssignment)
                .filter(
                    DiscountAssignment.discount_id == discount_id,
                    DiscountAssignment.user_id == user_id,
                )
                .one()
            )
        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error claiming discount {discount_id}: {str(e)}")
            raise
