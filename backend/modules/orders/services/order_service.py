# backend/modules/orders/services/order_service.py

from sqlalchemy import case
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime
import logging

from core.auth_context import Actor
from core.clock import utcnow
from core.error_handling import (
    APIValidationError,
    AuthorizationError,
    ConflictError,
    DomainRuleError,
    InvalidStateError,
    NotFoundError,
)
from core.notification_adapter import NotificationCategory, NotificationService
from core.pagination import paginate
from core.unit_of_work import UnitOfWork
from modules.discounts.services.discount_service import (
    DiscountEvaluation,
    DiscountService,
)
from modules.items.models.item_models import Item, ItemStatus
from modules.loyalty.services.loyalty_service import LoyaltyService
from modules.settings.services.settings_service import SettingsService
from ..enums.order_enums import OrderStatus, PaymentStatus, ReturnCondition, TERMINAL_STATUSES
from ..models.order_models import Order
from ..schemas.order_schemas import (
    OrderCreate,
    ReturnRequest,
    CompleteRequest,
    ResolveDisputeRequest,
    DiscountLine,
    DiscountSummary,
    OrderQuote,
    OrderPage,
    OrderResponse,
)
from .fee_calculator import FeeBreakdown, calculate_fees

logger = logging.getLogger(__name__)


VALID_TRANSITIONS = {
    OrderStatus.PENDING: [OrderStatus.CONFIRMED, OrderStatus.CANCELLED, OrderStatus.DISPUTED],
    OrderStatus.CONFIRMED: [OrderStatus.PROGRESS, OrderStatus.CANCELLED, OrderStatus.DISPUTED],
    OrderStatus.PROGRESS: [OrderStatus.RETURNED, OrderStatus.COMPLETED, OrderStatus.DISPUTED],
    OrderStatus.RETURNED: [OrderStatus.COMPLETED, OrderStatus.DISPUTED],
    OrderStatus.COMPLETED: [],
    OrderStatus.CANCELLED: [],
    OrderStatus.DISPUTED: [OrderStatus.COMPLETED],
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, [])


class OrderService:
    """Rental order lifecycle and its inventory, payment and discount side effects"""

    def __init__(
        self,
        uow: UnitOfWork,
        notifications: Optional[NotificationService] = None,
    ):
        self.uow = uow
        self.db = uow.session
        self.notifications = notifications or NotificationService()
        self.discounts = DiscountService(uow, self.notifications)

    # ========== Helpers ==========

    def _get_order(self, order_id: int, for_update: bool = False) -> Order:
        query = self.db.query(Order).filter(Order.id == order_id, Order.deleted_at.is_(None))
        if for_update:
            query = query.with_for_update()
        order = query.first()
        if not order:
            raise NotFoundError("Order", order_id)
        return order

    def _ensure_transition(self, order: Order, target: OrderStatus):
        if not can_transition(order.status, target):
            raise InvalidStateError(
                f"Cannot move order from {order.status.value} to {target.value}",
                current_status=order.status.value,
            )

    def _swap_status(self, order: Order, expected: OrderStatus, target: OrderStatus, values: Dict[Any, Any]):
        """
        Compare-and-swap the order status. Losing a race against another
        transition on the same order surfaces as a ConflictError.
        """
        values = dict(values)
        values[Order.status] = target
        updated = (
            self.db.query(Order)
            .filter(Order.id == order.id, Order.status == expected)
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            raise ConflictError(
                "Order was modified concurrently, please reload",
                {"order_id": order.id, "expected_status": expected.value},
            )
        self.db.expire(order)

    def _notify_parties(self, order: Order, title: str, body: str, extra: Optional[Dict[str, Any]] = None):
        metadata = {"order_id": order.id}
        metadata.update(extra or {})
        for user_id in (order.renter_id, order.owner_id):
            self.uow.after_commit(
                self.notifications.notify,
                user_id,
                NotificationCategory.ORDER,
                title,
                body,
                metadata,
                description=f"notify order {order.id} user {user_id}",
            )

    def _settle_item_stock(self, order: Order, condition: ReturnCondition, rented: bool = True):
        """Put the reserved unit back, or drop it from stock when it was lost"""
        if condition == ReturnCondition.LOST:
            new_quantity = case((Item.quantity > 0, Item.quantity - 1), else_=0)
            item_values = {
                Item.quantity: new_quantity,
                Item.available_quantity: case(
                    (Item.available_quantity > new_quantity, new_quantity),
                    else_=Item.available_quantity,
                ),
            }
        else:
            item_values = {
                Item.available_quantity: case(
                    (Item.available_quantity + 1 > Item.quantity, Item.quantity),
                    else_=Item.available_quantity + 1,
                ),
            }
        if rented:
            item_values[Item.rent_count] = Item.rent_count + order.quantity
        self.db.query(Item).filter(Item.id == order.item_id).update(
            item_values, synchronize_session=False
        )

    def _award_loyalty_points(self, renter_id: int, order_id: int, amount: int):
        # Own transaction, run after the confirmation has committed
        with self.uow.spawn() as loyalty_uow:
            LoyaltyService(loyalty_uow, self.notifications).add_order_points(
                renter_id, order_id, amount
            )

    # ========== Pricing ==========

    def _evaluate_discounts(
        self,
        rental_amount: int,
        item: Item,
        user_id: int,
        public_code: Optional[str],
        private_code: Optional[str],
        now: datetime,
        errors: Optional[Dict[str, str]] = None,
    ) -> Tuple[Optional[DiscountEvaluation], Optional[DiscountEvaluation]]:
        """
        Both codes discount the rental amount only. The public code sees the
        full rental amount; the private code sees what is left after it and
        is skipped when nothing is left.

        With ``errors`` given, rejections are collected instead of raised.
        """
        public_eval = private_eval = None

        if public_code:
            try:
                public_eval = self.discounts.validate_and_compute(
                    public_code, rental_amount, item.owner_id, item.id, user_id,
                    require_public=True, now=now,
                )
            except DomainRuleError as e:
                if errors is None:
                    raise
                errors["public"] = e.reason_code

        remaining = rental_amount - (public_eval.amount if public_eval else 0)

        # Nothing left to discount; the private grant is not spent
        if private_code and remaining > 0:
            try:
                private_eval = self.discounts.validate_and_compute(
                    private_code, remaining, item.owner_id, item.id, user_id,
                    require_public=False, now=now,
                )
                private_eval.amount = min(private_eval.amount, remaining)
            except DomainRuleError as e:
                if errors is None:
                    raise
                errors["private"] = e.reason_code

        return public_eval, private_eval

    def _price(self, item: Item, quantity: int, start_at: datetime, end_at: datetime) -> Tuple[FeeBreakdown, float]:
        rate = SettingsService(self.uow).get_service_fee_rate()
        fees = calculate_fees(
            item.price_unit,
            item.base_price,
            item.deposit_amount,
            quantity,
            start_at,
            end_at,
            service_fee_rate=rate,
        )
        if fees is None:
            raise APIValidationError(
                "Unable to price this rental",
                {"price_unit": item.price_unit, "quantity": quantity},
            )
        if item.max_rental_duration and fees.duration > item.max_rental_duration:
            raise DomainRuleError(
                "MAX_DURATION_EXCEEDED",
                f"Rental cannot exceed {item.max_rental_duration} {fees.unit_label}(s)",
                details={"duration": fees.duration},
            )
        return fees, float(rate)

    @staticmethod
    def _summarize(
        public_eval: Optional[DiscountEvaluation], private_eval: Optional[DiscountEvaluation]
    ) -> DiscountSummary:
        summary = DiscountSummary()
        if public_eval:
            summary.public = DiscountLine(**public_eval.summary())
        if private_eval:
            summary.private = DiscountLine(**private_eval.summary())
        summary.total_amount_applied = sum(
            e.amount for e in (public_eval, private_eval) if e is not None
        )
        return summary

    def _get_rentable_item(self, item_id: int, quantity: int, for_update: bool = False) -> Item:
        query = self.db.query(Item).filter(Item.id == item_id)
        if for_update:
            query = query.with_for_update()
        item = query.first()
        if not item:
            raise NotFoundError("Item", item_id)
        if item.status != ItemStatus.AVAILABLE:
            raise DomainRuleError("ITEM_UNAVAILABLE", "Item is not available for rent")
        if quantity > item.available_quantity:
            raise DomainRuleError(
                "INSUFFICIENT_QUANTITY",
                f"Only {item.available_quantity} unit(s) available",
                details={"available_quantity": item.available_quantity},
            )
        return item

    def preview_order(self, actor: Actor, data: OrderCreate, now: Optional[datetime] = None) -> OrderQuote:
        """Price an order without persisting anything; discount rejections are reported, not raised"""
        now = now or utcnow()
        item = self._get_rentable_item(data.item_id, data.quantity)
        fees, rate = self._price(item, data.quantity, data.start_at, data.end_at)
        errors: Dict[str, str] = {}
        public_eval, private_eval = self._evaluate_discounts(
            fees.rental_amount, item, actor.id,
            data.public_discount_code, data.private_discount_code, now, errors=errors,
        )
        summary = self._summarize(public_eval, private_eval)
        return OrderQuote(
            duration=fees.duration,
            unit_label=fees.unit_label,
            rental_amount=fees.rental_amount,
            service_fee=fees.service_fee,
            service_fee_rate=rate,
            deposit_amount=fees.deposit_amount,
            total_amount=fees.total_amount,
            discount=summary,
            final_amount=max(0, fees.total_amount - summary.total_amount_applied),
            discount_errors=errors,
        )

    # ========== Lifecycle ==========

    def create_order(self, actor: Actor, data: OrderCreate, now: Optional[datetime] = None) -> Order:
        """
        Price the rental, apply up to two discount codes and persist a pending
        order, consuming discount usage in the same transaction.
        """
        if actor.is_staff:
            raise AuthorizationError("Admins and moderators cannot rent items")
        now = now or utcnow()

        try:
            item = self._get_rentable_item(data.item_id, data.quantity, for_update=True)
            fees, rate = self._price(item, data.quantity, data.start_at, data.end_at)
            public_eval, private_eval = self._evaluate_discounts(
                fees.rental_amount, item, actor.id,
                data.public_discount_code, data.private_discount_code, now,
            )
            summary = self._summarize(public_eval, private_eval)

            order = Order(
                renter_id=actor.id,
                owner_id=item.owner_id,
                item_id=item.id,
                item_snapshot={
                    "title": item.title,
                    "images": list(item.images or []),
                    "base_price": item.base_price,
                    "price_unit": item.price_unit,
                },
                quantity=data.quantity,
                start_at=data.start_at,
                end_at=data.end_at,
                price_unit=item.price_unit,
                rental_duration=fees.duration,
                rental_amount=fees.rental_amount,
                deposit_amount=fees.deposit_amount,
                service_fee=fees.service_fee,
                service_fee_rate=rate,
                total_amount=fees.total_amount,
                discount_amount=summary.total_amount_applied,
                discount_breakdown=summary.model_dump(),
                final_amount=max(0, fees.total_amount - summary.total_amount_applied),
                status=OrderStatus.PENDING,
                payment_status=PaymentStatus.PENDING,
                renter_notes=data.notes,
            )
            self.db.add(order)
            self.db.flush()

            for evaluation in (public_eval, private_eval):
                if evaluation is not None:
                    self.discounts.consume(evaluation, order.id, actor.id)

            self._notify_parties(
                order,
                "Order created",
                f"Order for \"{item.title}\" has been created",
                {"total_amount": order.total_amount},
            )
            self.uow.commit()
            self.db.refresh(order)

            logger.info(
                f"Created order {order.id} for item {item.id} by user {actor.id}: "
                f"total={order.total_amount} discount={order.discount_amount}"
            )
            return order

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error creating order: {str(e)}")
            raise

    def confirm_order(self, actor: Actor, order_id: int, now: Optional[datetime] = None) -> Order:
        """Owner accepts a pending order and one unit is reserved"""
        now = now or utcnow()
        order = self._get_order(order_id)
        if order.owner_id != actor.id:
            raise AuthorizationError("Only the owner can confirm this order")
        self._ensure_transition(order, OrderStatus.CONFIRMED)

        try:
            self._swap_status(order, OrderStatus.PENDING, OrderStatus.CONFIRMED, {Order.confirmed_at: now})

            reserved = (
                self.db.query(Item)
                .filter(Item.id == order.item_id, Item.available_quantity >= 1)
                .update(
                    {Item.available_quantity: Item.available_quantity - 1},
                    synchronize_session=False,
                )
            )
            if reserved != 1:
                raise ConflictError(
                    "Item is no longer available",
                    {"item_id": order.item_id, "order_id": order.id},
                )

            self.uow.after_commit(
                self._award_loyalty_points,
                order.renter_id,
                order.id,
                order.final_amount,
                description=f"loyalty points for order {order.id}",
            )
            self._notify_parties(
                order, "Order confirmed", f"Order #{order.id} has been confirmed"
            )
            self.uow.commit()
            logger.info(f"Order {order.id} confirmed by owner {actor.id}")
            return self._get_order(order_id)

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error confirming order {order_id}: {str(e)}")
            raise

    def start_order(self, actor: Actor, order_id: int, now: Optional[datetime] = None) -> Order:
        """Owner hands the item over; the order is paid from here on"""
        now = now or utcnow()
        order = self._get_order(order_id)
        if order.owner_id != actor.id:
            raise AuthorizationError("Only the owner can start this order")
        self._ensure_transition(order, OrderStatus.PROGRESS)
        if order.status != OrderStatus.CONFIRMED:
            raise InvalidStateError("Order must be confirmed first", order.status.value)
        if order.start_at > now:
            raise DomainRuleError(
                "START_TIME_NOT_REACHED",
                "Rental period has not started yet",
                details={"start_at": order.start_at.isoformat()},
            )

        try:
            self._swap_status(
                order,
                OrderStatus.CONFIRMED,
                OrderStatus.PROGRESS,
                {Order.started_at: now, Order.payment_status: PaymentStatus.PAID},
            )
            self._notify_parties(order, "Rental started", f"Order #{order.id} is now in progress")
            self.uow.commit()
            logger.info(f"Order {order_id} started")
            return self._get_order(order_id)

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error starting order {order_id}: {str(e)}")
            raise

    def mark_returned(
        self, actor: Actor, order_id: int, request: ReturnRequest, now: Optional[datetime] = None
    ) -> Order:
        now = now or utcnow()
        order = self._get_order(order_id)
        if order.renter_id != actor.id:
            raise AuthorizationError("Only the renter can return this order")
        self._ensure_transition(order, OrderStatus.RETURNED)

        try:
            self._swap_status(
                order,
                OrderStatus.PROGRESS,
                OrderStatus.RETURNED,
                {Order.returned_at: now, Order.return_notes: request.notes},
            )
            self._notify_parties(order, "Item returned", f"The renter returned the item for order #{order.id}")
            self.uow.commit()
            logger.info(f"Order {order_id} marked returned by renter {actor.id}")
            return self._get_order(order_id)

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error marking order {order_id} returned: {str(e)}")
            raise

    def complete_order(
        self, actor: Actor, order_id: int, request: CompleteRequest, now: Optional[datetime] = None
    ) -> Order:
        """
        Owner inspects the returned item. A lost item shrinks the stock for
        good; otherwise the reserved unit goes back on the shelf.
        """
        now = now or utcnow()
        order = self._get_order(order_id)
        if order.owner_id != actor.id:
            raise AuthorizationError("Only the owner can complete this order")
        if order.status == OrderStatus.DISPUTED:
            raise InvalidStateError("Disputed orders are settled by staff", order.status.value)
        self._ensure_transition(order, OrderStatus.COMPLETED)
        if order.returned_at is None:
            raise InvalidStateError("The renter has not returned the item yet", order.status.value)

        damage_fee = max(0, request.damage_fee)
        owner_notes = order.owner_notes
        if request.owner_notes:
            owner_notes = f"{owner_notes}\n{request.owner_notes}" if owner_notes else request.owner_notes

        try:
            self._swap_status(
                order,
                order.status,
                OrderStatus.COMPLETED,
                {
                    Order.completed_at: now,
                    Order.return_condition: request.condition,
                    Order.damage_fee: damage_fee,
                    Order.owner_notes: owner_notes,
                    Order.payment_status: PaymentStatus.PARTIAL if damage_fee > 0 else PaymentStatus.PAID,
                },
            )

            self._settle_item_stock(order, request.condition)

            self._notify_parties(
                order,
                "Order completed",
                f"Order #{order.id} has been completed",
                {"condition": request.condition.value, "damage_fee": damage_fee},
            )
            self.uow.commit()
            logger.info(f"Order {order_id} completed, condition={request.condition.value}, damage_fee={damage_fee}")
            return self._get_order(order_id)

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error completing order {order_id}: {str(e)}")
            raise

    def cancel_order(
        self, actor: Actor, order_id: int, reason: Optional[str] = None, now: Optional[datetime] = None
    ) -> Order:
        """
        Either party may cancel a pending order. Once confirmed only the owner
        can cancel, and the reserved unit is released.
        """
        now = now or utcnow()
        order = self._get_order(order_id)
        if not order.is_party(actor.id):
            raise AuthorizationError("Only the renter or owner can cancel this order")
        self._ensure_transition(order, OrderStatus.CANCELLED)
        if order.status == OrderStatus.CONFIRMED and actor.id != order.owner_id:
            raise AuthorizationError("Only the owner can cancel a confirmed order")

        previous = order.status
        try:
            self._swap_status(
                order,
                previous,
                OrderStatus.CANCELLED,
                {Order.cancelled_at: now, Order.cancel_reason: reason},
            )
            if previous == OrderStatus.CONFIRMED:
                self.db.query(Item).filter(Item.id == order.item_id).update(
                    {
                        Item.available_quantity: case(
                            (Item.available_quantity + 1 > Item.quantity, Item.quantity),
                            else_=Item.available_quantity + 1,
                        )
                    },
                    synchronize_session=False,
                )
            self.discounts.refund_order_redemptions(order.id)

            self._notify_parties(
                order, "Order cancelled", f"Order #{order.id} has been cancelled", {"reason": reason}
            )
            self.uow.commit()
            logger.info(f"Order {order_id} cancelled by user {actor.id} from {previous.value}")
            return self._get_order(order_id)

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error cancelling order {order_id}: {str(e)}")
            raise

    def dispute_order(self, actor: Actor, order_id: int, reason: str, now: Optional[datetime] = None) -> Order:
        now = now or utcnow()
        if not reason or not reason.strip():
            raise APIValidationError("A dispute reason is required")
        order = self._get_order(order_id)
        if not order.is_party(actor.id):
            raise AuthorizationError("Only the renter or owner can dispute this order")
        self._ensure_transition(order, OrderStatus.DISPUTED)

        try:
            self._swap_status(
                order,
                order.status,
                OrderStatus.DISPUTED,
                {Order.disputed_at: now, Order.dispute_reason: reason.strip()},
            )
            self._notify_parties(
                order, "Order disputed", f"A dispute was opened on order #{order.id}", {"opened_by": actor.id}
            )
            self.uow.commit()
            logger.info(f"Order {order_id} disputed by user {actor.id}")
            return self._get_order(order_id)

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error disputing order {order_id}: {str(e)}")
            raise

    def resolve_dispute(
        self, actor: Actor, order_id: int, request: ResolveDisputeRequest, now: Optional[datetime] = None
    ) -> Order:
        """
        Staff settle a disputed order, which then completes. A non-zero refund
        marks the payment refunded. When the owner had confirmed the order its
        reserved unit is settled the way an inspection would settle it.
        """
        if not actor.is_staff:
            raise AuthorizationError("Only admins and moderators can resolve disputes")
        now = now or utcnow()
        order = self._get_order(order_id)
        if order.status != OrderStatus.DISPUTED:
            raise InvalidStateError("Only disputed orders can be resolved", order.status.value)
        self._ensure_transition(order, OrderStatus.COMPLETED)

        refund_amount = round(order.final_amount * request.refund_percentage / 100)
        resolution = request.decision
        if request.notes:
            resolution = f"{resolution}\n{request.notes.strip()}"
        holds_unit = order.confirmed_at is not None

        try:
            self._swap_status(
                order,
                OrderStatus.DISPUTED,
                OrderStatus.COMPLETED,
                {
                    Order.completed_at: now,
                    Order.dispute_resolution: resolution,
                    Order.dispute_resolved_by: actor.id,
                    Order.dispute_resolved_at: now,
                    Order.refund_amount: refund_amount,
                    Order.return_condition: request.condition if holds_unit else None,
                    Order.payment_status: PaymentStatus.REFUNDED if refund_amount > 0 else PaymentStatus.PAID,
                },
            )
            if holds_unit:
                self._settle_item_stock(order, request.condition, rented=order.started_at is not None)

            self._notify_parties(
                order,
                "Dispute resolved",
                f"The dispute on order #{order.id} has been resolved: {request.decision}",
                {"refund_amount": refund_amount, "resolved_by": actor.id},
            )
            self.uow.commit()
            logger.info(
                f"Dispute on order {order_id} resolved by staff {actor.id}, refund={refund_amount}"
            )
            return self._get_order(order_id)

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error resolving dispute on order {order_id}: {str(e)}")
            raise

    def archive_order(self, actor: Actor, order_id: int, now: Optional[datetime] = None) -> Order:
        """Soft-delete a finished order"""
        now = now or utcnow()
        order = self._get_order(order_id)
        if not (order.is_party(actor.id) or actor.is_admin):
            raise AuthorizationError("You cannot archive this order")
        if order.status not in TERMINAL_STATUSES:
            raise InvalidStateError("Only completed or cancelled orders can be archived", order.status.value)

        try:
            order.deleted_at = now
            self.uow.commit()
            logger.info(f"Order {order_id} archived by user {actor.id}")
            return order
        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error archiving order {order_id}: {str(e)}")
            raise

    # ========== Queries ==========

    def get_order(self, actor: Actor, order_id: int) -> Order:
        order = self._get_order(order_id)
        if not (order.is_party(actor.id) or actor.is_staff):
            raise AuthorizationError("You cannot view this order")
        return order

    def list_orders(
        self,
        actor: Actor,
        as_owner: bool = False,
        status: Optional[OrderStatus] = None,
        payment_status: Optional[PaymentStatus] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> OrderPage:
        """Orders where the actor is the renter, or the owner with ``as_owner``"""
        party_column = Order.owner_id if as_owner else Order.renter_id
        query = self.db.query(Order).filter(party_column == actor.id, Order.deleted_at.is_(None))
        if status is not None:
            query = query.filter(Order.status == status)
        if payment_status is not None:
            query = query.filter(Order.payment_status == payment_status)
        if search:
            query = query.join(Item, Item.id == Order.item_id).filter(Item.title.ilike(f"%{search.strip()}%"))

        orders, total, page, limit = paginate(
            query.order_by(Order.created_at.desc(), Order.id.desc()), page, limit
        )
        items: List[OrderResponse] = [OrderResponse.model_validate(o) for o in orders]
        return OrderPage(items=items, total=total, page=page, limit=limit)
