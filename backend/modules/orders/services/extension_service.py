# backend/modules/orders/services/extension_service.py

from sqlalchemy.exc import IntegrityError
from typing import Optional, List
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
from core.unit_of_work import UnitOfWork
from modules.items.models.item_models import Item
from ..enums.order_enums import OrderStatus, ExtensionStatus
from ..models.order_models import Order, ExtensionRequest
from ..schemas.order_schemas import ExtensionCreate, ExtensionReject
from .fee_calculator import calculate_rental_amount, get_time_unit

logger = logging.getLogger(__name__)


class ExtensionService:
    """Renter-initiated, owner-approved extensions of in-progress rentals"""

    def __init__(self, uow: UnitOfWork, notifications: Optional[NotificationService] = None):
        self.uow = uow
        self.db = uow.session
        self.notifications = notifications or NotificationService()

    def _get_order(self, order_id: int) -> Order:
        order = (
            self.db.query(Order)
            .filter(Order.id == order_id, Order.deleted_at.is_(None))
            .first()
        )
        if not order:
            raise NotFoundError("Order", order_id)
        return order

    def _get_request(self, request_id: int) -> ExtensionRequest:
        request = self.db.query(ExtensionRequest).filter(ExtensionRequest.id == request_id).first()
        if not request:
            raise NotFoundError("ExtensionRequest", request_id)
        return request

    def _notify(self, user_id: int, title: str, body: str, request: ExtensionRequest):
        self.uow.after_commit(
            self.notifications.notify,
            user_id,
            NotificationCategory.EXTENSION,
            title,
            body,
            {"order_id": request.order_id, "extension_id": request.id},
            description=f"notify extension {request.id} user {user_id}",
        )

    def _has_pending(self, order_id: int) -> bool:
        return (
            self.db.query(ExtensionRequest.id)
            .filter(
                ExtensionRequest.order_id == order_id,
                ExtensionRequest.status == ExtensionStatus.PENDING,
            )
            .first()
            is not None
        )

    def request_extension(self, actor: Actor, order_id: int, data: ExtensionCreate) -> ExtensionRequest:
        """
        Ask the owner for more rental time.

        The fee covers only the rental component over [end_at, new end];
        no extra deposit or service fee is charged.
        """
        order = self._get_order(order_id)
        if order.renter_id != actor.id:
            raise AuthorizationError("Only the renter can request an extension")
        if order.status != OrderStatus.PROGRESS:
            raise InvalidStateError("Only in-progress orders can be extended", order.status.value)
        if self._has_pending(order.id):
            raise ConflictError(
                "An extension request is already pending for this order", {"order_id": order.id}
            )

        unit = get_time_unit(order.price_unit)
        if unit is None:
            raise APIValidationError("Order has no valid price unit", {"price_unit": order.price_unit})

        item = self.db.query(Item).filter(Item.id == order.item_id).first()
        if item and item.max_rental_duration:
            if order.rental_duration + data.extension_duration > item.max_rental_duration:
                raise DomainRuleError(
                    "MAX_DURATION_EXCEEDED",
                    f"Rental cannot exceed {item.max_rental_duration} {unit.label}(s)",
                    details={
                        "rental_duration": order.rental_duration,
                        "requested": data.extension_duration,
                    },
                )

        new_end = order.end_at + unit.length * data.extension_duration
        snapshot = order.item_snapshot or {}
        fee = calculate_rental_amount(
            order.price_unit, snapshot.get("base_price"), order.quantity, order.end_at, new_end
        )
        if fee is None:
            raise APIValidationError("Unable to price this extension")

        try:
            request = ExtensionRequest(
                order_id=order.id,
                requested_by=actor.id,
                original_end_at=order.end_at,
                requested_end_at=new_end,
                extension_duration=data.extension_duration,
                price_unit=order.price_unit,
                extension_fee=fee,
                status=ExtensionStatus.PENDING,
                notes=data.notes,
            )
            self.db.add(request)
            self.db.flush()

            self._notify(
                order.owner_id,
                "Extension requested",
                f"The renter asked to extend order #{order.id} by {data.extension_duration} {unit.label}(s)",
                request,
            )
            self.uow.commit()
            logger.info(f"Extension {request.id} requested on order {order.id}: +{data.extension_duration}, fee={fee}")
            return request

        except IntegrityError:
            # Lost the race against a concurrent request on the same order
            self.uow.rollback()
            raise ConflictError(
                "An extension request is already pending for this order", {"order_id": order_id}
            )
        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error requesting extension for order {order_id}: {str(e)}")
            raise

    def _decidable(self, actor: Actor, request_id: int):
        request = self._get_request(request_id)
        order = self._get_order(request.order_id)
        if order.owner_id != actor.id:
            raise AuthorizationError("Only the owner can decide on an extension")
        if request.status != ExtensionStatus.PENDING:
            raise InvalidStateError("Extension request was already decided", request.status.value)
        return request, order

    def _close_request(self, request: ExtensionRequest, status: ExtensionStatus, values: dict):
        values = dict(values)
        values[ExtensionRequest.status] = status
        updated = (
            self.db.query(ExtensionRequest)
            .filter(
                ExtensionRequest.id == request.id,
                ExtensionRequest.status == ExtensionStatus.PENDING,
            )
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            raise ConflictError("Extension request was decided concurrently", {"extension_id": request.id})
        self.db.expire(request)

    def approve_extension(self, actor: Actor, request_id: int, now: Optional[datetime] = None) -> ExtensionRequest:
        """Apply the extension to the order and its item in one transaction"""
        now = now or utcnow()
        request, order = self._decidable(actor, request_id)
        if order.status != OrderStatus.PROGRESS:
            raise InvalidStateError("Order is no longer in progress", order.status.value)

        try:
            self._close_request(
                request,
                ExtensionStatus.APPROVED,
                {ExtensionRequest.decided_by: actor.id, ExtensionRequest.decided_at: now},
            )
            updated = (
                self.db.query(Order)
                .filter(
                    Order.id == order.id,
                    Order.status == OrderStatus.PROGRESS,
                    Order.end_at == request.original_end_at,
                )
                .update(
                    {
                        Order.end_at: request.requested_end_at,
                        Order.total_amount: Order.total_amount + request.extension_fee,
                        Order.final_amount: Order.final_amount + request.extension_fee,
                        Order.rental_duration: Order.rental_duration + request.extension_duration,
                    },
                    synchronize_session=False,
                )
            )
            if updated != 1:
                raise ConflictError("Order was modified concurrently, please reload", {"order_id": order.id})
            self.db.query(Item).filter(Item.id == order.item_id).update(
                {Item.rent_count: Item.rent_count + request.extension_duration},
                synchronize_session=False,
            )
            self.db.expire(order)

            self._notify(
                order.renter_id,
                "Extension approved",
                f"Your extension for order #{order.id} was approved",
                request,
            )
            self.uow.commit()
            logger.info(f"Extension {request_id} approved; order {order.id} now ends {request.requested_end_at}")
            return self._get_request(request_id)

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error approving extension {request_id}: {str(e)}")
            raise

    def reject_extension(
        self, actor: Actor, request_id: int, data: ExtensionReject, now: Optional[datetime] = None
    ) -> ExtensionRequest:
        now = now or utcnow()
        request, order = self._decidable(actor, request_id)

        try:
            self._close_request(
                request,
                ExtensionStatus.REJECTED,
                {
                    ExtensionRequest.decided_by: actor.id,
                    ExtensionRequest.decided_at: now,
                    ExtensionRequest.rejection_reason: data.reason,
                },
            )
            self._notify(
                order.renter_id,
                "Extension rejected",
                f"Your extension for order #{order.id} was rejected: {data.reason}",
                request,
            )
            self.uow.commit()
            logger.info(f"Extension {request_id} rejected by owner {actor.id}")
            return self._get_request(request_id)

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error rejecting extension {request_id}: {str(e)}")
            raise

    def list_extension_requests(self, actor: Actor, order_id: int) -> List[ExtensionRequest]:
        order = self._get_order(order_id)
        if not order.is_party(actor.id):
            raise AuthorizationError("You cannot view this order's extensions")
        return (
            self.db.query(ExtensionRequest)
            .filter(ExtensionRequest.order_id == order_id)
            .order_by(ExtensionRequest.created_at.desc(), ExtensionRequest.id.desc())
            .all()
        )
