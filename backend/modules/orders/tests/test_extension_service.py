# backend/modules/orders/tests/test_extension_service.py

import pytest
from datetime import timedelta

from core.auth_context import Actor
from core.error_handling import (
    AuthorizationError,
    ConflictError,
    DomainRuleError,
    InvalidStateError,
)
from modules.orders.enums.order_enums import ExtensionStatus, OrderStatus
from modules.orders.models.order_models import Order
from modules.orders.schemas.order_schemas import ExtensionCreate, ExtensionReject
from modules.orders.services.extension_service import ExtensionService
from tests.factories import ItemFactory, OrderFactory, UserFactory


def actor_for(user):
    return Actor(id=user.id, role=user.role)


@pytest.fixture
def service(uow, notifications):
    return ExtensionService(uow, notifications)


@pytest.fixture
def order(db):
    """Two-day rental of one unit at 100,000/day, currently in progress"""
    return OrderFactory(status=OrderStatus.PROGRESS)


class TestRequestExtension:
    def test_one_more_day(self, service, order, notification_adapter):
        request = service.request_extension(
            actor_for(order.renter), order.id, ExtensionCreate(extension_duration=1, notes="Need it for the weekend")
        )

        assert request.status == ExtensionStatus.PENDING
        assert request.original_end_at == order.end_at
        assert request.requested_end_at == order.end_at + timedelta(days=1)
        assert request.extension_fee == 100000
        assert notification_adapter.titles_for(order.owner_id) == ["Extension requested"]

    def test_fee_scales_with_quantity(self, service):
        order = OrderFactory(status=OrderStatus.PROGRESS, quantity=2)
        request = service.request_extension(
            actor_for(order.renter), order.id, ExtensionCreate(extension_duration=3)
        )
        assert request.extension_fee == 600000

    def test_fee_uses_price_at_order_time(self, service, order, db):
        order.item.base_price = 150000
        db.commit()

        request = service.request_extension(
            actor_for(order.renter), order.id, ExtensionCreate(extension_duration=1)
        )
        assert request.extension_fee == 100000

    def test_only_one_pending_request(self, service, order):
        renter = actor_for(order.renter)
        service.request_extension(renter, order.id, ExtensionCreate(extension_duration=1))
        with pytest.raises(ConflictError):
            service.request_extension(renter, order.id, ExtensionCreate(extension_duration=2))

    def test_only_renter_can_ask(self, service, order):
        with pytest.raises(AuthorizationError):
            service.request_extension(actor_for(order.owner), order.id, ExtensionCreate(extension_duration=1))

    def test_order_must_be_in_progress(self, service):
        order = OrderFactory(status=OrderStatus.CONFIRMED)
        with pytest.raises(InvalidStateError):
            service.request_extension(actor_for(order.renter), order.id, ExtensionCreate(extension_duration=1))

    def test_respects_max_rental_duration(self, service):
        order = OrderFactory(status=OrderStatus.PROGRESS, item=ItemFactory(max_rental_duration=3))
        with pytest.raises(DomainRuleError) as exc:
            service.request_extension(actor_for(order.renter), order.id, ExtensionCreate(extension_duration=2))
        assert exc.value.reason_code == "MAX_DURATION_EXCEEDED"

    def test_duration_must_be_positive(self):
        with pytest.raises(ValueError):
            ExtensionCreate(extension_duration=0)


class TestDecideExtension:
    def test_approve_moves_end_and_charges(self, service, order, db, notification_adapter):
        request = service.request_extension(
            actor_for(order.renter), order.id, ExtensionCreate(extension_duration=1)
        )

        approved = service.approve_extension(actor_for(order.owner), request.id)

        assert approved.status == ExtensionStatus.APPROVED
        assert approved.decided_by == order.owner_id
        assert approved.decided_at is not None

        db.expire_all()
        updated = db.get(Order, order.id)
        assert updated.end_at == order.start_at + timedelta(days=3)
        assert updated.rental_duration == 3
        assert updated.total_amount == 260000 + 100000
        assert updated.final_amount == 260000 + 100000
        assert updated.item.rent_count == 1
        assert "Extension approved" in notification_adapter.titles_for(order.renter_id)

    def test_reject_leaves_order_untouched(self, service, order, db):
        request = service.request_extension(
            actor_for(order.renter), order.id, ExtensionCreate(extension_duration=1)
        )

        rejected = service.reject_extension(
            actor_for(order.owner), request.id, ExtensionReject(reason="Already booked")
        )

        assert rejected.status == ExtensionStatus.REJECTED
        assert rejected.rejection_reason == "Already booked"
        db.expire_all()
        assert db.get(Order, order.id).end_at == order.end_at

    def test_new_request_allowed_after_rejection(self, service, order):
        renter = actor_for(order.renter)
        first = service.request_extension(renter, order.id, ExtensionCreate(extension_duration=1))
        service.reject_extension(actor_for(order.owner), first.id, ExtensionReject(reason="No"))

        second = service.request_extension(renter, order.id, ExtensionCreate(extension_duration=1))
        assert second.status == ExtensionStatus.PENDING

    def test_decided_only_once(self, service, order):
        request = service.request_extension(
            actor_for(order.renter), order.id, ExtensionCreate(extension_duration=1)
        )
        service.approve_extension(actor_for(order.owner), request.id)
        with pytest.raises(InvalidStateError):
            service.reject_extension(actor_for(order.owner), request.id, ExtensionReject(reason="Too late"))

    def test_only_owner_decides(self, service, order):
        request = service.request_extension(
            actor_for(order.renter), order.id, ExtensionCreate(extension_duration=1)
        )
        with pytest.raises(AuthorizationError):
            service.approve_extension(actor_for(order.renter), request.id)

    def test_cannot_approve_once_returned(self, uow_factory, notifications, order, db):
        request = ExtensionService(uow_factory(), notifications).request_extension(
            actor_for(order.renter), order.id, ExtensionCreate(extension_duration=1)
        )
        order.status = OrderStatus.RETURNED
        db.commit()

        with pytest.raises(InvalidStateError):
            ExtensionService(uow_factory(), notifications).approve_extension(actor_for(order.owner), request.id)

    def test_stale_approval_is_rejected(self, uow_factory, notifications, order, db):
        """An approval racing another change to the order's end time must lose"""
        request = ExtensionService(uow_factory(), notifications).request_extension(
            actor_for(order.renter), order.id, ExtensionCreate(extension_duration=1)
        )
        order.end_at = order.end_at + timedelta(hours=6)
        db.commit()

        with pytest.raises(ConflictError):
            ExtensionService(uow_factory(), notifications).approve_extension(actor_for(order.owner), request.id)

        db.expire_all()
        assert db.get(Order, order.id).rental_duration == 2


class TestListExtensions:
    def test_parties_see_history(self, service, order):
        renter = actor_for(order.renter)
        first = service.request_extension(renter, order.id, ExtensionCreate(extension_duration=1))
        service.reject_extension(actor_for(order.owner), first.id, ExtensionReject(reason="No"))
        service.request_extension(renter, order.id, ExtensionCreate(extension_duration=2))

        history = service.list_extension_requests(actor_for(order.owner), order.id)
        assert [r.extension_duration for r in history] == [2, 1]

    def test_outsiders_cannot_look(self, service, order):
        with pytest.raises(AuthorizationError):
            service.list_extension_requests(actor_for(UserFactory()), order.id)
