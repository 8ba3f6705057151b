# backend/modules/contracts/tests/test_contract_service.py

"""
Tests for contract templates, rendering and the two-party signing protocol.
"""

import base64
import pytest

from core.audit_logger import AuditLog
from core.auth_context import Actor, UserRole
from core.error_handling import (
    APIError,
    AuthorizationError,
    ConflictError,
    DomainRuleError,
    InvalidStateError,
    NotFoundError,
)
from modules.contracts.models.contract_models import (
    Contract,
    ContractSignature,
    ContractStatus,
    ContractTemplate,
)
from modules.contracts.schemas.contract_schemas import (
    ContractCreate,
    ContractTemplateCreate,
    ContractTemplateUpdate,
    SignaturePosition,
    SignContractRequest,
)
from modules.contracts.services.contract_service import ContractService
from modules.orders.enums.order_enums import OrderStatus
from modules.orders.models.order_models import Order
from modules.users.services.identity_service import IdentityService
from tests.factories import (
    AdminFactory,
    ContractFactory,
    ContractTemplateFactory,
    OrderFactory,
    UserFactory,
)

SIGNATURE_PNG = b"\x89PNG\r\n\x1a\nsignature-strokes"


def actor_for(user):
    return Actor(id=user.id, role=user.role)


def new_signature(**kwargs):
    return SignContractRequest(
        signature_data=base64.b64encode(SIGNATURE_PNG).decode(), **kwargs
    )


@pytest.fixture
def make_service(uow_factory, asset_store, cipher, notifications, email_service, renderer):
    def _make(with_renderer=True):
        return ContractService(
            uow_factory(),
            asset_store=asset_store,
            cipher=cipher,
            notifications=notifications,
            email_service=email_service,
            renderer=renderer if with_renderer else None,
        )
    return _make


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def template(db):
    return ContractTemplateFactory()


@pytest.fixture
def order(db):
    return OrderFactory(status=OrderStatus.CONFIRMED)


class TestTemplates:
    def test_admin_manages_templates(self, service):
        admin = actor_for(AdminFactory())
        template = service.create_template(
            admin,
            ContractTemplateCreate(
                template_name="Camera rental",
                header_content="Header",
                body_content="Body {{ item_title }}",
                footer_content="Footer",
            ),
        )
        assert template.created_by == admin.id

        updated = service.update_template(
            admin, template.id, ContractTemplateUpdate(is_active=False, description="Retired")
        )
        assert updated.is_active is False
        assert updated.description == "Retired"
        assert updated.body_content == "Body {{ item_title }}"

    def test_non_admins_cannot_manage(self, service, order):
        with pytest.raises(AuthorizationError):
            service.create_template(
                actor_for(order.owner),
                ContractTemplateCreate(
                    template_name="Mine", header_content="H", body_content="B", footer_content="F"
                ),
            )

    def test_list_active_only(self, service):
        ContractTemplateFactory(template_name="B active")
        ContractTemplateFactory(template_name="A retired", is_active=False)

        assert [t.template_name for t in service.list_templates()] == ["B active"]
        assert [t.template_name for t in service.list_templates(active_only=False)] == [
            "A retired",
            "B active",
        ]

    def test_delete_unused_template(self, service, template, db):
        template_id = template.id
        service.delete_template(actor_for(AdminFactory()), template_id)
        db.expire_all()
        assert db.query(ContractTemplate).filter(ContractTemplate.id == template_id).count() == 0

    def test_cannot_delete_referenced_template(self, service):
        contract = ContractFactory()
        with pytest.raises(ConflictError):
            service.delete_template(actor_for(AdminFactory()), contract.template_id)


class TestRendering:
    def test_preview_fills_placeholders(self, service, template, order, db):
        preview = service.preview_contract(
            actor_for(order.renter), ContractCreate(order_id=order.id, template_id=template.id)
        )

        assert preview.content.startswith(f"RENTAL AGREEMENT #{order.id}\n\n")
        assert f"Owner: {order.owner.full_name} (ID Not verified)" in preview.content
        assert "Period: 10/01/2026 09:00 - 12/01/2026 09:00" in preview.content
        assert "Total: 260.000 VND" in preview.content
        assert "---\nADDITIONAL TERMS\nNo additional terms.\n---" in preview.content
        assert "{{" not in preview.content
        assert db.query(Contract).count() == 0

    def test_identity_number_is_decrypted_into_contract(self, uow_factory, cipher, service, template, order):
        IdentityService(uow_factory(), cipher).store_id_card(
            actor_for(order.owner), order.owner_id, "079123456789", "Tran Thi B"
        )

        preview = service.preview_contract(
            actor_for(order.owner), ContractCreate(order_id=order.id, template_id=template.id)
        )
        assert "(ID 079123456789)" in preview.content

    def test_contract_data_keys(self, service, order):
        data = service.build_contract_data(order)
        assert data["rental_unit"] == "day"
        assert data["rental_start_date"] == "10/01/2026"
        assert data["rental_end_time"] == "09:00"
        assert data["deposit_amount"] == "50.000"
        assert data["discount_code"] == "None"
        assert data["renter_full_name_on_id"] == order.renter.full_name

    def test_discount_codes_listed(self, service):
        order = OrderFactory(
            status=OrderStatus.CONFIRMED,
            discount_breakdown={
                "public": {"code": "SPRING"},
                "private": {"code": "VIP"},
                "total_amount_applied": 0,
            },
        )
        assert service.build_contract_data(order)["discount_code"] == "SPRING, VIP"


class TestCreateContract:
    def test_create(self, service, template, order, notification_adapter):
        contract = service.create_contract(
            actor_for(order.owner),
            ContractCreate(order_id=order.id, template_id=template.id, custom_clauses="No smoking."),
        )

        assert contract.status == ContractStatus.PENDING_SIGNATURE
        assert contract.owner_id == order.owner_id
        assert contract.renter_id == order.renter_id
        assert "ADDITIONAL TERMS\nNo smoking.\n---" in contract.content
        assert notification_adapter.titles_for(order.renter_id) == ["Contract created"]
        assert notification_adapter.titles_for(order.owner_id) == []

    def test_one_contract_per_order(self, service, template, order):
        request = ContractCreate(order_id=order.id, template_id=template.id)
        service.create_contract(actor_for(order.owner), request)
        with pytest.raises(ConflictError):
            service.create_contract(actor_for(order.renter), request)

    @pytest.mark.parametrize("status", [OrderStatus.PENDING, OrderStatus.COMPLETED, OrderStatus.CANCELLED])
    def test_order_must_be_confirmed_or_running(self, service, template, status):
        order = OrderFactory(status=status)
        with pytest.raises(InvalidStateError):
            service.create_contract(
                actor_for(order.owner), ContractCreate(order_id=order.id, template_id=template.id)
            )

    def test_inactive_template(self, service, order):
        template = ContractTemplateFactory(is_active=False)
        with pytest.raises(DomainRuleError) as exc:
            service.create_contract(
                actor_for(order.owner), ContractCreate(order_id=order.id, template_id=template.id)
            )
        assert exc.value.reason_code == "TEMPLATE_INACTIVE"

    def test_outsiders_cannot_create(self, service, template, order):
        with pytest.raises(AuthorizationError):
            service.create_contract(
                actor_for(UserFactory()), ContractCreate(order_id=order.id, template_id=template.id)
            )

    def test_contract_for_order(self, service, template, order):
        ContractTemplateFactory(is_active=False)
        before = service.get_contract_for_order(actor_for(order.renter), order.id)
        assert before.contract is None
        assert [t.id for t in before.templates] == [template.id]

        service.create_contract(
            actor_for(order.owner), ContractCreate(order_id=order.id, template_id=template.id)
        )

        renter_view = service.get_contract_for_order(actor_for(order.renter), order.id)
        assert renter_view.contract.order_id == order.id
        assert renter_view.can_sign is True

        staff_view = service.get_contract_for_order(Actor(id=10**6, role=UserRole.MODERATOR), order.id)
        assert staff_view.contract is not None
        assert staff_view.can_sign is False


class TestSigning:
    def test_two_signatures_complete_the_contract(self, make_service, asset_store, email_sender, db):
        contract = ContractFactory()
        order = contract.order

        first = make_service().sign_contract(actor_for(order.owner), contract.id, new_signature())
        assert first.position_x == 15.0
        assert first.position_y == 95.0
        db.expire_all()
        assert db.get(Contract, contract.id).status == ContractStatus.PENDING_SIGNATURE
        assert email_sender.sent == []

        second = make_service().sign_contract(
            actor_for(order.renter), contract.id, new_signature(position_x=55, position_y=90)
        )
        assert (second.position_x, second.position_y) == (55.0, 90.0)

        db.expire_all()
        signed = db.get(Contract, contract.id)
        assert signed.status == ContractStatus.SIGNED
        assert signed.signed_at is not None
        assert db.get(Order, order.id).is_contract_signed is True
        assert len(asset_store.assets) == 2

        recipients = sorted(mail["to"] for mail in email_sender.sent)
        assert recipients == sorted([order.owner.email, order.renter.email])
        assert all("fully signed" in mail["subject"] for mail in email_sender.sent)

    def test_renter_default_position(self, service):
        contract = ContractFactory()
        row = service.sign_contract(actor_for(contract.order.renter), contract.id, new_signature())
        assert (row.position_x, row.position_y) == (60.0, 95.0)

    def test_signing_again_only_moves_the_overlay(self, make_service, asset_store, email_sender, db):
        contract = ContractFactory()
        owner = actor_for(contract.order.owner)
        make_service().sign_contract(owner, contract.id, new_signature())
        make_service().sign_contract(actor_for(contract.order.renter), contract.id, new_signature())
        uploads = len(asset_store.assets)
        emails = len(email_sender.sent)

        moved = make_service().sign_contract(
            owner,
            contract.id,
            SignContractRequest(use_existing_signature=True, position_x=30, position_y=80),
        )

        assert (moved.position_x, moved.position_y) == (30.0, 80.0)
        assert moved.verification_note.startswith("Updated position at ")
        assert db.query(ContractSignature).filter(ContractSignature.contract_id == contract.id).count() == 2
        assert len(asset_store.assets) == uploads
        assert len(email_sender.sent) == emails
        db.expire_all()
        assert db.get(Contract, contract.id).status == ContractStatus.SIGNED

    def test_reuse_saved_signature(self, make_service, asset_store):
        contract = ContractFactory()
        owner = actor_for(contract.order.owner)
        other = ContractFactory(order=OrderFactory(status=OrderStatus.CONFIRMED, item=contract.order.item))

        make_service().sign_contract(owner, contract.id, new_signature())
        row = make_service().sign_contract(owner, other.id, SignContractRequest(use_existing_signature=True))

        assert len(asset_store.assets) == 1
        assert row.image_url in asset_store.assets

    def test_reuse_without_saved_signature(self, service):
        contract = ContractFactory()
        with pytest.raises(NotFoundError):
            service.sign_contract(
                actor_for(contract.order.owner), contract.id, SignContractRequest(use_existing_signature=True)
            )

    def test_outsiders_cannot_sign(self, service):
        contract = ContractFactory()
        with pytest.raises(AuthorizationError):
            service.sign_contract(actor_for(UserFactory()), contract.id, new_signature())

    def test_signing_is_audited(self, make_service, db):
        contract = ContractFactory()
        make_service().sign_contract(actor_for(contract.order.owner), contract.id, new_signature())

        entries = db.query(AuditLog).filter(AuditLog.table_name == "contract_signatures").all()
        assert [e.operation for e in entries] == ["CREATE"]
        assert "Total signatures: 1" in entries[0].summary

    def test_move_signature(self, make_service):
        contract = ContractFactory()
        owner = actor_for(contract.order.owner)

        with pytest.raises(NotFoundError):
            make_service().update_signature_position(
                owner, contract.id, SignaturePosition(position_x=10, position_y=10)
            )

        make_service().sign_contract(owner, contract.id, new_signature())
        row = make_service().update_signature_position(
            owner, contract.id, SignaturePosition(position_x=10, position_y=20)
        )
        assert (row.position_x, row.position_y) == (10.0, 20.0)

    def test_position_bounds(self):
        with pytest.raises(ValueError):
            SignaturePosition(position_x=101, position_y=50)
        with pytest.raises(ValueError):
            new_signature(position_y=-1)


class TestExport:
    def test_overlays_each_valid_signature(self, make_service, renderer):
        contract = ContractFactory(content="Agreement text")
        make_service().sign_contract(actor_for(contract.order.owner), contract.id, new_signature())
        make_service().sign_contract(
            actor_for(contract.order.renter), contract.id, new_signature(position_x=70)
        )

        document = make_service().export_contract_document(actor_for(contract.order.owner), contract.id)

        assert document.startswith(b"%PDF")
        text, overlays = renderer.calls[-1]
        assert text == "Agreement text"
        assert [(o.position_x, o.position_y) for o in overlays] == [(15.0, 95.0), (70.0, 95.0)]
        assert all(o.image_url.startswith("memory://signatures/") for o in overlays)

    def test_requires_a_renderer(self, make_service):
        contract = ContractFactory()
        with pytest.raises(APIError) as exc:
            make_service(with_renderer=False).export_contract_document(
                actor_for(contract.order.owner), contract.id
            )
        assert exc.value.status_code == 503

    def test_outsiders_cannot_export(self, service):
        contract = ContractFactory()
        with pytest.raises(AuthorizationError):
            service.export_contract_document(actor_for(UserFactory()), contract.id)
