# backend/modules/contracts/services/contract_service.py

from sqlalchemy.exc import IntegrityError
from typing import Optional, List, Dict, Any
from datetime import datetime
import logging

from fastapi import status

from core.audit_logger import AuditLogger, AuditOperation
from core.auth_context import Actor
from core.clock import utcnow
from core.crypto import SymmetricCipher, get_cipher
from core.document_renderer import DocumentRenderer, SignatureOverlay
from core.email_service import EmailService
from core.error_handling import (
    APIError,
    AuthorizationError,
    ConflictError,
    DomainRuleError,
    InvalidStateError,
    NotFoundError,
)
from core.file_service import AssetStore
from core.notification_adapter import NotificationCategory, NotificationService
from core.unit_of_work import UnitOfWork
from modules.orders.enums.order_enums import OrderStatus
from modules.orders.models.order_models import Order
from modules.orders.services.fee_calculator import get_time_unit
from modules.users.models.user_models import User
from modules.users.services.identity_service import IdentityService
from ..models.contract_models import (
    Contract,
    ContractSignature,
    ContractStatus,
    ContractTemplate,
    REQUIRED_SIGNATURES,
)
from ..schemas.contract_schemas import (
    ContractCreate,
    ContractForOrder,
    ContractPreview,
    ContractResponse,
    ContractTemplateCreate,
    ContractTemplateResponse,
    ContractTemplateUpdate,
    SignaturePosition,
    SignContractRequest,
)
from .signature_service import SignatureService
from .template_renderer import format_amount, render_contract

logger = logging.getLogger(__name__)

# Contracts can be drawn up once the owner has accepted the order
CONTRACTABLE_STATUSES = frozenset({OrderStatus.CONFIRMED, OrderStatus.PROGRESS})

# Default overlay positions, percent of the page
OWNER_DEFAULT_X = 15.0
RENTER_DEFAULT_X = 60.0
DEFAULT_Y = 95.0

NOT_VERIFIED = "Not verified"
CONTRACT_SIGNATURE_TABLE = "contract_signatures"


class ContractService:
    """Contract templates, contract rendering and the two-party signing protocol"""

    def __init__(
        self,
        uow: UnitOfWork,
        asset_store: Optional[AssetStore] = None,
        cipher: Optional[SymmetricCipher] = None,
        notifications: Optional[NotificationService] = None,
        email_service: Optional[EmailService] = None,
        renderer: Optional[DocumentRenderer] = None,
    ):
        self.uow = uow
        self.db = uow.session
        self.cipher = cipher or get_cipher()
        self.notifications = notifications or NotificationService()
        self.email_service = email_service or EmailService()
        self.renderer = renderer
        self.audit = AuditLogger(self.db)
        self.signatures = SignatureService(
            uow, asset_store, self.cipher, self.notifications, self.email_service
        )
        self.identity = IdentityService(uow, self.cipher, self.email_service)

    # ========== Templates ==========

    def _get_template(self, template_id: int) -> ContractTemplate:
        template = self.db.query(ContractTemplate).filter(ContractTemplate.id == template_id).first()
        if not template:
            raise NotFoundError("ContractTemplate", template_id)
        return template

    @staticmethod
    def _require_admin(actor: Actor):
        if not actor.is_admin:
            raise AuthorizationError("Only admins can manage contract templates")

    def create_template(self, actor: Actor, data: ContractTemplateCreate) -> ContractTemplate:
        self._require_admin(actor)
        try:
            template = ContractTemplate(**data.model_dump(), created_by=actor.id)
            self.db.add(template)
            self.uow.commit()
            self.db.refresh(template)
            logger.info(f"Created contract template {template.id} '{template.template_name}'")
            return template
        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error creating contract template: {str(e)}")
            raise

    def update_template(self, actor: Actor, template_id: int, data: ContractTemplateUpdate) -> ContractTemplate:
        self._require_admin(actor)
        template = self._get_template(template_id)
        try:
            for field, value in data.model_dump(exclude_unset=True).items():
                if value is not None:
                    setattr(template, field, value)
            self.uow.commit()
            logger.info(f"Updated contract template {template_id}")
            return template
        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error updating contract template {template_id}: {str(e)}")
            raise

    def delete_template(self, actor: Actor, template_id: int) -> None:
        self._require_admin(actor)
        template = self._get_template(template_id)
        in_use = self.db.query(Contract.id).filter(Contract.template_id == template_id).first()
        if in_use:
            raise ConflictError(
                "Template is referenced by existing contracts; deactivate it instead",
                {"template_id": template_id},
            )
        try:
            self.db.delete(template)
            self.uow.commit()
            logger.info(f"Deleted contract template {template_id}")
        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error deleting contract template {template_id}: {str(e)}")
            raise

    def get_template(self, template_id: int) -> ContractTemplate:
        return self._get_template(template_id)

    def list_templates(self, active_only: bool = True) -> List[ContractTemplate]:
        query = self.db.query(ContractTemplate)
        if active_only:
            query = query.filter(ContractTemplate.is_active.is_(True))
        return query.order_by(ContractTemplate.template_name).all()

    # ========== Rendering ==========

    def _get_order(self, order_id: int) -> Order:
        order = self.db.query(Order).filter(Order.id == order_id, Order.deleted_at.is_(None)).first()
        if not order:
            raise NotFoundError("Order", order_id)
        return order

    def _party_data(self, prefix: str, user: User) -> Dict[str, Any]:
        id_card = self.identity.read_id_card(user.id) or {}
        return {
            f"{prefix}_name": user.full_name,
            f"{prefix}_email": user.email,
            f"{prefix}_phone": user.phone or "",
            f"{prefix}_id_card_number": id_card.get("id_number") or NOT_VERIFIED,
            f"{prefix}_full_name_on_id": id_card.get("full_name") or user.full_name,
        }

    def build_contract_data(self, order: Order, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Values for the template placeholders. Identity numbers are decrypted
        here and only live in the returned mapping.
        """
        now = now or utcnow()
        snapshot = order.item_snapshot or {}
        unit = get_time_unit(order.price_unit)
        breakdown = order.discount_breakdown or {}
        codes = [
            line["code"]
            for line in (breakdown.get("public"), breakdown.get("private"))
            if line
        ]

        data: Dict[str, Any] = {}
        data.update(self._party_data("owner", order.owner))
        data.update(self._party_data("renter", order.renter))
        data.update({
            "order_id": order.id,
            "item_title": snapshot.get("title", ""),
            "item_description": order.item.description if order.item else "",
            "base_price": format_amount(snapshot.get("base_price")),
            "quantity": order.quantity,
            "rental_start_date": order.start_at.strftime("%d/%m/%Y"),
            "rental_start_time": order.start_at.strftime("%H:%M"),
            "rental_end_date": order.end_at.strftime("%d/%m/%Y"),
            "rental_end_time": order.end_at.strftime("%H:%M"),
            "rental_period_full": (
                f"{order.start_at.strftime('%d/%m/%Y %H:%M')} - {order.end_at.strftime('%d/%m/%Y %H:%M')}"
            ),
            "rental_duration": order.rental_duration,
            "rental_unit": unit.label if unit else "",
            "rental_amount": format_amount(order.rental_amount),
            "deposit_amount": format_amount(order.deposit_amount),
            "service_fee": format_amount(order.service_fee),
            "total_before_discount": format_amount(order.total_amount),
            "discount_amount": format_amount(order.discount_amount),
            "discount_code": ", ".join(codes) if codes else "None",
            "final_amount": format_amount(order.final_amount),
            "currency": "VND",
            "today": now.strftime("%d/%m/%Y"),
        })
        return data

    def _renderable(self, actor: Actor, data: ContractCreate):
        order = self._get_order(data.order_id)
        if not order.is_party(actor.id):
            raise AuthorizationError("Only the renter or owner can draw up this contract")
        template = self._get_template(data.template_id)
        if not template.is_active:
            raise DomainRuleError("TEMPLATE_INACTIVE", "This contract template is not active")
        return order, template

    def _render(self, order: Order, template: ContractTemplate, custom_clauses: Optional[str]) -> str:
        return render_contract(
            template.header_content,
            template.body_content,
            template.footer_content,
            self.build_contract_data(order),
            custom_clauses,
        )

    def preview_contract(self, actor: Actor, data: ContractCreate) -> ContractPreview:
        order, template = self._renderable(actor, data)
        return ContractPreview(
            order_id=order.id,
            template_id=template.id,
            content=self._render(order, template, data.custom_clauses),
        )

    # ========== Contracts ==========

    def create_contract(self, actor: Actor, data: ContractCreate) -> Contract:
        order, template = self._renderable(actor, data)
        if order.status not in CONTRACTABLE_STATUSES:
            raise InvalidStateError(
                "A contract can only be created for a confirmed or in-progress order",
                order.status.value,
            )
        if self.db.query(Contract.id).filter(Contract.order_id == order.id).first():
            raise ConflictError("This order already has a contract", {"order_id": order.id})

        try:
            contract = Contract(
                order_id=order.id,
                owner_id=order.owner_id,
                renter_id=order.renter_id,
                template_id=template.id,
                content=self._render(order, template, data.custom_clauses),
                custom_clauses=data.custom_clauses,
                status=ContractStatus.PENDING_SIGNATURE,
            )
            self.db.add(contract)
            self.db.flush()

            other = order.renter_id if actor.id == order.owner_id else order.owner_id
            self.uow.after_commit(
                self.notifications.notify,
                other,
                NotificationCategory.CONTRACT,
                "Contract created",
                f"A contract for order #{order.id} is ready. Please review and sign it.",
                {"contract_id": contract.id, "order_id": order.id},
                description=f"notify contract {contract.id} created",
            )
            self.uow.commit()
            logger.info(f"Created contract {contract.id} for order {order.id}")
            return contract

        except IntegrityError:
            self.uow.rollback()
            raise ConflictError("This order already has a contract", {"order_id": data.order_id})
        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error creating contract for order {data.order_id}: {str(e)}")
            raise

    def _get_contract(self, contract_id: int, for_update: bool = False) -> Contract:
        query = self.db.query(Contract).filter(Contract.id == contract_id)
        if for_update:
            query = query.with_for_update()
        contract = query.first()
        if not contract:
            raise NotFoundError("Contract", contract_id)
        return contract

    @staticmethod
    def _ensure_can_view(actor: Actor, contract: Contract):
        if actor.id not in (contract.owner_id, contract.renter_id) and not actor.is_staff:
            raise AuthorizationError("You cannot view this contract")

    def get_contract(self, actor: Actor, contract_id: int) -> Contract:
        contract = self._get_contract(contract_id)
        self._ensure_can_view(actor, contract)
        return contract

    def get_contract_for_order(self, actor: Actor, order_id: int) -> ContractForOrder:
        order = self._get_order(order_id)
        if not order.is_party(actor.id) and not actor.is_staff:
            raise AuthorizationError("You cannot view this order's contract")

        contract = self.db.query(Contract).filter(Contract.order_id == order_id).first()
        if contract is None:
            return ContractForOrder(
                templates=[ContractTemplateResponse.model_validate(t) for t in self.list_templates()],
            )
        return ContractForOrder(
            contract=ContractResponse.model_validate(contract),
            can_sign=(
                contract.status == ContractStatus.PENDING_SIGNATURE and order.is_party(actor.id)
            ),
        )

    def list_contract_signatures(self, actor: Actor, contract_id: int) -> List[ContractSignature]:
        contract = self.get_contract(actor, contract_id)
        return list(contract.signatures)

    # ========== Signing ==========

    @staticmethod
    def default_position(contract: Contract, signer_id: int) -> Dict[str, float]:
        x = OWNER_DEFAULT_X if signer_id == contract.owner_id else RENTER_DEFAULT_X
        return {"position_x": x, "position_y": DEFAULT_Y}

    def _signer_row(self, contract_id: int, signer_id: int) -> Optional[ContractSignature]:
        return (
            self.db.query(ContractSignature)
            .filter(
                ContractSignature.contract_id == contract_id,
                ContractSignature.signer_id == signer_id,
            )
            .first()
        )

    def _move(self, row: ContractSignature, actor: Actor, x: float, y: float, now: datetime):
        row.position_x = x
        row.position_y = y
        row.verification_note = f"Updated position at {now.isoformat()}"
        self.audit.log_action(
            CONTRACT_SIGNATURE_TABLE, AuditOperation.UPDATE, row.id, actor.id,
            f"Signature position moved to ({x}, {y})",
        )

    def sign_contract(
        self, actor: Actor, contract_id: int, request: SignContractRequest, now: Optional[datetime] = None
    ) -> ContractSignature:
        """
        Sign as the renter or owner.

        A party who already signed only moves their overlay. Otherwise the
        signature is attached and, at the second valid signature, the
        contract and its order are marked signed.
        """
        now = now or utcnow()

        try:
            contract = self._get_contract(contract_id, for_update=True)
            if actor.id not in (contract.owner_id, contract.renter_id):
                raise AuthorizationError("Only the renter or owner can sign this contract")

            defaults = self.default_position(contract, actor.id)
            x = request.position_x if request.position_x is not None else defaults["position_x"]
            y = request.position_y if request.position_y is not None else defaults["position_y"]

            existing = self._signer_row(contract.id, actor.id)
            if existing is not None:
                self._move(existing, actor, x, y, now)
                self.uow.commit()
                logger.info(f"User {actor.id} moved signature on contract {contract.id}")
                return existing

            if contract.status == ContractStatus.SIGNED:
                raise ConflictError("Contract is already fully signed", {"contract_id": contract.id})

            if request.use_existing_signature:
                signature = self.signatures.usable_signature(actor.id, now)
            else:
                signature = self.signatures.store_signature(actor.id, request.image_bytes(), now)

            row = ContractSignature(
                contract_id=contract.id,
                signature_id=signature.id,
                signer_id=actor.id,
                signed_at=now,
                is_valid=True,
                position_x=x,
                position_y=y,
                verification_note=f"Signed via {signature.image_url}",
            )
            self.db.add(row)
            self.db.flush()

            valid_count = (
                self.db.query(ContractSignature)
                .filter(
                    ContractSignature.contract_id == contract.id,
                    ContractSignature.is_valid.is_(True),
                )
                .count()
            )
            self.audit.log_action(
                CONTRACT_SIGNATURE_TABLE, AuditOperation.CREATE, row.id, actor.id,
                f"Contract {contract.id} signed with signature {signature.id}. Total signatures: {valid_count}",
            )

            order = contract.order
            other = contract.renter_id if actor.id == contract.owner_id else contract.owner_id
            self.uow.after_commit(
                self.notifications.notify,
                other,
                NotificationCategory.CONTRACT,
                "Contract signed",
                f"The other party signed the contract for order #{order.id}",
                {"contract_id": contract.id, "order_id": order.id},
                description=f"notify contract {contract.id} signature",
            )

            if valid_count >= REQUIRED_SIGNATURES and contract.status != ContractStatus.SIGNED:
                contract.status = ContractStatus.SIGNED
                contract.signed_at = now
                order.is_contract_signed = True
                self._queue_signed_emails(contract, order, now)

            self.uow.commit()
            logger.info(f"User {actor.id} signed contract {contract.id} ({valid_count}/{REQUIRED_SIGNATURES})")
            return row

        except IntegrityError:
            # Same party signing twice concurrently
            self.uow.rollback()
            raise ConflictError("You have already signed this contract", {"contract_id": contract_id})
        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error signing contract {contract_id}: {str(e)}")
            raise

    def _queue_signed_emails(self, contract: Contract, order: Order, now: datetime):
        context = {
            "contract_id": contract.id,
            "order_id": order.id,
            "item_title": (order.item_snapshot or {}).get("title", ""),
            "start_at": order.start_at.strftime("%d/%m/%Y %H:%M"),
            "end_at": order.end_at.strftime("%d/%m/%Y %H:%M"),
            "signed_at": now.strftime("%d/%m/%Y %H:%M"),
        }
        for party in (order.owner, order.renter):
            self.uow.after_commit(
                self.email_service.send_contract_signed,
                party.email,
                dict(context, recipient_name=party.full_name),
                description=f"email contract {contract.id} signed to user {party.id}",
            )

    def update_signature_position(
        self, actor: Actor, contract_id: int, position: SignaturePosition, now: Optional[datetime] = None
    ) -> ContractSignature:
        now = now or utcnow()
        contract = self._get_contract(contract_id)
        if actor.id not in (contract.owner_id, contract.renter_id):
            raise AuthorizationError("Only a signer can move their signature")
        row = self._signer_row(contract.id, actor.id)
        if row is None:
            raise NotFoundError("ContractSignature", f"contract {contract_id} user {actor.id}")

        try:
            self._move(row, actor, position.position_x, position.position_y, now)
            self.uow.commit()
            return row
        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error moving signature on contract {contract_id}: {str(e)}")
            raise

    def export_contract_document(self, actor: Actor, contract_id: int) -> bytes:
        """Rendered document with every valid signature overlaid"""
        if self.renderer is None:
            raise APIError(
                "Document rendering is not configured",
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            )
        contract = self.get_contract(actor, contract_id)
        overlays = [
            SignatureOverlay(
                image_url=row.signature.image_url,
                position_x=row.position_x,
                position_y=row.position_y,
            )
            for row in contract.signatures
            if row.is_valid
        ]
        return self.renderer.render(contract.content, overlays)
