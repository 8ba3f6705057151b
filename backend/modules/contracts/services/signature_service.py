# backend/modules/contracts/services/signature_service.py

from typing import Optional, Tuple
from datetime import datetime, timedelta
import logging

from core.audit_logger import AuditLogger, AuditOperation
from core.auth_context import Actor
from core.clock import utcnow
from core.config import settings
from core.crypto import SymmetricCipher, get_cipher
from core.email_service import EmailService
from core.error_handling import (
    AuthorizationError,
    DomainRuleError,
    GoneError,
    NotFoundError,
)
from core.file_service import AssetStore, S3AssetStore
from core.notification_adapter import NotificationCategory, NotificationService
from core.unit_of_work import UnitOfWork
from modules.users.models.user_models import User
from ..models.contract_models import UserSignature, ContractSignature
from ..schemas.contract_schemas import SignatureCreate, UserSignatureResponse

logger = logging.getLogger(__name__)

SIGNATURE_FOLDER = "signatures"
SIGNATURE_IN_USE = "SIGNATURE_IN_USE"
SIGNATURE_TABLE = "user_signatures"


class SignatureService:
    """
    Encrypted signature images.

    A signature referenced by a valid contract signature is frozen: replacing
    it deactivates the old row and creates a new one, and deleting it is
    refused.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        asset_store: Optional[AssetStore] = None,
        cipher: Optional[SymmetricCipher] = None,
        notifications: Optional[NotificationService] = None,
        email_service: Optional[EmailService] = None,
    ):
        self.uow = uow
        self.db = uow.session
        self._asset_store = asset_store
        self.cipher = cipher or get_cipher()
        self.notifications = notifications or NotificationService()
        self.email_service = email_service or EmailService()
        self.audit = AuditLogger(self.db)

    @property
    def asset_store(self) -> AssetStore:
        if self._asset_store is None:
            self._asset_store = S3AssetStore()
        return self._asset_store

    def _active_signature(self, user_id: int) -> Optional[UserSignature]:
        return (
            self.db.query(UserSignature)
            .filter(UserSignature.user_id == user_id, UserSignature.is_active.is_(True))
            .order_by(UserSignature.id.desc())
            .first()
        )

    def is_in_use(self, signature_id: int) -> bool:
        return (
            self.db.query(ContractSignature.id)
            .filter(
                ContractSignature.signature_id == signature_id,
                ContractSignature.is_valid.is_(True),
            )
            .first()
            is not None
        )

    @staticmethod
    def is_expired(signature: UserSignature, now: datetime) -> bool:
        return signature.valid_to is not None and now > signature.valid_to

    def usable_signature(self, user_id: int, now: datetime) -> UserSignature:
        """The active, unexpired signature to sign with"""
        signature = self._active_signature(user_id)
        if not signature:
            raise NotFoundError("UserSignature", f"user {user_id}")
        if self.is_expired(signature, now):
            raise GoneError(
                "Your signature has expired, please create a new one",
                {"signature_id": signature.id, "valid_to": signature.valid_to.isoformat()},
            )
        return signature

    def store_signature(self, user_id: int, image: bytes, now: Optional[datetime] = None) -> UserSignature:
        """
        Encrypt and upload a new signature image for ``user_id`` (caller commits).

        An unused active signature is overwritten in place and its old asset
        is released after commit. A used one is deactivated, untouched
        otherwise, and a new row is created.
        """
        now = now or utcnow()
        iv, ciphertext = self.cipher.encrypt(image)

        # An upload failure aborts the whole operation
        image_url = self.asset_store.upload(image, SIGNATURE_FOLDER)
        self.uow.on_rollback(
            self.asset_store.destroy, image_url, description=f"release unused asset {image_url}"
        )

        valid_to = now + timedelta(days=settings.signature_validity_days)
        existing = self._active_signature(user_id)

        if existing is not None and not self.is_in_use(existing.id):
            old_url = existing.image_url
            existing.signature_data = ciphertext
            existing.iv = iv
            existing.image_url = image_url
            existing.valid_from = now
            existing.valid_to = valid_to
            self.db.flush()
            self.uow.after_commit(
                self.asset_store.destroy, old_url, description=f"release replaced asset {old_url}"
            )
            self.audit.log_action(
                SIGNATURE_TABLE, AuditOperation.UPDATE, existing.id, user_id,
                "Signature image replaced and re-encrypted",
            )
            logger.info(f"Replaced unused signature {existing.id} for user {user_id}")
            return existing

        if existing is not None:
            existing.is_active = False
            self.audit.log_action(
                SIGNATURE_TABLE, AuditOperation.UPDATE, existing.id, user_id,
                "Signature retired; it is referenced by a signed contract",
            )

        signature = UserSignature(
            user_id=user_id,
            signature_data=ciphertext,
            iv=iv,
            image_url=image_url,
            is_active=True,
            valid_from=now,
            valid_to=valid_to,
        )
        self.db.add(signature)
        self.db.flush()
        self.audit.log_action(
            SIGNATURE_TABLE, AuditOperation.CREATE, signature.id, user_id,
            "Signature created and encrypted",
        )
        logger.info(f"Created signature {signature.id} for user {user_id}")
        return signature

    def _to_response(self, signature: UserSignature) -> UserSignatureResponse:
        response = UserSignatureResponse.model_validate(signature)
        response.is_used_in_contract = self.is_in_use(signature.id)
        return response

    def create_signature(
        self, actor: Actor, data: SignatureCreate, now: Optional[datetime] = None
    ) -> UserSignatureResponse:
        try:
            signature = self.store_signature(actor.id, data.image_bytes(), now)
            self.uow.commit()
            return self._to_response(signature)
        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error creating signature for user {actor.id}: {str(e)}")
            raise

    def get_active_signature(self, actor: Actor, now: Optional[datetime] = None) -> UserSignatureResponse:
        """
        The actor's current signature. An expired one is deactivated on read,
        the user is told, and GoneError is raised.
        """
        now = now or utcnow()
        signature = self._active_signature(actor.id)
        if not signature:
            raise NotFoundError("UserSignature", f"user {actor.id}")
        if not self.is_expired(signature, now):
            return self._to_response(signature)

        valid_to = signature.valid_to
        try:
            signature.is_active = False
            self.audit.log_action(
                SIGNATURE_TABLE, AuditOperation.UPDATE, signature.id, actor.id, "Signature expired"
            )
            self.uow.after_commit(
                self.notifications.notify,
                actor.id,
                NotificationCategory.SIGNATURE,
                "Signature expired",
                "Your saved signature has expired. Please create a new one.",
                {"signature_id": signature.id},
                description=f"notify expired signature {signature.id}",
            )
            user = self.db.query(User).filter(User.id == actor.id).first()
            if user is not None:
                self.uow.after_commit(
                    self.email_service.send_signature_expired,
                    user.email,
                    {"recipient_name": user.full_name, "valid_to": valid_to.strftime("%d/%m/%Y")},
                    description=f"email expired signature {signature.id}",
                )
            self.uow.commit()
            logger.info(f"Signature {signature.id} of user {actor.id} expired on {valid_to}")
        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error expiring signature for user {actor.id}: {str(e)}")
            raise

        raise GoneError(
            "Your signature has expired, please create a new one",
            {"valid_to": valid_to.isoformat()},
        )

    def delete_signature(self, actor: Actor) -> None:
        signature = self._active_signature(actor.id)
        if not signature:
            raise NotFoundError("UserSignature", f"user {actor.id}")
        if self.is_in_use(signature.id):
            raise DomainRuleError(
                SIGNATURE_IN_USE,
                "This signature is used in a contract; create a new one instead",
                status_code=403,
                details={"signature_id": signature.id},
            )

        signature_id, image_url = signature.id, signature.image_url
        try:
            self.db.delete(signature)
            self.audit.log_action(
                SIGNATURE_TABLE, AuditOperation.DELETE, signature_id, actor.id,
                "Signature deleted and image released",
            )
            self.uow.after_commit(
                self.asset_store.destroy, image_url, description=f"release deleted asset {image_url}"
            )
            self.uow.commit()
            logger.info(f"Deleted signature {signature_id} of user {actor.id}")
        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error deleting signature {signature_id}: {str(e)}")
            raise

    def decrypt_signature(self, actor: Actor, signature_id: int) -> Tuple[bytes, str]:
        """Raw image bytes and the asset URL of one of the actor's signatures"""
        signature = self.db.query(UserSignature).filter(UserSignature.id == signature_id).first()
        if not signature:
            raise NotFoundError("UserSignature", signature_id)
        if signature.user_id != actor.id and not actor.is_admin:
            raise AuthorizationError("You cannot read this signature")
        return self.cipher.decrypt(signature.signature_data, signature.iv), signature.image_url
