# backend/modules/users/services/identity_service.py

from typing import Optional, Dict, Any
import logging

from core.auth_context import Actor
from core.crypto import SymmetricCipher, get_cipher
from core.email_service import EmailService
from core.error_handling import (
    APIValidationError,
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
)
from core.unit_of_work import UnitOfWork
from ..models.user_models import User, UserStatus, USER_STATUS_TRANSITIONS

logger = logging.getLogger(__name__)


class IdentityService:
    """
    Identity-document storage and account status.

    The document is kept encrypted on the user row and only decrypted when a
    caller asks for it; nothing here caches the plaintext.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        cipher: Optional[SymmetricCipher] = None,
        email_service: Optional[EmailService] = None,
    ):
        self.uow = uow
        self.db = uow.session
        self.cipher = cipher or get_cipher()
        self.email_service = email_service or EmailService()

    def _get_user(self, user_id: int) -> User:
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundError("User", user_id)
        return user

    def store_id_card(self, actor: Actor, user_id: int, id_number: str, full_name: str) -> User:
        if actor.id != user_id and not actor.is_admin:
            raise AuthorizationError("You cannot update another user's identity document")
        id_number = (id_number or "").strip()
        if not id_number:
            raise APIValidationError("Identity number is required")

        user = self._get_user(user_id)
        try:
            iv, ciphertext = self.cipher.encrypt_object(
                {"id_number": id_number, "full_name": (full_name or "").strip()}
            )
            user.id_card_encrypted = ciphertext
            user.id_card_iv = iv
            self.uow.commit()
            logger.info(f"Stored identity document for user {user_id}")
            return user
        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error storing identity document for user {user_id}: {str(e)}")
            raise

    def read_id_card(self, user_id: int) -> Optional[Dict[str, Any]]:
        """Decrypted ``{id_number, full_name}``, or None when not on file or unreadable"""
        user = self._get_user(user_id)
        if not user.id_card_encrypted or not user.id_card_iv:
            return None
        try:
            return self.cipher.decrypt_object(user.id_card_encrypted, user.id_card_iv)
        except ValueError:
            logger.warning(f"Identity document for user {user_id} could not be decrypted")
            return None

    def change_status(
        self, actor: Actor, user_id: int, new_status: UserStatus, reason: Optional[str] = None
    ) -> User:
        if not actor.is_admin:
            raise AuthorizationError("Only admins can change account status")

        user = self._get_user(user_id)
        if new_status not in USER_STATUS_TRANSITIONS[user.status]:
            raise InvalidStateError(
                f"Cannot change account from {user.status.value} to {new_status.value}",
                current_status=user.status.value,
            )

        try:
            user.status = new_status
            if new_status == UserStatus.BANNED:
                self.uow.after_commit(
                    self.email_service.send_account_banned,
                    user.email,
                    {"recipient_name": user.full_name, "reason": reason},
                    description=f"ban email user {user.id}",
                )
            self.uow.commit()
            logger.info(f"User {user_id} status changed to {new_status.value} by {actor.id}")
            return user
        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error changing status of user {user_id}: {str(e)}")
            raise
