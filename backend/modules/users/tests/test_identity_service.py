# backend/modules/users/tests/test_identity_service.py

import pytest

from core.auth_context import Actor
from core.crypto import SymmetricCipher
from core.error_handling import APIValidationError, AuthorizationError, InvalidStateError
from modules.users.models.user_models import UserStatus
from modules.users.services.identity_service import IdentityService
from tests.factories import AdminFactory, UserFactory


def actor_for(user):
    return Actor(id=user.id, role=user.role)


@pytest.fixture
def make_service(uow_factory, cipher, email_service):
    def _make(with_cipher=None):
        return IdentityService(uow_factory(), with_cipher or cipher, email_service)
    return _make


class TestIdCard:
    def test_round_trip(self, make_service, db):
        user = UserFactory()
        make_service().store_id_card(actor_for(user), user.id, " 079123456789 ", "Le Van C")

        db.refresh(user)
        assert b"079123456789" not in user.id_card_encrypted
        assert make_service().read_id_card(user.id) == {
            "id_number": "079123456789",
            "full_name": "Le Van C",
        }

    def test_nothing_on_file(self, make_service):
        assert make_service().read_id_card(UserFactory().id) is None

    def test_admin_may_store_for_others(self, make_service):
        user = UserFactory()
        make_service().store_id_card(actor_for(AdminFactory()), user.id, "123", "Someone")
        assert make_service().read_id_card(user.id)["id_number"] == "123"

    def test_others_may_not(self, make_service):
        user = UserFactory()
        with pytest.raises(AuthorizationError):
            make_service().store_id_card(actor_for(UserFactory()), user.id, "123", "Someone")

    def test_number_required(self, make_service):
        user = UserFactory()
        with pytest.raises(APIValidationError):
            make_service().store_id_card(actor_for(user), user.id, "   ", "Someone")

    def test_wrong_key_reads_as_missing(self, make_service):
        user = UserFactory()
        make_service().store_id_card(actor_for(user), user.id, "079123456789", "Le Van C")

        other_key = SymmetricCipher(bytes(range(1, 33)))
        assert make_service(other_key).read_id_card(user.id) is None


class TestAccountStatus:
    def test_ban_sends_email(self, make_service, email_sender, db):
        user = UserFactory()
        make_service().change_status(actor_for(AdminFactory()), user.id, UserStatus.BANNED, "Fraudulent listings")

        db.refresh(user)
        assert user.status == UserStatus.BANNED
        assert [mail["to"] for mail in email_sender.sent] == [user.email]
        assert "Fraudulent listings" in email_sender.sent[0]["html"]

    def test_reactivation_sends_nothing(self, make_service, email_sender):
        user = UserFactory(status=UserStatus.BANNED)
        make_service().change_status(actor_for(AdminFactory()), user.id, UserStatus.ACTIVE)
        assert email_sender.sent == []

    def test_deleted_is_final(self, make_service):
        user = UserFactory(status=UserStatus.DELETED)
        with pytest.raises(InvalidStateError):
            make_service().change_status(actor_for(AdminFactory()), user.id, UserStatus.ACTIVE)

    def test_admin_only(self, make_service):
        user = UserFactory()
        with pytest.raises(AuthorizationError):
            make_service().change_status(actor_for(UserFactory()), user.id, UserStatus.BANNED)
