"""
Tests for the transaction boundary and its post-commit and rollback hooks.
"""

import pytest

from core.unit_of_work import Hook, HookDispatcher, UnitOfWork
from modules.users.models.user_models import User
from tests.factories import UserFactory


class TestHookDispatcher:
    def test_failures_are_isolated(self):
        calls = []

        def boom():
            raise RuntimeError("hook failed")

        failures = HookDispatcher().dispatch(
            [Hook(calls.append, ("first",)), Hook(boom), Hook(calls.append, ("third",))]
        )

        assert failures == 1
        assert calls == ["first", "third"]

    def test_hook_name(self):
        assert Hook(print, description="say hello").name == "say hello"
        assert Hook(print).name == "print"


class TestUnitOfWork:
    def test_after_commit_runs_only_on_commit(self, uow_factory, db):
        user = UserFactory()
        calls = []
        uow = uow_factory()
        uow.after_commit(calls.append, "committed")
        uow.on_rollback(calls.append, "rolled back")

        uow.session.query(User).filter(User.id == user.id).update({User.full_name: "Renamed"})
        uow.commit()

        assert calls == ["committed"]
        db.refresh(user)
        assert user.full_name == "Renamed"

    def test_rollback_discards_writes_and_commit_hooks(self, uow_factory, db):
        user = UserFactory(full_name="Original")
        calls = []
        uow = uow_factory()
        uow.after_commit(calls.append, "committed")
        uow.on_rollback(calls.append, "rolled back")

        uow.session.query(User).filter(User.id == user.id).update({User.full_name: "Changed"})
        uow.rollback()
        uow.commit()

        assert calls == ["rolled back"]
        db.refresh(user)
        assert user.full_name == "Original"

    def test_failing_hook_does_not_undo_commit(self, uow_factory, db):
        user = UserFactory()
        uow = uow_factory()

        def unreachable():
            raise ConnectionError("push service down")

        uow.after_commit(unreachable)
        uow.session.query(User).filter(User.id == user.id).update({User.points: 5})
        uow.commit()

        db.refresh(user)
        assert user.points == 5

    def test_context_manager_rolls_back_on_error(self, session_factory, db):
        user = UserFactory(full_name="Original")

        with pytest.raises(ValueError):
            with UnitOfWork(session_factory) as uow:
                uow.session.query(User).filter(User.id == user.id).update({User.full_name: "Changed"})
                raise ValueError("abort")

        db.refresh(user)
        assert user.full_name == "Original"

    def test_spawn_is_independent(self, uow_factory, db):
        user = UserFactory()
        parent = uow_factory()

        with parent.spawn() as child:
            assert child.session is not parent.session
            child.session.query(User).filter(User.id == user.id).update({User.points: 9})
            child.commit()
        parent.rollback()

        db.refresh(user)
        assert user.points == 9
