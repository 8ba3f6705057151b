# backend/tests/factories/base.py

from factory.alchemy import SQLAlchemyModelFactory

_session = None


def bind_session(session):
    """Point every factory at the given session (None to unbind)."""
    global _session
    _session = session


class BaseFactory(SQLAlchemyModelFactory):
    """Base factory with session management for all test factories."""

    class Meta:
        abstract = True
        sqlalchemy_session_persistence = "commit"

    @classmethod
    def _create(cls, model_class, *args, **kwargs):
        """Override to use the test database session."""
        if _session is None:
            raise RuntimeError("No test session bound; use the db fixture")
        cls._meta.sqlalchemy_session = _session
        return super()._create(model_class, *args, **kwargs)
