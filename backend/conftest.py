"""
Pytest configuration file for backend testing.

Every test gets its own SQLite database file, so separate sessions (and
separate units of work) see each other's commits the way concurrent
requests would.
"""
import sys
from pathlib import Path

# Add the backend directory to Python path so imports work correctly
backend_dir = Path(__file__).parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

import pytest
from sqlalchemy.orm import sessionmaker

from core.crypto import SymmetricCipher
from core.database import Base, build_engine
from core.document_renderer import DocumentRenderer
from core.email_service import EmailSender, EmailService
from core.file_service import AssetStore
from core.notification_adapter import NotificationAdapter, NotificationService
from core.unit_of_work import UnitOfWork

# Import all models to register them with SQLAlchemy
from core import audit_logger  # noqa: F401
from modules.users.models import user_models  # noqa: F401
from modules.items.models import item_models  # noqa: F401
from modules.settings.models import settings_models  # noqa: F401
from modules.orders.models import order_models  # noqa: F401
from modules.discounts.models import discount_models  # noqa: F401
from modules.loyalty.models import loyalty_models  # noqa: F401
from modules.contracts.models import contract_models  # noqa: F401

from tests.factories.base import bind_session


class RecordingNotificationAdapter(NotificationAdapter):
    """Keeps every notification in memory"""

    def __init__(self):
        self.sent = []

    def notify(self, user_id, message):
        self.sent.append((user_id, message))
        return True

    def get_adapter_name(self):
        return "recording"

    def titles_for(self, user_id):
        return [m.title for uid, m in self.sent if uid == user_id]


class RecordingEmailSender(EmailSender):
    def __init__(self):
        self.sent = []

    def send(self, to, subject, html):
        self.sent.append({"to": to, "subject": subject, "html": html})
        return True


class InMemoryAssetStore(AssetStore):
    def __init__(self):
        self.assets = {}
        self.destroyed = []
        self._counter = 0

    def upload(self, data, folder, content_type="image/png"):
        self._counter += 1
        url = f"memory://{folder}/{self._counter}.png"
        self.assets[url] = data
        return url

    def destroy(self, url):
        self.destroyed.append(url)
        return self.assets.pop(url, None) is not None


class RecordingRenderer(DocumentRenderer):
    def __init__(self):
        self.calls = []

    def render(self, text, overlays):
        self.calls.append((text, list(overlays)))
        return b"%PDF-1.4\n" + text.encode("utf-8")


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'rentalhub_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def db(session_factory):
    """Session used by the factories and for assertions; bound for every test"""
    session = session_factory()
    bind_session(session)
    try:
        yield session
    finally:
        bind_session(None)
        session.close()


@pytest.fixture
def uow_factory(session_factory):
    """Builds independent units of work, all closed at teardown"""
    created = []

    def _make():
        uow = UnitOfWork(session_factory)
        created.append(uow)
        return uow

    yield _make
    for uow in created:
        uow.close()


@pytest.fixture
def uow(uow_factory):
    return uow_factory()


@pytest.fixture
def notification_adapter():
    return RecordingNotificationAdapter()


@pytest.fixture
def notifications(notification_adapter):
    return NotificationService(notification_adapter)


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def email_service(email_sender):
    return EmailService(email_sender)


@pytest.fixture
def asset_store():
    return InMemoryAssetStore()


@pytest.fixture
def renderer():
    return RecordingRenderer()


@pytest.fixture
def cipher():
    return SymmetricCipher(bytes(range(32)))
