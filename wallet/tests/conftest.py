import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

from wallet.api import create_app
from wallet.auth import create_token
from wallet.config import Settings
from wallet.db import create_db_engine, create_session_factory, init_db
from wallet.models import CreatePurchaseRequest, UserUpsert
from wallet.service import WalletService
from wallet.uploads import PhotoStore


USER_ID = "user-0001-aaaa"
OTHER_USER_ID = "user-0002-bbbb"
ADMIN_ID = "admin-0001"


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def notify(self, user, message, subject="Wallet update"):
        if self.fail:
            raise RuntimeError("SMS gateway unavailable")
        self.sent.append((user.id, subject, message))


class RecordingMirror:
    def __init__(self, fail: bool = False):
        self.rows = []
        self.fail = fail

    def append_purchase_request(self, request, user):
        if self.fail:
            raise RuntimeError("Spreadsheet quota exceeded")
        self.rows.append((request.id, user.id))
        return f"row-{request.id}"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite://",
        jwt_secret="test-secret",
        upload_dir=str(tmp_path / "uploads"),
        sheets_webhook_secret="hook-secret",
        cors_origins=["http://testserver"],
        admin_user_ids=[],
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def mirror():
    return RecordingMirror()


def build_service(settings, database_url="sqlite://", notifier=None, mirror=None):
    engine = create_db_engine(database_url)
    init_db(engine)
    return WalletService(
        session_factory=create_session_factory(engine),
        notifier=notifier or RecordingNotifier(),
        mirror=mirror or RecordingMirror(),
        photos=PhotoStore(settings.upload_dir, settings.max_photo_bytes),
        settings=settings,
    )


@pytest.fixture
def service(settings, notifier, mirror):
    svc = build_service(settings, notifier=notifier, mirror=mirror)
    svc.upsert_user(UserUpsert(id=USER_ID, email="player@example.com", first_name="Pat", phone="+15550001111"))
    svc.upsert_user(UserUpsert(id=OTHER_USER_ID, email="other@example.com"))
    svc.upsert_user(UserUpsert(id=ADMIN_ID, email="admin@example.com", is_admin=True))
    return svc


def fund(service, user_id, credits):
    """Give a user credits through the normal purchase → confirm path."""
    request = service.create_purchase_request(
        user_id,
        CreatePurchaseRequest(credits_requested=credits, usd_amount=Decimal(credits) / 100),
    )
    service.confirm_payment(request.id)
    return request


@pytest.fixture
def app(service, settings):
    return create_app(service=service, settings=settings)


@pytest.fixture
def user_client(app, settings):
    client = TestClient(app)
    client.headers.update({"Authorization": f"Bearer {create_token(settings, USER_ID)}"})
    return client


@pytest.fixture
def other_client(app, settings):
    client = TestClient(app)
    client.headers.update({"Authorization": f"Bearer {create_token(settings, OTHER_USER_ID)}"})
    return client


@pytest.fixture
def admin_client(app, settings):
    client = TestClient(app)
    client.headers.update({"Authorization": f"Bearer {create_token(settings, ADMIN_ID, is_admin=True)}"})
    return client
