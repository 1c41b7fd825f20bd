import os
import tempfile

import pytest

# Must be set before the application modules are imported
_db_dir = tempfile.mkdtemp(prefix="medbook-tests-")
os.environ["TESTING"] = "1"
os.environ["TEST_DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"

from fastapi.testclient import TestClient

from medbook.main import app
from medbook.core.database import Base, SessionLocal, engine, get_redis
from medbook.api.deps import get_notifier, get_payment_gateway, get_video_client

from .fakes import FakePaymentGateway, FakeRedis, FakeVideoClient, RecordingNotifier

@pytest.fixture(scope="function")
def test_db():
    # Create tables
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)

@pytest.fixture
def db(test_db):
    session = SessionLocal()
    yield session
    session.close()

@pytest.fixture
def payments():
    return FakePaymentGateway()

@pytest.fixture
def notifier():
    return RecordingNotifier()

@pytest.fixture
def video():
    return FakeVideoClient()

@pytest.fixture
def fake_redis():
    return FakeRedis()

@pytest.fixture
def client(test_db, payments, notifier, video, fake_redis):
    app.dependency_overrides[get_payment_gateway] = lambda: payments
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_video_client] = lambda: video
    app.dependency_overrides[get_redis] = lambda: fake_redis

    with TestClient(app, base_url="http://testserver") as test_client:
        yield test_client

    app.dependency_overrides.clear()
