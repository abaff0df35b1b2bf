import os
import tempfile

# Must be set before db.py / app.py are imported
_TMP = tempfile.mkdtemp(prefix="parley-tests-")
os.environ["PARLEY_DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'test.db')}"
os.environ["PARLEY_STORAGE_DIR"] = os.path.join(_TMP, "uploads")
os.environ["PARLEY_SECRET_KEY"] = "test-secret"
os.environ["PARLEY_PRESENCE_SWEEP_INTERVAL"] = "0"
os.environ["PARLEY_LOG_LEVEL"] = "WARNING"

import pytest

from db import reset_db
from services import identity_service as identity
from services.fanout import hub


@pytest.fixture(autouse=True)
def fresh_db():
    reset_db()
    hub.clear()
    yield
    hub.clear()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from app import app
    return TestClient(app)


@pytest.fixture
def alice():
    return identity.register("alice@example.com", "alice", "secret-a")


@pytest.fixture
def bob():
    return identity.register("bob@example.com", "bob", "secret-b")


@pytest.fixture
def carol():
    return identity.register("carol@example.com", "carol", "secret-c")


def login(client, email, password):
    resp = client.post("/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["token"]


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


class RecordingSubscriber:
    """Stands in for a socket connection: keeps every delivered event."""

    def __init__(self, account_id, session_id="test-session"):
        self.account_id = account_id
        self.session_id = session_id
        self.topics = set()
        self.events = []
        self.closed = False

    def deliver(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if e["type"] == event_type]


@pytest.fixture
def listen():
    def _listen(account_id, *topics):
        sub = RecordingSubscriber(account_id)
        hub.register(sub)
        for topic in topics:
            hub.subscribe(sub, topic)
        return sub
    return _listen
