# tests/conftest.py
import pytest
from fastapi.testclient import TestClient

from auth_service import db as database
from auth_service.main import app

TEST_EMAIL = "a@x.com"
TEST_PASSWORD = "secret"
TEST_WALLET = "0x5B38Da6a701c568545dCfcB03FcB875f56beddC4"


@pytest.fixture
def session_factory(tmp_path):
    """
    Points the service at a temporary SQLite database and creates the tables.
    Each test gets a fresh database.
    """
    database.configure_engine(f"sqlite:///{tmp_path / 'auth_test.db'}")
    database.init_db()
    yield database.SessionLocal
    database.engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory, monkeypatch):
    monkeypatch.delenv("WALLET_FUNDING_ENABLED", raising=False)
    return TestClient(app)


@pytest.fixture
def registered_user(client):
    """Registers the default test user through the API and returns its JSON."""
    payload = {"email": TEST_EMAIL, "password": TEST_PASSWORD, "full_name": "A", "wallet_address": None}
    r = client.post("/register", json=payload)
    assert r.status_code == 201, r.text
    return r.json()


@pytest.fixture
def auth_headers(client, registered_user):
    r = client.post("/login", json={"email": TEST_EMAIL, "password": TEST_PASSWORD})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['data']['access_token']}"}
