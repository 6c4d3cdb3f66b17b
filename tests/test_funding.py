# tests/test_funding.py
import asyncio

import httpx
import pytest
from sqlalchemy.exc import SQLAlchemyError

from auth_service import main
from auth_service.models import User
from auth_service.wallet import (
    FAILURE_MESSAGE,
    FundingBroadcastError,
    FundingConfigurationError,
    FundingNetworkError,
    FundingRevertedError,
)

from conftest import TEST_PASSWORD, TEST_WALLET

TX_HASH = "0x" + "ab" * 32


@pytest.fixture
def fake_allocate(monkeypatch):
    """Replaces the on-chain transfer; set `.error` to make it fail, `.delay` to slow it down."""

    class FakeAllocate:
        def __init__(self):
            self.calls = []
            self.error = None
            self.delay = 0

        async def __call__(self, wallet_address, amount):
            self.calls.append((wallet_address, float(amount)))
            await asyncio.sleep(self.delay)
            if self.error:
                raise self.error
            return TX_HASH

    fake = FakeAllocate()
    monkeypatch.setattr(main, "allocate_tokens_to_wallet", fake)
    return fake


def register(client, email="f@x.com", wallet=TEST_WALLET):
    payload = {"email": email, "password": TEST_PASSWORD, "full_name": "F", "wallet_address": wallet}
    return client.post("/register", json=payload)


def login_headers(client, email="f@x.com"):
    r = client.post("/login", json={"email": email, "password": TEST_PASSWORD})
    return {"Authorization": f"Bearer {r.json()['data']['access_token']}"}


def test_registration_does_not_fund_when_disabled(client, fake_allocate):
    r = register(client)

    assert r.status_code == 201
    assert fake_allocate.calls == []
    assert client.get(f"/users/{r.json()['id']}").json()["funding_status"] is None


def test_registration_funds_wallet_in_background(client, fake_allocate, monkeypatch):
    monkeypatch.setenv("WALLET_FUNDING_ENABLED", "true")

    r = register(client)

    assert r.status_code == 201
    assert r.json()["funding_status"] == "pending"
    assert fake_allocate.calls == [(TEST_WALLET, 1000.0)]
    assert client.get(f"/users/{r.json()['id']}").json()["funding_status"] == "funded"


def test_registration_without_wallet_is_not_funded(client, fake_allocate, monkeypatch):
    monkeypatch.setenv("WALLET_FUNDING_ENABLED", "true")

    r = register(client, wallet=None)

    assert r.status_code == 201
    assert r.json()["funding_status"] is None
    assert fake_allocate.calls == []


def test_failed_funding_keeps_the_user(client, fake_allocate, monkeypatch):
    monkeypatch.setenv("WALLET_FUNDING_ENABLED", "true")
    fake_allocate.error = FundingNetworkError("connection refused")

    r = register(client)

    assert r.status_code == 201
    user = client.get(f"/users/{r.json()['id']}").json()
    assert user["funding_status"] == "failed"
    assert user["token_balance"] == 1000


def test_fund_wallet_endpoint(client, fake_allocate):
    user_id = register(client).json()["id"]
    headers = login_headers(client)

    r = client.post("/me/fund-wallet", headers=headers)
    assert r.status_code == 200
    assert r.json() == {
        "user_id": user_id,
        "wallet_address": TEST_WALLET,
        "amount": 1000.0,
        "funding_status": "funded",
        "tx_hash": TX_HASH,
    }

    r = client.post("/me/fund-wallet", headers=headers)
    assert r.status_code == 409
    assert len(fake_allocate.calls) == 1


def test_fund_wallet_requires_wallet(client, fake_allocate):
    register(client, wallet=None)

    r = client.post("/me/fund-wallet", headers=login_headers(client))

    assert r.status_code == 400
    assert fake_allocate.calls == []


def test_fund_wallet_requires_token(client):
    assert client.post("/me/fund-wallet").status_code == 401


@pytest.mark.parametrize("error,status_code,detail", [
    (FundingConfigurationError("Invalid private key format"), 503,
     f"{FAILURE_MESSAGE}: Invalid private key format"),
    (FundingNetworkError("connection refused"), 502, FAILURE_MESSAGE),
    (FundingRevertedError("execution reverted"), 400, FAILURE_MESSAGE),
])
def test_fund_wallet_error_mapping(client, fake_allocate, error, status_code, detail):
    register(client)
    headers = login_headers(client)
    fake_allocate.error = error

    r = client.post("/me/fund-wallet", headers=headers)

    assert r.status_code == status_code
    assert r.json()["detail"] == detail
    assert client.get("/me", headers=headers).json()["funding_status"] == "failed"


def set_funding_status(db_session, user_id, funding_status):
    db_session.query(User).filter(User.id == user_id).update({User.funding_status: funding_status})
    db_session.commit()


def test_concurrent_fund_wallet_sends_one_transfer(client, fake_allocate):
    register(client)
    headers = login_headers(client)
    fake_allocate.delay = 0.3

    async def fund_twice():
        transport = httpx.ASGITransport(app=main.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            return await asyncio.gather(
                ac.post("/me/fund-wallet", headers=headers),
                ac.post("/me/fund-wallet", headers=headers),
            )

    responses = asyncio.run(fund_twice())

    assert sorted(r.status_code for r in responses) == [200, 409]
    assert len(fake_allocate.calls) == 1


def test_fund_wallet_rejects_funding_in_progress(client, db_session, fake_allocate):
    user_id = register(client).json()["id"]
    headers = login_headers(client)
    set_funding_status(db_session, user_id, "in_progress")

    r = client.post("/me/fund-wallet", headers=headers)

    assert r.status_code == 409
    assert fake_allocate.calls == []


def test_background_funding_skips_claimed_user(client, db_session, fake_allocate):
    user_id = register(client).json()["id"]
    set_funding_status(db_session, user_id, "in_progress")

    asyncio.run(main.fund_new_user(user_id))

    assert fake_allocate.calls == []


def test_unconfirmed_broadcast_is_not_retried(client, db_session, fake_allocate):
    user_id = register(client).json()["id"]
    headers = login_headers(client)
    fake_allocate.error = FundingBroadcastError("node did not answer in time", TX_HASH)

    r = client.post("/me/fund-wallet", headers=headers)
    assert r.status_code == 502
    assert r.json()["detail"] == FAILURE_MESSAGE

    user = db_session.query(User).filter(User.id == user_id).one()
    assert user.funding_status == "unconfirmed"
    assert user.funding_tx_hash == TX_HASH

    r = client.post("/me/fund-wallet", headers=headers)
    assert r.status_code == 409
    assert len(fake_allocate.calls) == 1


def test_background_funding_survives_database_error(client, db_session, monkeypatch):
    user_id = register(client).json()["id"]
    set_funding_status(db_session, user_id, "pending")

    async def failing_fund(db, user):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(main, "fund_user_wallet", failing_fund)

    asyncio.run(main.fund_new_user(user_id))

    db_session.expire_all()
    user = db_session.query(User).filter(User.id == user_id).one()
    # the claim stays in place, the funding is not picked up again
    assert user.funding_status == "in_progress"
