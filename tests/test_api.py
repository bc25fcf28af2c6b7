"""
Integration tests for the Core Wallet API
Tests end-to-end workflows using FastAPI TestClient
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from core_wallet.api import create_app
from core_wallet.config import WalletConfig
from core_wallet.errors import LockTimeoutError
from core_wallet.models import WALLET_TABLES
from core_wallet.passwords import PasswordHasher
from core_wallet.storage import InMemoryStorage
from core_wallet.system import WalletSystem
from core_wallet.tokens import TokenSigner


SECRET = "api-test-secret"


@pytest.fixture
def system():
    """Wallet system backed by in-memory storage"""
    config = WalletConfig(database_url="memory://", jwt_secret=SECRET)
    wallet = WalletSystem(
        config=config,
        storage=InMemoryStorage(WALLET_TABLES),
        hasher=PasswordHasher(rounds=4)
    )
    yield wallet
    wallet.close()


@pytest.fixture
def client(system):
    return TestClient(create_app(system))


def register_and_login(client, username, password="s3cret"):
    r = client.post("/auth/register", json={"username": username, "password": password})
    assert r.status_code == 201
    user_id = r.json()["id"]
    r = client.post("/auth/login", json={"username": username, "password": password})
    assert r.status_code == 200
    return user_id, r.json()


def bearer(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


class TestHealthEndpoints:
    """Test basic health endpoint"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestAuthFlow:
    """Registration, login, refresh and logout over HTTP"""

    def test_register(self, client):
        r = client.post("/auth/register", json={"username": "alice", "password": "s3cret"})

        assert r.status_code == 201
        data = r.json()
        assert data["username"] == "alice"
        assert data["balance"] == "0.00"
        assert "password_hash" not in data

    def test_duplicate_register_is_conflict(self, client):
        client.post("/auth/register", json={"username": "alice", "password": "s3cret"})

        r = client.post("/auth/register", json={"username": "alice", "password": "other"})

        assert r.status_code == 409
        assert r.json()["error"] == "user_exists"

    def test_overlong_password_is_400(self, client):
        r = client.post("/auth/register", json={"username": "alice", "password": "x" * 100})

        assert r.status_code == 400
        assert r.json()["error"] == "invalid_password"

    def test_login_returns_token_pair(self, client):
        _, tokens = register_and_login(client, "alice")

        assert tokens["token_type"] == "bearer"
        assert tokens["access_token"]
        assert tokens["refresh_token"]

    def test_bad_login_is_uniform_401(self, client):
        register_and_login(client, "alice")

        wrong_password = client.post("/auth/login", json={"username": "alice", "password": "nope"})
        unknown_user = client.post("/auth/login", json={"username": "bob", "password": "nope"})

        assert wrong_password.status_code == unknown_user.status_code == 401
        assert wrong_password.json() == unknown_user.json()
        assert wrong_password.headers["WWW-Authenticate"] == "Bearer"

    def test_refresh_rotates_tokens(self, client):
        _, tokens = register_and_login(client, "alice")

        r = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert r.status_code == 200
        assert r.json()["refresh_token"] != tokens["refresh_token"]

        reused = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert reused.status_code == 401

    def test_logout(self, client):
        _, tokens = register_and_login(client, "alice")

        r = client.post("/auth/logout", json={"refresh_token": tokens["refresh_token"]})
        assert r.status_code == 204

        r = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert r.status_code == 401


class TestGate:
    """Protected routes require a valid access token"""

    def test_missing_token(self, client):
        r = client.get("/user/me")
        assert r.status_code == 401

    def test_malformed_token(self, client):
        r = client.get("/user/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert r.status_code == 401
        assert r.json()["error"] == "invalid_token"

    def test_expired_token(self, client):
        expired = TokenSigner(SECRET, expires_in=timedelta(seconds=-1)).issue_access_token("u1", "alice")

        r = client.get("/user/me", headers={"Authorization": f"Bearer {expired}"})

        assert r.status_code == 401
        assert r.json()["error"] == "token_expired"

    def test_me(self, client):
        user_id, tokens = register_and_login(client, "alice")

        r = client.get("/user/me", headers=bearer(tokens))

        assert r.status_code == 200
        assert r.json()["id"] == user_id

    def test_create_user_requires_auth(self, client):
        r = client.post("/user", json={"username": "carol", "password": "s3cret"})
        assert r.status_code == 401

        _, tokens = register_and_login(client, "alice")
        r = client.post("/user", json={"username": "carol", "password": "s3cret"},
                        headers=bearer(tokens))
        assert r.status_code == 201
        assert r.json()["username"] == "carol"


class TestBalanceFlow:
    """Deposits and transfers over HTTP"""

    def test_deposit_then_transfer(self, client, system):
        alice_id, alice = register_and_login(client, "alice")
        bob_id, _ = register_and_login(client, "bob")

        r = client.post("/user/deposit", json={"amount": "200"}, headers=bearer(alice))
        assert r.status_code == 204

        r = client.post("/user/transfer", json={"receiver_id": bob_id, "amount": 100},
                        headers=bearer(alice))
        assert r.status_code == 200
        data = r.json()
        assert data["amount"] == "100.00"
        assert data["sender_id"] == alice_id

        assert client.get("/user/me", headers=bearer(alice)).json()["balance"] == "100.00"
        assert str(system.ledger.get_balance(bob_id)) == "100.00"

    def test_insufficient_funds_is_400(self, client):
        _, alice = register_and_login(client, "alice")
        bob_id, _ = register_and_login(client, "bob")
        client.post("/user/deposit", json={"amount": 100}, headers=bearer(alice))

        r = client.post("/user/transfer", json={"receiver_id": bob_id, "amount": "150"},
                        headers=bearer(alice))

        assert r.status_code == 400
        assert r.json()["error"] == "insufficient_funds"
        assert client.get("/user/me", headers=bearer(alice)).json()["balance"] == "100.00"

    def test_unknown_receiver_is_400(self, client):
        _, alice = register_and_login(client, "alice")
        client.post("/user/deposit", json={"amount": 10}, headers=bearer(alice))

        r = client.post("/user/transfer", json={"receiver_id": "nobody", "amount": 1},
                        headers=bearer(alice))

        assert r.status_code == 400
        assert r.json()["error"] == "receiver_not_found"

    def test_float_amount_rejected(self, client):
        _, alice = register_and_login(client, "alice")

        r = client.post("/user/deposit", json={"amount": 10.5}, headers=bearer(alice))

        assert r.status_code == 422

    @pytest.mark.parametrize("amount", ["0", "-5", "1.001", "abc"])
    def test_invalid_amount_is_400(self, client, amount):
        _, alice = register_and_login(client, "alice")

        r = client.post("/user/deposit", json={"amount": amount}, headers=bearer(alice))

        assert r.status_code == 400
        assert r.json()["error"] == "invalid_amount"

    def test_transfer_requires_auth(self, client):
        r = client.post("/user/transfer", json={"receiver_id": "x", "amount": 1})
        assert r.status_code == 401

    def test_lock_timeout_is_503_with_retry_after(self, client, system, monkeypatch):
        _, alice = register_and_login(client, "alice")

        def contended(caller_id, amount):
            raise LockTimeoutError()

        monkeypatch.setattr(system.ledger, "deposit", contended)
        r = client.post("/user/deposit", json={"amount": 1}, headers=bearer(alice))

        assert r.status_code == 503
        assert r.json()["error"] == "lock_timeout"
        assert r.headers["Retry-After"] == "1"
