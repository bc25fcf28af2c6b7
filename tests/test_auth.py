"""
Test suite for authentication

Tests registration, login, refresh-token rotation, logout and the request gate.
"""

from datetime import timedelta

import jwt
import pytest

from core_wallet.auth import AuthenticationService, LoginResult
from core_wallet.errors import BadRequestError, ConflictError, UnauthorizedError
from core_wallet.gate import RequestGate
from core_wallet.models import WALLET_TABLES
from core_wallet.passwords import PasswordHasher
from core_wallet.sessions import SessionManager
from core_wallet.storage import InMemoryStorage
from core_wallet.tokens import TokenSigner
from core_wallet.users import UserManager


SECRET = "test-secret-key"


@pytest.fixture
def storage():
    """Create in-memory storage for tests"""
    return InMemoryStorage(WALLET_TABLES)


@pytest.fixture
def hasher():
    """Minimum bcrypt cost keeps the suite fast"""
    return PasswordHasher(rounds=4)


@pytest.fixture
def signer():
    return TokenSigner(SECRET, expires_in=timedelta(minutes=15))


@pytest.fixture
def users(storage, hasher):
    return UserManager(storage, hasher)


@pytest.fixture
def sessions(storage):
    return SessionManager(storage)


@pytest.fixture
def auth(users, sessions, signer, hasher):
    return AuthenticationService(users, sessions, signer, hasher)


@pytest.fixture
def gate(signer):
    return RequestGate(signer)


class TestRegistration:
    """Test user registration"""

    def test_register_returns_public_record(self, auth, storage):
        result = auth.register("alice", "s3cret")

        assert result["username"] == "alice"
        assert result["balance"] == "0.00"
        assert "password_hash" not in result
        assert "password" not in result
        assert storage.count("users") == 1

    def test_password_is_stored_hashed(self, auth, users, hasher):
        auth.register("alice", "s3cret")

        user = users.get_user_by_username("alice")
        assert user.password_hash != "s3cret"
        assert user.password_hash.startswith("$2")
        assert hasher.verify("s3cret", user.password_hash)

    def test_duplicate_registration_conflicts(self, auth, storage):
        auth.register("alice", "s3cret")

        with pytest.raises(ConflictError):
            auth.register("alice", "other-password")

        assert storage.count("users") == 1

    def test_store_uniqueness_maps_to_conflict(self, users, storage, monkeypatch):
        users.create_user("alice", "s3cret")
        # Simulate a racing registration that passed the pre-check
        monkeypatch.setattr(users, "get_user_by_username", lambda username: None)

        with pytest.raises(ConflictError):
            users.create_user("alice", "s3cret")

        assert storage.count("users") == 1

    def test_usernames_are_case_sensitive(self, auth):
        auth.register("alice", "s3cret")
        result = auth.register("Alice", "s3cret")

        assert result["username"] == "Alice"

    def test_password_longer_than_bcrypt_limit_rejected(self, auth, storage):
        with pytest.raises(BadRequestError) as exc_info:
            auth.register("alice", "x" * 100)

        assert exc_info.value.code == "invalid_password"
        assert storage.count("users") == 0

    def test_password_limit_counts_utf8_bytes(self, auth):
        with pytest.raises(BadRequestError):
            auth.register("alice", "\u00e9" * 40)

        assert auth.register("bob", "x" * 72)["username"] == "bob"
        assert auth.login("bob", "x" * 72).access_token

    def test_unencodable_password_rejected(self, auth):
        with pytest.raises(BadRequestError) as exc_info:
            auth.register("alice", "abc\ud800")

        assert exc_info.value.code == "invalid_password"

    @pytest.mark.parametrize("username,password", [
        ("", "s3cret"),
        (" alice", "s3cret"),
        ("alice", ""),
    ])
    def test_invalid_credentials_rejected(self, auth, username, password):
        with pytest.raises(BadRequestError):
            auth.register(username, password)


class TestLogin:
    """Test login and token issuance"""

    def test_login_issues_verifiable_tokens(self, auth, users, sessions, gate):
        auth.register("alice", "s3cret")
        user = users.get_user_by_username("alice")

        result = auth.login("alice", "s3cret")

        assert isinstance(result, LoginResult)
        assert gate.authorize(result.access_token) == user.id
        claims = jwt.decode(result.access_token, SECRET, algorithms=["HS256"])
        assert claims["username"] == "alice"

        session = sessions.validate_session(result.refresh_token)
        assert session.user_id == user.id
        assert session.expires_at - session.created_at == timedelta(days=14)

    def test_each_login_creates_distinct_session(self, auth, storage):
        auth.register("alice", "s3cret")

        first = auth.login("alice", "s3cret")
        second = auth.login("alice", "s3cret")

        assert first.refresh_token != second.refresh_token
        assert first.access_token != second.access_token
        assert storage.count("sessions") == 2

    def test_refresh_token_does_not_embed_user_id(self, auth, users):
        auth.register("alice", "s3cret")
        user = users.get_user_by_username("alice")

        result = auth.login("alice", "s3cret")

        assert user.id not in result.refresh_token
        assert user.id.encode().hex() not in result.refresh_token

    def test_wrong_password_and_unknown_user_fail_identically(self, auth, storage):
        auth.register("alice", "s3cret")

        with pytest.raises(UnauthorizedError) as wrong_password:
            auth.login("alice", "wrong")
        with pytest.raises(UnauthorizedError) as unknown_user:
            auth.login("mallory", "s3cret")

        assert wrong_password.value.code == unknown_user.value.code == "invalid_credentials"
        assert wrong_password.value.message == unknown_user.value.message
        assert wrong_password.value.to_dict() == unknown_user.value.to_dict()
        assert storage.count("sessions") == 0

    def test_unknown_user_still_runs_password_check(self, auth, hasher, monkeypatch):
        calls = []
        original = hasher.verify
        monkeypatch.setattr(hasher, "verify", lambda raw, hashed: calls.append(raw) or original(raw, hashed))

        with pytest.raises(UnauthorizedError):
            auth.login("nobody", "guess")

        assert calls == ["guess"]


class TestRefreshAndLogout:
    """Test refresh-token exchange and revocation"""

    def test_refresh_rotates_token(self, auth, sessions, gate, users):
        auth.register("alice", "s3cret")
        user = users.get_user_by_username("alice")
        login = auth.login("alice", "s3cret")

        refreshed = auth.refresh(login.refresh_token)

        assert refreshed.refresh_token != login.refresh_token
        assert gate.authorize(refreshed.access_token) == user.id
        with pytest.raises(UnauthorizedError):
            sessions.validate_session(login.refresh_token)
        with pytest.raises(UnauthorizedError):
            auth.refresh(login.refresh_token)

    def test_refresh_with_unknown_token(self, auth):
        with pytest.raises(UnauthorizedError):
            auth.refresh("not-a-token")

    def test_logout_revokes_session(self, auth, sessions):
        auth.register("alice", "s3cret")
        login = auth.login("alice", "s3cret")

        auth.logout(login.refresh_token)

        with pytest.raises(UnauthorizedError):
            sessions.validate_session(login.refresh_token)


class TestRequestGate:
    """Test access-token validation"""

    def test_rejects_tampered_token(self, auth, gate):
        auth.register("alice", "s3cret")
        token = auth.login("alice", "s3cret").access_token

        with pytest.raises(UnauthorizedError):
            gate.authorize(token[:-2] + ("AA" if token[-2:] != "AA" else "BB"))

    def test_rejects_token_signed_with_other_secret(self, gate):
        forged = TokenSigner("another-secret").issue_access_token("u1", "alice")

        with pytest.raises(UnauthorizedError):
            gate.authorize(forged)

    def test_rejects_expired_token(self, gate):
        expired = TokenSigner(SECRET, expires_in=timedelta(seconds=-1)).issue_access_token("u1", "alice")

        with pytest.raises(UnauthorizedError) as exc_info:
            gate.authorize(expired)
        assert exc_info.value.code == "token_expired"

    def test_rejects_missing_token(self, gate):
        with pytest.raises(UnauthorizedError):
            gate.authorize(None)
        with pytest.raises(UnauthorizedError):
            gate.authorize_header(None)

    def test_authorize_header(self, gate, signer):
        token = signer.issue_access_token("u1", "alice")

        assert gate.authorize_header(f"Bearer {token}") == "u1"
        with pytest.raises(UnauthorizedError):
            gate.authorize_header(f"Basic {token}")
