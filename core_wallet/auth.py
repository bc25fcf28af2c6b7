"""
Authentication Service Module

Registration, login and refresh-token exchange. Login failures are uniform:
an unknown username and a wrong password raise the same error after the same
amount of bcrypt work, so responses cannot be used to enumerate identities.
"""

from dataclasses import dataclass
from typing import Any, Dict

from .errors import UnauthorizedError
from .logging_config import get_logger, log_action
from .passwords import PasswordHasher
from .sessions import SessionManager
from .tokens import TokenSigner
from .users import UserManager


@dataclass(frozen=True)
class LoginResult:
    """Token pair handed to a client after login or refresh"""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
        }


def _invalid_credentials() -> UnauthorizedError:
    return UnauthorizedError("Invalid username or password", code="invalid_credentials")


class AuthenticationService:
    """Orchestrates registration and login"""

    def __init__(self, users: UserManager, sessions: SessionManager,
                 signer: TokenSigner, hasher: PasswordHasher):
        self.users = users
        self.sessions = sessions
        self.signer = signer
        self.hasher = hasher
        self.logger = get_logger("core_wallet.auth")

    def register(self, username: str, password: str) -> Dict[str, Any]:
        """Create an account and return its public representation"""
        user = self.users.create_user(username, password)
        return user.to_public_dict()

    def login(self, username: str, password: str) -> LoginResult:
        """
        Verify credentials and issue an access token plus a refresh token

        Raises:
            UnauthorizedError: unknown username or wrong password (indistinguishable)
        """
        user = self.users.get_user_by_username(username) if isinstance(username, str) else None

        if user is None:
            self.hasher.dummy_verify(password or "")
            log_action(self.logger, "warning", "Authentication failed",
                       action="login_failed", resource="auth")
            raise _invalid_credentials()

        if not self.hasher.verify(password or "", user.password_hash):
            log_action(self.logger, "warning", "Authentication failed",
                       action="login_failed", resource="auth")
            raise _invalid_credentials()

        access_token = self.signer.issue_access_token(user.id, user.username)
        session = self.sessions.create_session(user.id)

        log_action(
            self.logger, "info", "User authenticated successfully",
            user_id=user.id, action="login", resource="auth"
        )
        return LoginResult(access_token=access_token, refresh_token=session.refresh_token)

    def refresh(self, refresh_token: str) -> LoginResult:
        """Rotate a refresh token and issue a fresh access token"""
        session = self.sessions.rotate_session(refresh_token)
        user = self.users.get_user(session.user_id)
        if user is None:
            # Cascade delete makes this unreachable unless the user vanished mid-call
            raise UnauthorizedError("Invalid refresh token", code="invalid_session")

        access_token = self.signer.issue_access_token(user.id, user.username)
        return LoginResult(access_token=access_token, refresh_token=session.refresh_token)

    def logout(self, refresh_token: str) -> None:
        self.sessions.revoke_session(refresh_token)
