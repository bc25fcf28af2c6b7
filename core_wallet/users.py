"""
Credential Store Module

Creates and looks up users. Usernames are unique (enforced by the store as well
as checked here), case-sensitive and immutable; the password is kept only as a
bcrypt hash.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
import uuid

from .errors import BadRequestError, ConflictError, UniqueConstraintError
from .logging_config import get_logger, log_action
from .models import User, USERS
from .passwords import MAX_PASSWORD_BYTES, PasswordHasher
from .storage import StorageInterface


MAX_USERNAME_LENGTH = 150


class UserManager:
    """Manages user records"""

    def __init__(self, storage: StorageInterface, hasher: PasswordHasher):
        self.storage = storage
        self.hasher = hasher
        self.table_name = USERS.name
        self.logger = get_logger("core_wallet.users")

    def create_user(self, username: str, password: str) -> User:
        """
        Create a new user with a zero balance

        Raises:
            BadRequestError: malformed username or password
            ConflictError: username already registered
        """
        self._validate_credentials(username, password)

        if self.get_user_by_username(username):
            raise ConflictError("User already exists", code="user_exists")

        # Hash outside the transaction; it is deliberately slow
        password_hash = self.hasher.hash(password)
        now = datetime.now(timezone.utc)

        user = User(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            username=username,
            password_hash=password_hash,
            balance=Decimal("0.00")
        )

        try:
            with self.storage.atomic() as tx:
                tx.insert(self.table_name, user.to_dict())
        except UniqueConstraintError as e:
            if e.column == "username":
                raise ConflictError("User already exists", code="user_exists")
            raise

        log_action(
            self.logger, "info", "User created",
            user_id=user.id, action="create_user", resource=f"user:{user.id}"
        )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        """Get user by ID"""
        data = self.storage.load(self.table_name, user_id)
        if not data:
            return None
        return User.from_dict(data)

    def get_user_by_username(self, username: str) -> Optional[User]:
        """Get user by username (exact, case-sensitive match)"""
        data = self.storage.find_one(self.table_name, {"username": username})
        if not data:
            return None
        return User.from_dict(data)

    def delete_user(self, user_id: str) -> bool:
        """Delete a user; their sessions are removed with them"""
        with self.storage.atomic() as tx:
            deleted = tx.delete(self.table_name, user_id)

        if deleted:
            log_action(
                self.logger, "info", "User deleted",
                user_id=user_id, action="delete_user", resource=f"user:{user_id}"
            )
        return deleted

    def _validate_credentials(self, username: str, password: str) -> None:
        if not isinstance(username, str) or not username:
            raise BadRequestError("Username is required", code="invalid_username")
        if username != username.strip():
            raise BadRequestError("Username may not start or end with whitespace",
                                  code="invalid_username")
        if len(username) > MAX_USERNAME_LENGTH:
            raise BadRequestError("Username is too long", code="invalid_username")
        try:
            username.encode("utf-8")
        except UnicodeEncodeError:
            raise BadRequestError("Username is not valid text", code="invalid_username")
        if not isinstance(password, str) or not password:
            raise BadRequestError("Password is required", code="invalid_password")
        try:
            encoded = password.encode("utf-8")
        except UnicodeEncodeError:
            raise BadRequestError("Password is not valid text", code="invalid_password")
        if len(encoded) > MAX_PASSWORD_BYTES:
            raise BadRequestError(
                f"Password may not exceed {MAX_PASSWORD_BYTES} bytes", code="invalid_password"
            )
