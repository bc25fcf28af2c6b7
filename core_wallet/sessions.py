"""
Session Management Module

Refresh-token sessions. Tokens are drawn from a CSPRNG, so they reveal nothing
about the user or the time of issue; the store guarantees they are unique.
"""

import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from .errors import UnauthorizedError
from .logging_config import get_logger, log_action
from .models import Session, SESSIONS
from .storage import StorageInterface, Transaction


SESSION_TTL = timedelta(days=14)
REFRESH_TOKEN_BYTES = 48


class SessionManager:
    """Creates, validates, rotates and revokes refresh-token sessions"""

    def __init__(self, storage: StorageInterface, ttl: timedelta = SESSION_TTL):
        self.storage = storage
        self.ttl = ttl
        self.table_name = SESSIONS.name
        self.logger = get_logger("core_wallet.sessions")

    def create_session(self, user_id: str, now: Optional[datetime] = None) -> Session:
        """Mint and persist a new refresh token for user_id"""
        with self.storage.atomic() as tx:
            session = self._insert_session(tx, user_id, now)

        log_action(
            self.logger, "info", "Session created",
            user_id=user_id, action="create_session", resource=f"session:{session.id}"
        )
        return session

    def validate_session(self, refresh_token: str, now: Optional[datetime] = None) -> Session:
        """
        Return the session for refresh_token

        Raises:
            UnauthorizedError: token unknown or session expired
        """
        with self.storage.atomic() as tx:
            return self._load_valid(tx, refresh_token, now)

    def rotate_session(self, refresh_token: str, now: Optional[datetime] = None) -> Session:
        """Exchange a valid refresh token for a new one; the old token stops working"""
        with self.storage.atomic() as tx:
            current = self._load_valid(tx, refresh_token, now, for_update=True)
            tx.delete(self.table_name, current.id)
            replacement = self._insert_session(tx, current.user_id, now)

        log_action(
            self.logger, "info", "Session rotated",
            user_id=replacement.user_id, action="rotate_session",
            resource=f"session:{replacement.id}",
            extra={"previous_session_id": current.id}
        )
        return replacement

    def revoke_session(self, refresh_token: str) -> bool:
        """Delete the session holding refresh_token (logout)"""
        with self.storage.atomic() as tx:
            data = tx.find_one(self.table_name, {"refresh_token": refresh_token}, for_update=True)
            if not data:
                return False
            tx.delete(self.table_name, data['id'])

        log_action(
            self.logger, "info", "Session revoked",
            user_id=data['user_id'], action="revoke_session", resource=f"session:{data['id']}"
        )
        return True

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete every expired session; returns how many were removed"""
        now = now or datetime.now(timezone.utc)
        removed = 0
        with self.storage.atomic() as tx:
            for data in tx.find(self.table_name, {}):
                if Session.from_dict(data).is_expired(now):
                    if tx.delete(self.table_name, data['id']):
                        removed += 1

        if removed:
            self.logger.info(f"Purged {removed} expired sessions")
        return removed

    def _insert_session(self, tx: Transaction, user_id: str, now: Optional[datetime]) -> Session:
        now = now or datetime.now(timezone.utc)
        session = Session(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            refresh_token=secrets.token_urlsafe(REFRESH_TOKEN_BYTES),
            user_id=user_id,
            expires_at=now + self.ttl
        )
        tx.insert(self.table_name, session.to_dict())
        return session

    def _load_valid(self, tx: Transaction, refresh_token: str, now: Optional[datetime],
                    for_update: bool = False) -> Session:
        if not refresh_token:
            raise UnauthorizedError("Invalid refresh token", code="invalid_session")
        data = tx.find_one(self.table_name, {"refresh_token": refresh_token}, for_update=for_update)
        if not data:
            raise UnauthorizedError("Invalid refresh token", code="invalid_session")
        session = Session.from_dict(data)
        if session.is_expired(now):
            raise UnauthorizedError("Session expired", code="session_expired")
        return session
