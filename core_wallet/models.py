"""
Wallet Records

Users (credentials plus balance) and the refresh-token sessions they own,
together with the table schemas every storage backend creates for them.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from .storage import Column, StorageRecord, TableSchema


USERS = TableSchema(
    name="users",
    columns=(
        Column("username", nullable=False, unique=True),
        Column("password_hash", nullable=False),
        Column("balance", nullable=False),
        Column("created_at", nullable=False),
        Column("updated_at", nullable=False),
        Column("deleted_at"),
    )
)

SESSIONS = TableSchema(
    name="sessions",
    columns=(
        Column("refresh_token", nullable=False, unique=True),
        Column("user_id", nullable=False, references="users"),
        Column("expires_at", nullable=False),
        Column("created_at", nullable=False),
        Column("updated_at", nullable=False),
    )
)

WALLET_TABLES = (USERS, SESSIONS)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class User(StorageRecord):
    """Account holder: identity, credential hash and balance"""
    username: str
    password_hash: str
    balance: Decimal = Decimal("0")
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'deleted_at'):
            data[key] = _parse_datetime(data.get(key))
        data['balance'] = Decimal(str(data.get('balance') or "0"))
        return cls(**data)

    def to_public_dict(self) -> Dict[str, Any]:
        """Representation safe to hand to callers (no credential hash)"""
        return {
            "id": self.id,
            "username": self.username,
            "balance": str(self.balance),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Session(StorageRecord):
    """Long-lived refresh-token session bound to one user"""
    refresh_token: str
    user_id: str
    expires_at: datetime

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Session':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'expires_at'):
            data[key] = _parse_datetime(data.get(key))
        return cls(**data)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expires_at <= now
