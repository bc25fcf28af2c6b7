"""
Wallet system composition root.

Every collaborator is constructed here and passed into the services that use
it; services never look anything up globally.
"""

from datetime import timedelta
from typing import Optional

from .auth import AuthenticationService
from .config import WalletConfig, get_config
from .gate import RequestGate
from .ledger import LedgerService
from .models import WALLET_TABLES
from .passwords import PasswordHasher
from .sessions import SessionManager
from .storage import StorageInterface, storage_from_config
from .tokens import TokenSigner
from .users import UserManager


class WalletSystem:
    """Wallet with all components initialized"""

    def __init__(self, config: Optional[WalletConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 hasher: Optional[PasswordHasher] = None):
        self.config = config or get_config()

        # Initialize storage
        self.storage = storage or storage_from_config(self.config, WALLET_TABLES)

        # Initialize collaborators
        self.hasher = hasher or PasswordHasher(rounds=self.config.password_hash_rounds)
        self.signer = TokenSigner(
            secret=self.config.jwt_secret,
            algorithm=self.config.jwt_algorithm,
            expires_in=timedelta(minutes=self.config.jwt_expiry_minutes)
        )

        # Initialize services
        self.users = UserManager(self.storage, self.hasher)
        self.sessions = SessionManager(
            self.storage, ttl=timedelta(days=self.config.refresh_token_ttl_days)
        )
        self.auth = AuthenticationService(self.users, self.sessions, self.signer, self.hasher)
        self.gate = RequestGate(self.signer)
        self.ledger = LedgerService(self.storage)

    def close(self) -> None:
        self.storage.close()
