"""
Ledger Service Module

Transfers and deposits between user balances. Each operation is one storage
transaction:

    Begin -> Lock -> Validate -> Mutate(s) -> Commit | Abort

Rows are locked before their balances are read, always in ascending id order,
so concurrent transfers touching the same accounts serialise instead of
losing updates, and opposite-direction transfers cannot deadlock. Callers only
ever observe balances from before or after a whole operation.

Lock waits are bounded by the storage lock timeout. A timeout surfaces as
LockTimeoutError (retryable) after a full rollback; nothing here retries.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Union

from .errors import BadRequestError
from .logging_config import get_logger, log_action
from .models import User, USERS
from .storage import StorageInterface


CENT = Decimal("0.01")

# Upper bound for any single amount and any balance. Sums of two values under
# it stay well inside the default 28-digit context, so arithmetic is exact.
MAX_BALANCE = Decimal("999999999999999.99")

AmountLike = Union[Decimal, int, str]


def parse_amount(amount: AmountLike) -> Decimal:
    """
    Normalise a monetary amount to a positive Decimal with two places

    Floats are rejected outright: binary floating point cannot represent
    most cent values exactly.
    """
    if isinstance(amount, bool) or isinstance(amount, float):
        raise BadRequestError("Amount must be a decimal number", code="invalid_amount")

    try:
        if isinstance(amount, Decimal):
            value = amount
        elif isinstance(amount, int):
            value = Decimal(amount)
        elif isinstance(amount, str):
            value = Decimal(amount.strip())
        else:
            raise BadRequestError("Amount must be a decimal number", code="invalid_amount")

        if not value.is_finite():
            raise BadRequestError("Amount must be a finite number", code="invalid_amount")
        if value <= 0:
            raise BadRequestError("Amount must be positive", code="invalid_amount")
        if value > MAX_BALANCE:
            raise BadRequestError("Amount exceeds the maximum balance", code="invalid_amount")

        quantized = value.quantize(CENT)
    except InvalidOperation:
        raise BadRequestError("Amount must be a decimal number", code="invalid_amount")

    if quantized != value:
        raise BadRequestError("Amount has more than two decimal places", code="invalid_amount")
    return quantized


@dataclass(frozen=True)
class TransferResult:
    """Confirmation of a committed transfer"""
    sender_id: str
    receiver_id: str
    amount: Decimal
    completed_at: datetime
    message: str = "Transfer completed successfully"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "amount": str(self.amount),
            "completed_at": self.completed_at.isoformat(),
        }


class LedgerService:
    """Atomic balance mutations over the users table"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = USERS.name
        self.logger = get_logger("core_wallet.ledger")

    def transfer(self, caller_id: str, receiver_id: str, amount: AmountLike) -> TransferResult:
        """
        Move amount from the caller's balance to the receiver's

        Raises:
            BadRequestError: receiver or owner missing, self transfer, invalid
                amount, insufficient funds, or the receiver would exceed
                MAX_BALANCE. Nothing is written.
            LockTimeoutError: the account locks could not be taken in time
        """
        value = parse_amount(amount)
        if not receiver_id:
            raise BadRequestError("Receiver not found", code="receiver_not_found")
        if receiver_id == caller_id:
            raise BadRequestError("Cannot transfer to the same account", code="self_transfer")

        with self.storage.atomic() as tx:
            tx.lock(self.table_name, [caller_id, receiver_id])

            receiver_data = tx.get(self.table_name, receiver_id)
            if receiver_data is None:
                raise BadRequestError("Receiver not found", code="receiver_not_found")

            owner_data = tx.get(self.table_name, caller_id)
            if owner_data is None:
                raise BadRequestError("Account not found", code="owner_not_found")

            owner = User.from_dict(owner_data)
            receiver = User.from_dict(receiver_data)

            if value > owner.balance:
                raise BadRequestError("Insufficient funds", code="insufficient_funds")
            if receiver.balance + value > MAX_BALANCE:
                raise BadRequestError("Receiver balance limit exceeded", code="balance_limit")

            now = datetime.now(timezone.utc)
            tx.update(self.table_name, owner.id, {
                "balance": str(owner.balance - value),
                "updated_at": now.isoformat()
            })
            tx.update(self.table_name, receiver.id, {
                "balance": str(receiver.balance + value),
                "updated_at": now.isoformat()
            })

        log_action(
            self.logger, "info", "Transfer completed",
            user_id=caller_id, action="transfer", resource=f"user:{receiver_id}",
            extra={"amount": str(value)}
        )
        return TransferResult(
            sender_id=caller_id,
            receiver_id=receiver_id,
            amount=value,
            completed_at=now
        )

    def deposit(self, caller_id: str, amount: AmountLike) -> None:
        """
        Add amount to the caller's balance

        Raises:
            BadRequestError: account missing, invalid amount, or the balance
                would exceed MAX_BALANCE
            LockTimeoutError: the account lock could not be taken in time
        """
        value = parse_amount(amount)

        with self.storage.atomic() as tx:
            owner_data = tx.get(self.table_name, caller_id, for_update=True)
            if owner_data is None:
                raise BadRequestError("Account not found", code="owner_not_found")

            owner = User.from_dict(owner_data)
            if owner.balance + value > MAX_BALANCE:
                raise BadRequestError("Balance limit exceeded", code="balance_limit")
            tx.update(self.table_name, owner.id, {
                "balance": str(owner.balance + value),
                "updated_at": datetime.now(timezone.utc).isoformat()
            })

        log_action(
            self.logger, "info", "Deposit completed",
            user_id=caller_id, action="deposit", resource=f"user:{caller_id}",
            extra={"amount": str(value)}
        )

    def get_balance(self, user_id: str) -> Decimal:
        """Committed balance of the caller's own account"""
        data = self.storage.load(self.table_name, user_id)
        if data is None:
            raise BadRequestError("Account not found", code="owner_not_found")
        return User.from_dict(data).balance
