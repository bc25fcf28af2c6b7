"""
Error Taxonomy Module

Every failure the wallet reports is a WalletError carrying a stable machine code,
an HTTP-oriented status code and a retryable flag. Business-rule violations
(BadRequestError, UnauthorizedError, ConflictError) are final; RetryableError
marks store contention or transient failures that a caller may safely retry.
"""

from typing import Any, Dict, Optional


class WalletError(Exception):
    """Base class for all wallet errors"""

    code = "wallet_error"
    status_code = 500
    retryable = False
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None,
                 context: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        if code:
            self.code = code
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "detail": self.message}
        if self.context:
            payload["context"] = dict(self.context)
        return payload


class BadRequestError(WalletError):
    """A precondition of a ledger operation was violated"""

    code = "bad_request"
    status_code = 400
    default_message = "Bad request"


class UnauthorizedError(WalletError):
    """Credentials, access token or session could not be verified"""

    code = "unauthorized"
    status_code = 401
    default_message = "Unauthorized"


class ConflictError(WalletError):
    """Identity already registered"""

    code = "conflict"
    status_code = 409
    default_message = "Conflict"


class StorageError(WalletError):
    """Non-transient failure reported by the data store"""

    code = "storage_error"
    status_code = 500
    default_message = "Storage failure"


class UniqueConstraintError(StorageError):
    """A write was rejected by a uniqueness constraint"""

    code = "unique_violation"

    def __init__(self, table: str, column: str, message: Optional[str] = None):
        self.table = table
        self.column = column
        super().__init__(
            message or f"Duplicate value for {table}.{column}",
            context={"table": table, "column": column}
        )


class RetryableError(WalletError):
    """Transient store failure; the whole operation was rolled back"""

    code = "retryable"
    status_code = 503
    retryable = True
    default_message = "Temporary failure, retry the request"


class LockTimeoutError(RetryableError):
    """Row or database lock could not be acquired in time"""

    code = "lock_timeout"
    default_message = "Timed out waiting for account lock"


class StorageUnavailableError(RetryableError):
    """Connection lost or store otherwise unavailable"""

    code = "storage_unavailable"
    default_message = "Storage temporarily unavailable"
