"""Domain errors raised by the ledger store and the facade.

The HTTP layer maps each class to a status code; messages are safe to show
to the caller.
"""


class LedgerError(Exception):
    code = "ledger_error"
    message = "Ledger error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


class InvalidCredentials(LedgerError):
    code = "invalid_credentials"
    message = "Invalid credentials"


class InvalidToken(LedgerError):
    code = "invalid_token"
    message = "Invalid token"


class NotFound(LedgerError):
    code = "not_found"
    message = "Not found"


class UserNotFound(NotFound):
    code = "user_not_found"
    message = "User not found"


class ItemNotFound(NotFound):
    code = "item_not_found"
    message = "Item not found"


class InsufficientBalance(LedgerError):
    code = "insufficient_balance"
    message = "Insufficient balance"


class InvalidRequest(LedgerError):
    code = "invalid_request"
    message = "Invalid request"


class StorageError(LedgerError):
    code = "storage_error"
    message = "Storage error"


class StorageTimeout(StorageError):
    code = "storage_timeout"
    message = "Storage timeout"
