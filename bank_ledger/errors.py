"""
Ledger Error Taxonomy

Typed failures raised by the ledger core and its handlers. Caller mistakes
(bad amounts, missing accounts, insufficient funds) are also ValueErrors so
generic handlers can treat them as bad input.
"""


class LedgerError(Exception):
    """Base class for all ledger failures"""


class InsufficientFundsError(LedgerError, ValueError):
    """Requested debit exceeds the current balance"""


class InvalidAmountError(LedgerError, ValueError):
    """Amount is zero, negative or not a number"""


class SelfTransferNotAllowedError(LedgerError, ValueError):
    """Sender and recipient are the same user"""


class AccountNotFoundError(LedgerError, ValueError):
    """No account or balance record exists for the user"""


class CurrencyMismatchError(LedgerError, ValueError):
    """Balances involved in one operation use different currencies"""


class TransferFailedError(LedgerError):
    """Operation gave up after repeated conflicting writes"""


class StorageError(LedgerError):
    """Base class for storage backend failures"""


class StorageConflictError(StorageError):
    """A concurrent write changed the record first"""


class StorageUnavailableError(StorageError):
    """The storage backend failed for infrastructure reasons"""


class AuthorizationError(LedgerError):
    """Base class for identity failures in request handlers"""


class NotAuthenticatedError(AuthorizationError):
    """No caller identity is available"""


class PermissionDeniedError(AuthorizationError):
    """Caller lacks the capability required by the handler"""
