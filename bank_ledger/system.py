"""
Banking system wiring
"""

from typing import Optional

from .config import LedgerConfig, get_config
from .currency import Currency
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage
from .audit import AuditTrail
from .accounts import AccountManager
from .ledger import LedgerService
from .identity import ContextIdentityProvider, IdentityProvider
from .handlers import BankingHandlers
from .logging_config import setup_logging


def create_storage(database_url: str) -> StorageInterface:
    """
    Create a storage backend from a database URL

    Supported: memory:// and sqlite:///path (sqlite:///:memory: for a
    private in-process database).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")


class BankingSystem:
    """Ledger components composed from configuration"""

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        storage: Optional[StorageInterface] = None,
        identity_provider: Optional[IdentityProvider] = None
    ):
        self.config = config or get_config()

        setup_logging(
            level=self.config.log_level,
            log_format=self.config.log_format,
            log_file=self.config.log_file
        )

        self.storage = storage or create_storage(self.config.database_url)
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.account_manager = AccountManager(
            self.storage, self.audit_trail, account_number_prefix=self.config.account_number_prefix
        )
        self.ledger = LedgerService(
            self.storage, self.account_manager, self.audit_trail,
            max_conflict_retries=self.config.max_conflict_retries
        )
        self.identity_provider = identity_provider or ContextIdentityProvider()
        self.handlers = BankingHandlers(
            self.account_manager,
            self.ledger,
            self.identity_provider,
            audit_trail=self.audit_trail,
            default_currency=Currency[self.config.default_currency]
        )

    def close(self) -> None:
        self.storage.close()
