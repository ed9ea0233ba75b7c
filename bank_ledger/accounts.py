"""
Account Management Module

Opens customer accounts and serves point lookups of account details and
balances. Every user owns exactly one account number and one Balance; the
Balance is created at zero and afterwards only changed by the ledger through
versioned compare-and-swap writes.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Any
import random
import time

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import AccountNotFoundError, StorageConflictError
from .logging_config import get_logger, log_action


@dataclass
class AccountInfo(StorageRecord):
    """Customer-facing account details"""
    user_id: str
    account_number: str
    holder_name: str


@dataclass
class Balance(StorageRecord):
    """
    Current amount owned by one user
    The version increases with every committed mutation.
    """
    user_id: str
    amount: Money
    version: int = 0

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    def with_amount(self, amount: Money, updated_at: datetime) -> 'Balance':
        """Next version of this balance holding a new amount"""
        if amount.currency != self.currency:
            raise ValueError("Balance currency cannot change")
        return replace(self, amount=amount, updated_at=updated_at, version=self.version + 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'user_id': self.user_id,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'version': self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Balance':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            version=data['version']
        )


class AccountManager:
    """
    Manages account opening and account/balance lookups
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        account_number_prefix: str = "ACC"
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.account_number_prefix = account_number_prefix
        self.accounts_table = "account_info"
        self.account_numbers_table = "account_numbers"
        self.balances_table = "balances"
        self.logger = get_logger("bank_ledger.accounts")

    def open_account(
        self,
        user_id: str,
        holder_name: str,
        currency: Currency = Currency.USD,
        account_number: Optional[str] = None
    ) -> AccountInfo:
        """
        Open an account with a zero balance

        Args:
            user_id: Owning user
            holder_name: Display name shown to transfer senders
            currency: Balance currency
            account_number: Specific account number (generated if not provided)

        Returns:
            Created AccountInfo

        Raises:
            ValueError: If the user already has an account or the number is taken
        """
        if self.storage.exists(self.accounts_table, user_id):
            raise ValueError(f"User {user_id} already has an account")

        if not account_number:
            account_number = self._generate_account_number()
        elif self.storage.exists(self.account_numbers_table, account_number):
            raise ValueError(f"Account number {account_number} is already in use")

        now = datetime.now(timezone.utc)
        account = AccountInfo(
            id=user_id,
            created_at=now,
            updated_at=now,
            user_id=user_id,
            account_number=account_number,
            holder_name=holder_name
        )
        balance = Balance(
            id=user_id,
            created_at=now,
            updated_at=now,
            user_id=user_id,
            amount=Money.zero(currency)
        )

        try:
            with self.storage.atomic():
                self.storage.insert(self.accounts_table, user_id, account.to_dict())
                self.storage.insert(self.account_numbers_table, account_number, {
                    'id': account_number,
                    'user_id': user_id
                })
                self.storage.insert(self.balances_table, user_id, balance.to_dict())
        except StorageConflictError as e:
            raise ValueError(f"Account for user {user_id} could not be opened: {e}") from e

        log_action(
            self.logger, "info", "Account opened",
            user_id=user_id, action="open_account", resource=f"account:{account_number}",
            extra={"currency": currency.code}
        )
        self.audit_trail.log_committed_event(
            event_type=AuditEventType.ACCOUNT_OPENED,
            entity_type="account",
            entity_id=user_id,
            metadata={
                "account_number": account_number,
                "holder_name": holder_name,
                "currency": currency.code
            }
        )

        return account

    def find_account(self, user_id: str) -> Optional[AccountInfo]:
        """Get account details by owning user, or None"""
        data = self.storage.load(self.accounts_table, user_id)
        if data:
            return AccountInfo.from_dict(data)
        return None

    def get_account(self, user_id: str) -> AccountInfo:
        """Get account details by owning user"""
        account = self.find_account(user_id)
        if not account:
            raise AccountNotFoundError(f"Account for user {user_id} not found")
        return account

    def get_account_by_number(self, account_number: str) -> AccountInfo:
        """Resolve an account number to its account details"""
        entry = self.storage.load(self.account_numbers_table, account_number)
        if not entry:
            raise AccountNotFoundError("Account number not found")
        return self.get_account(entry['user_id'])

    def list_accounts(self) -> List[AccountInfo]:
        """All accounts, oldest first"""
        accounts = [AccountInfo.from_dict(data) for data in self.storage.load_all(self.accounts_table)]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

    def get_balance(self, user_id: str) -> Balance:
        """Current balance of a user"""
        data = self.storage.load(self.balances_table, user_id)
        if not data:
            raise AccountNotFoundError(f"Balance for user {user_id} not found")
        return Balance.from_dict(data)

    def store_balance(self, balance: Balance, expected_version: int) -> None:
        """
        Persist a mutated balance if nobody else changed it since it was read

        Raises:
            StorageConflictError: If the stored version moved on
        """
        self.storage.compare_and_swap(
            self.balances_table, balance.user_id, expected_version, balance.to_dict()
        )

    def _generate_account_number(self) -> str:
        """ACC + last 6 digits of epoch millis + 3 random digits"""
        for _ in range(10):
            timestamp = str(int(time.time() * 1000))[-6:]
            number = f"{self.account_number_prefix}{timestamp}{random.randint(0, 999):03d}"
            if not self.storage.exists(self.account_numbers_table, number):
                return number
        raise ValueError("Could not generate a unique account number")
