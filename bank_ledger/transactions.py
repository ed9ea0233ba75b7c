"""
Transaction Records Module

Immutable history records written by the ledger for every committed balance
change. A transfer writes two records that share one reference: the
sender's outgoing leg and the recipient's received leg.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, Any, Optional
from enum import Enum
import secrets
import time

from .currency import Money, Currency
from .storage import StorageRecord


class TransactionType(Enum):
    """Types of ledger transactions"""
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"  # Sender's leg of a transfer
    RECEIVED = "received"          # Recipient's leg of a transfer
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class TransactionStatus(Enum):
    """Settlement status of a transaction"""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


def generate_reference(prefix: str = "TXN") -> str:
    """Unique reference: prefix, epoch milliseconds and a random token"""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


@dataclass
class Transaction(StorageRecord):
    """
    Ledger history record owned by one user
    """
    user_id: str
    transaction_type: TransactionType
    amount: Money
    description: str
    reference: str
    status: TransactionStatus = TransactionStatus.SUCCESS
    sender_id: Optional[str] = None  # Counterparty that initiated a transfer
    external_reference: Optional[str] = None

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValueError("Transaction amount must be positive")

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'user_id': self.user_id,
            'sender_id': self.sender_id,
            'transaction_type': self.transaction_type.value,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'status': self.status.value,
            'description': self.description,
            'reference': self.reference,
            'external_reference': self.external_reference
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        """Create Transaction from its stored dictionary"""
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            sender_id=data.get('sender_id'),
            transaction_type=TransactionType(data['transaction_type']),
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            status=TransactionStatus(data['status']),
            description=data['description'],
            reference=data['reference'],
            external_reference=data.get('external_reference')
        )
