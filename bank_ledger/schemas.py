"""
Pydantic schemas for handler requests and responses
"""

from decimal import Decimal
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from .currency import Money, Currency
from .accounts import AccountInfo, Balance
from .transactions import Transaction
from .ledger import BalanceAction, BalanceAdjustment, TransferReceipt


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (USD, EUR, etc.)")

    def to_money(self) -> Money:
        return Money(Decimal(self.amount), Currency[self.currency])

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


# Request schemas
class TransferRequest(BaseModel):
    recipient_account_number: str
    amount: str = Field(..., description="Decimal amount as string")
    description: Optional[str] = None


class BalanceUpdateRequest(BaseModel):
    user_id: str
    amount: str = Field(..., description="Decimal amount as string")
    action: BalanceAction


class OpenAccountRequest(BaseModel):
    user_id: str
    holder_name: str
    currency: str = Field("USD", description="Currency code")
    initial_balance: Optional[str] = None  # Decimal as string


# Response schemas
class TransactionModel(BaseModel):
    id: str
    transaction_type: str
    amount: MoneyModel
    description: str
    reference: str
    status: str
    sender_id: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> 'TransactionModel':
        return cls(
            id=transaction.id,
            transaction_type=transaction.transaction_type.value,
            amount=MoneyModel.from_money(transaction.amount),
            description=transaction.description,
            reference=transaction.reference,
            status=transaction.status.value,
            sender_id=transaction.sender_id,
            created_at=transaction.created_at
        )


class TransferReceiptModel(BaseModel):
    reference: str
    amount: MoneyModel
    sender_id: str
    sender_name: str
    recipient_id: str
    recipient_name: str
    recipient_account_number: str
    description: str
    timestamp: datetime
    status: str = "success"

    @classmethod
    def from_receipt(cls, receipt: TransferReceipt) -> 'TransferReceiptModel':
        return cls(
            reference=receipt.reference,
            amount=MoneyModel.from_money(receipt.amount),
            sender_id=receipt.sender_id,
            sender_name=receipt.sender_name,
            recipient_id=receipt.recipient_id,
            recipient_name=receipt.recipient_name,
            recipient_account_number=receipt.recipient_account_number,
            description=receipt.description,
            timestamp=receipt.timestamp,
            status=receipt.sender_transaction.status.value
        )


class AccountSummaryModel(BaseModel):
    user_id: str
    account_number: str
    holder_name: str
    balance: MoneyModel
    created_at: datetime

    @classmethod
    def from_account(cls, account: AccountInfo, balance: Balance) -> 'AccountSummaryModel':
        return cls(
            user_id=account.user_id,
            account_number=account.account_number,
            holder_name=account.holder_name,
            balance=MoneyModel.from_money(balance.amount),
            created_at=account.created_at
        )


class RecipientModel(BaseModel):
    account_number: str
    holder_name: str


class BalanceUpdateResponse(BaseModel):
    user_id: str
    new_balance: MoneyModel
    transaction: TransactionModel

    @classmethod
    def from_adjustment(cls, adjustment: BalanceAdjustment) -> 'BalanceUpdateResponse':
        return cls(
            user_id=adjustment.balance.user_id,
            new_balance=MoneyModel.from_money(adjustment.new_balance),
            transaction=TransactionModel.from_transaction(adjustment.transaction)
        )
