"""
Ledger Service

The sole writer of balances and transaction history. Every operation runs
its read-check-write sequence inside one storage transaction: balances are
read and written in ascending user-id order, each balance write is a
compare-and-swap on the balance version, and the matching transaction
records are inserted in the same unit. A conflicting concurrent write aborts
the unit, which is then re-run from a fresh read a bounded number of times.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, TypeVar, Union
from enum import Enum
import uuid

from .currency import Money, MAX_AMOUNT, parse_amount, quantize_amount
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .accounts import AccountManager, Balance
from .transactions import Transaction, TransactionType, generate_reference
from .errors import (
    LedgerError, InsufficientFundsError, InvalidAmountError,
    SelfTransferNotAllowedError, CurrencyMismatchError,
    TransferFailedError, StorageConflictError
)
from .logging_config import get_logger, log_action


AmountLike = Union[Money, Decimal, int, str]
T = TypeVar('T')


class BalanceAction(Enum):
    """Administrator balance actions"""
    INCREASE = "increase"
    REDUCE = "reduce"
    SET = "set"


@dataclass
class BalanceAdjustment:
    """Outcome of a committed balance adjustment"""
    balance: Balance
    transaction: Transaction

    @property
    def new_balance(self) -> Money:
        return self.balance.amount


@dataclass
class TransferReceipt:
    """Outcome of a committed transfer"""
    reference: str
    amount: Money
    sender_id: str
    sender_name: str
    recipient_id: str
    recipient_name: str
    recipient_account_number: str
    description: str
    timestamp: datetime
    sender_transaction: Transaction
    recipient_transaction: Transaction


def _signed(delta: Money) -> str:
    sign = "-" if delta.is_negative() else "+"
    return f"{sign}{abs(delta).to_string()}"


def _amount_value(amount: AmountLike) -> Decimal:
    raw = amount.amount if isinstance(amount, Money) else amount
    return quantize_amount(parse_amount(raw))


class LedgerService:
    """
    Applies balance adjustments and transfers and records their history
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        audit_trail: AuditTrail,
        max_conflict_retries: int = 3
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.audit_trail = audit_trail
        self.max_conflict_retries = max_conflict_retries
        self.transactions_table = "transactions"
        self.logger = get_logger("bank_ledger.ledger")

    def adjust_balance(
        self,
        user_id: str,
        delta: AmountLike,
        description: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> BalanceAdjustment:
        """
        Credit (positive delta) or debit (negative delta) one balance

        Args:
            user_id: Owner of the balance
            delta: Non-zero signed amount; plain numbers use the balance currency
            description: Transaction description (generated if not provided)
            actor_id: Caller performing the adjustment, for the audit trail

        Returns:
            BalanceAdjustment with the new balance and the deposit/withdrawal record

        Raises:
            InvalidAmountError: If delta is zero or not a number
            AccountNotFoundError: If the user has no balance
            InsufficientFundsError: If the balance would go negative
            TransferFailedError: If conflicting writes persisted through all retries
        """
        try:
            value = _amount_value(delta)
            if value == 0:
                raise InvalidAmountError("Adjustment amount must not be zero")

            def to_delta(balance: Balance) -> Money:
                return delta if isinstance(delta, Money) else Money(value, balance.currency)

            return self._adjust(
                user_id,
                to_delta,
                lambda change: description or f"Balance adjustment: {_signed(change)}",
                actor_id
            )
        except LedgerError as e:
            self._log_rejection("adjust_balance", user_id, e)
            raise

    def update_user_balance(
        self,
        user_id: str,
        amount: AmountLike,
        action: BalanceAction,
        actor_id: Optional[str] = None
    ) -> BalanceAdjustment:
        """
        Administrator increase, reduction or absolute set of a balance

        For SET the difference to the current balance is computed inside the
        same unit of work that writes it.
        """
        try:
            value = _amount_value(amount)

            if action == BalanceAction.SET:
                if value < 0:
                    raise InvalidAmountError("Balance cannot be negative")
            elif value <= 0:
                raise InvalidAmountError("Amount must be greater than 0")

            def to_money(balance: Balance) -> Money:
                return amount if isinstance(amount, Money) else Money(value, balance.currency)

            if action == BalanceAction.INCREASE:
                return self._adjust(
                    user_id, to_money,
                    lambda change: f"Admin balance increase: {_signed(change)}",
                    actor_id
                )
            if action == BalanceAction.REDUCE:
                return self._adjust(
                    user_id, lambda balance: -to_money(balance),
                    lambda change: f"Admin balance reduction: {_signed(change)}",
                    actor_id
                )
            return self._adjust(
                user_id, lambda balance: to_money(balance) - balance.amount,
                lambda change: f"Admin balance adjustment: {_signed(change)}",
                actor_id
            )
        except LedgerError as e:
            self._log_rejection(f"update_balance_{action.value}", user_id, e)
            raise

    def transfer_funds(
        self,
        sender_id: str,
        recipient_id: str,
        amount: AmountLike,
        description: Optional[str] = None
    ) -> TransferReceipt:
        """
        Move funds from one user to another

        Debits the sender, credits the recipient and writes the outgoing and
        received records under one shared reference, all or nothing.

        Raises:
            InvalidAmountError: If amount is not strictly positive
            SelfTransferNotAllowedError: If sender and recipient are the same
            AccountNotFoundError: If either party has no account
            CurrencyMismatchError: If the balances use different currencies
            InsufficientFundsError: If the sender balance is below amount
            TransferFailedError: If conflicting writes persisted through all retries
        """
        reference = generate_reference("TXN")
        try:
            value = _amount_value(amount)
            if value <= 0:
                raise InvalidAmountError("Amount must be greater than 0")
            if sender_id == recipient_id:
                raise SelfTransferNotAllowedError("Cannot transfer to your own account")

            def work() -> TransferReceipt:
                sender_account = self.account_manager.get_account(sender_id)
                recipient_account = self.account_manager.get_account(recipient_id)

                ordered_ids = sorted((sender_id, recipient_id))
                balances: Dict[str, Balance] = {
                    user_id: self.account_manager.get_balance(user_id) for user_id in ordered_ids
                }
                sender_balance = balances[sender_id]
                recipient_balance = balances[recipient_id]

                money = amount if isinstance(amount, Money) else Money(value, sender_balance.currency)
                if money.currency != sender_balance.currency or money.currency != recipient_balance.currency:
                    raise CurrencyMismatchError(
                        f"Cannot transfer {money.currency.code} from a {sender_balance.currency.code} "
                        f"balance to a {recipient_balance.currency.code} balance"
                    )
                if sender_balance.amount < money:
                    raise InsufficientFundsError("Insufficient balance")
                if (recipient_balance.amount + money).amount > MAX_AMOUNT:
                    raise InvalidAmountError("Recipient balance would exceed the maximum amount")

                now = datetime.now(timezone.utc)
                updated = {
                    sender_id: sender_balance.with_amount(sender_balance.amount - money, now),
                    recipient_id: recipient_balance.with_amount(recipient_balance.amount + money, now)
                }
                for user_id in ordered_ids:
                    self.account_manager.store_balance(updated[user_id], balances[user_id].version)

                memo = description or f"Transfer to {recipient_account.holder_name}"
                outgoing = self._record(
                    now, sender_id, TransactionType.TRANSFER_OUT, money, memo, reference, sender_id
                )
                received = self._record(
                    now, recipient_id, TransactionType.RECEIVED, money, memo, reference, sender_id
                )

                return TransferReceipt(
                    reference=reference,
                    amount=money,
                    sender_id=sender_id,
                    sender_name=sender_account.holder_name,
                    recipient_id=recipient_id,
                    recipient_name=recipient_account.holder_name,
                    recipient_account_number=recipient_account.account_number,
                    description=memo,
                    timestamp=now,
                    sender_transaction=outgoing,
                    recipient_transaction=received
                )

            receipt = self._run_atomic("transfer_funds", work)
        except LedgerError as e:
            self._log_rejection("transfer_funds", sender_id, e, reference=reference)
            raise

        log_action(
            self.logger, "info", "Transfer completed",
            user_id=sender_id, action="transfer_funds", resource=f"transfer:{reference}",
            extra={
                "recipient_id": recipient_id,
                "amount": receipt.amount.to_string(),
                "reference": reference
            }
        )
        self.audit_trail.log_committed_event(
            event_type=AuditEventType.TRANSFER_COMPLETED,
            entity_type="transfer",
            entity_id=reference,
            user_id=sender_id,
            metadata={
                "sender_id": sender_id,
                "recipient_id": recipient_id,
                "amount": receipt.amount.amount,
                "currency": receipt.amount.currency.code,
                "description": receipt.description,
                "transaction_ids": [receipt.sender_transaction.id, receipt.recipient_transaction.id]
            }
        )

        return receipt

    def lookup_transaction_by_reference(self, reference: str) -> Optional[Transaction]:
        """
        Find the record behind a receipt

        Returns the outgoing leg of a transfer when present, otherwise the
        earliest record with the reference, or None.
        """
        legs = self.get_transactions_by_reference(reference)
        for leg in legs:
            if leg.transaction_type == TransactionType.TRANSFER_OUT:
                return leg
        return legs[0] if legs else None

    def get_transactions_by_reference(self, reference: str) -> List[Transaction]:
        """All records sharing a reference, outgoing leg first"""
        records = [
            Transaction.from_dict(data)
            for data in self.storage.find(self.transactions_table, {'reference': reference})
        ]
        records.sort(key=lambda t: (t.created_at, t.transaction_type != TransactionType.TRANSFER_OUT))
        return records

    def get_user_transactions(self, user_id: str, limit: Optional[int] = None) -> List[Transaction]:
        """Transaction history owned by a user, newest first"""
        records = [
            Transaction.from_dict(data)
            for data in self.storage.find(self.transactions_table, {'user_id': user_id})
        ]
        records.sort(key=lambda t: t.created_at, reverse=True)
        if limit:
            records = records[:limit]
        return records

    def _adjust(
        self,
        user_id: str,
        compute_delta: Callable[[Balance], Money],
        describe: Callable[[Money], str],
        actor_id: Optional[str]
    ) -> BalanceAdjustment:
        def work() -> BalanceAdjustment:
            balance = self.account_manager.get_balance(user_id)
            delta = compute_delta(balance)
            if delta.currency != balance.currency:
                raise CurrencyMismatchError(
                    f"Cannot apply {delta.currency.code} to a {balance.currency.code} balance"
                )
            if delta.is_zero():
                raise InvalidAmountError("Balance is already at the requested amount")

            new_amount = balance.amount + delta
            if new_amount.is_negative():
                raise InsufficientFundsError("Balance cannot be negative")
            if new_amount.amount > MAX_AMOUNT:
                raise InvalidAmountError("Balance would exceed the maximum amount")

            now = datetime.now(timezone.utc)
            updated = balance.with_amount(new_amount, now)
            self.account_manager.store_balance(updated, balance.version)

            transaction_type = TransactionType.WITHDRAWAL if delta.is_negative() else TransactionType.DEPOSIT
            record = self._record(
                now, user_id, transaction_type, abs(delta), describe(delta), generate_reference("ADMIN")
            )
            return BalanceAdjustment(balance=updated, transaction=record)

        adjustment = self._run_atomic("adjust_balance", work)
        record = adjustment.transaction

        log_action(
            self.logger, "info", f"Balance adjusted: {record.transaction_type.value}",
            user_id=user_id, action="adjust_balance", resource=f"balance:{user_id}",
            extra={
                "amount": record.amount.to_string(),
                "new_balance": adjustment.new_balance.to_string(),
                "reference": record.reference,
                "actor_id": actor_id
            }
        )
        self.audit_trail.log_committed_event(
            event_type=AuditEventType.BALANCE_ADJUSTED,
            entity_type="balance",
            entity_id=user_id,
            user_id=actor_id,
            metadata={
                "transaction_id": record.id,
                "transaction_type": record.transaction_type,
                "amount": record.amount.amount,
                "new_balance": adjustment.new_balance.amount,
                "currency": record.amount.currency.code,
                "reference": record.reference,
                "description": record.description
            }
        )

        return adjustment

    def _record(
        self,
        now: datetime,
        user_id: str,
        transaction_type: TransactionType,
        amount: Money,
        description: str,
        reference: str,
        sender_id: Optional[str] = None
    ) -> Transaction:
        """Insert one transaction record inside the current unit of work"""
        record = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            sender_id=sender_id,
            transaction_type=transaction_type,
            amount=amount,
            description=description,
            reference=reference
        )
        self.storage.insert(self.transactions_table, record.id, record.to_dict())
        return record

    def _run_atomic(self, action: str, work: Callable[[], T]) -> T:
        """
        Run work in one storage transaction, re-running it after conflicts

        Raises:
            TransferFailedError: If every attempt hit a conflicting write
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                with self.storage.atomic():
                    return work()
            except StorageConflictError as e:
                if attempt > self.max_conflict_retries:
                    raise TransferFailedError(
                        f"{action} failed after {attempt} attempts due to conflicting writes, please try again"
                    ) from e
                log_action(
                    self.logger, "debug", f"Conflicting write, retrying {action}",
                    action=action, extra={"attempt": attempt, "error": str(e)}
                )

    def _log_rejection(
        self,
        action: str,
        user_id: str,
        error: LedgerError,
        reference: Optional[str] = None
    ) -> None:
        log_action(
            self.logger, "warning", f"{action} rejected: {error}",
            user_id=user_id, action=action,
            extra={"error": type(error).__name__, "reference": reference}
        )
