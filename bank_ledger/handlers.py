"""
Calling Handlers

In-process entry points used by the request layer. Each handler resolves
the caller through the identity provider and checks one capability before
touching the account manager or the ledger, then returns pydantic models.
"""

from typing import List, Optional

from .currency import Currency, parse_amount, quantize_amount
from .accounts import AccountManager, AccountInfo
from .ledger import LedgerService
from .audit import AuditTrail
from .transactions import TransactionType
from .identity import Identity, IdentityProvider, Permission, require_permission
from .errors import InvalidAmountError, SelfTransferNotAllowedError
from .schemas import (
    AccountSummaryModel, BalanceUpdateRequest, BalanceUpdateResponse, MoneyModel,
    OpenAccountRequest, RecipientModel, TransactionModel, TransferReceiptModel,
    TransferRequest
)


class BankingHandlers:
    """
    User and administrator actions over the ledger
    """

    def __init__(
        self,
        account_manager: AccountManager,
        ledger: LedgerService,
        identity_provider: IdentityProvider,
        audit_trail: Optional[AuditTrail] = None,
        default_currency: Currency = Currency.USD
    ):
        self.account_manager = account_manager
        self.ledger = ledger
        self.identity_provider = identity_provider
        self.audit_trail = audit_trail
        self.default_currency = default_currency

    def _require(self, permission: Permission) -> Identity:
        return require_permission(self.identity_provider, permission, self.audit_trail)

    def _summary(self, account: AccountInfo) -> AccountSummaryModel:
        balance = self.account_manager.get_balance(account.user_id)
        return AccountSummaryModel.from_account(account, balance)

    # User actions

    def initialize_account_on_sign_up(self, holder_name: str) -> AccountSummaryModel:
        """
        Open the caller's account if it does not exist yet

        Safe to call repeatedly: an existing account is returned unchanged.
        """
        identity = self._require(Permission.VIEW_OWN_ACCOUNT)

        account = self.account_manager.find_account(identity.user_id)
        if account is None:
            try:
                account = self.account_manager.open_account(
                    identity.user_id, holder_name, currency=self.default_currency
                )
            except ValueError:
                # Another request opened it first
                account = self.account_manager.find_account(identity.user_id)
                if account is None:
                    raise

        return self._summary(account)

    def get_account_info(self) -> Optional[AccountSummaryModel]:
        """Caller's account and balance, or None before sign-up completed"""
        identity = self._require(Permission.VIEW_OWN_ACCOUNT)
        account = self.account_manager.find_account(identity.user_id)
        if account is None:
            return None
        return self._summary(account)

    def get_transactions(self, limit: Optional[int] = None) -> List[TransactionModel]:
        """Caller's transaction history, newest first"""
        identity = self._require(Permission.VIEW_OWN_ACCOUNT)
        return [
            TransactionModel.from_transaction(t)
            for t in self.ledger.get_user_transactions(identity.user_id, limit=limit)
        ]

    def lookup_recipient(self, account_number: str) -> RecipientModel:
        """
        Resolve a transfer recipient by account number

        Raises:
            AccountNotFoundError: If the number is unknown
            SelfTransferNotAllowedError: If the number is the caller's own
        """
        identity = self._require(Permission.TRANSFER_FUNDS)
        account = self.account_manager.get_account_by_number(account_number)
        if account.user_id == identity.user_id:
            raise SelfTransferNotAllowedError("Cannot transfer to your own account")
        return RecipientModel(account_number=account.account_number, holder_name=account.holder_name)

    def initiate_transfer(self, request: TransferRequest) -> TransferReceiptModel:
        """Send funds from the caller's own account"""
        identity = self._require(Permission.TRANSFER_FUNDS)
        recipient = self.account_manager.get_account_by_number(request.recipient_account_number)
        receipt = self.ledger.transfer_funds(
            sender_id=identity.user_id,
            recipient_id=recipient.user_id,
            amount=request.amount,
            description=request.description
        )
        return TransferReceiptModel.from_receipt(receipt)

    def get_transfer_receipt(self, reference: str) -> Optional[TransferReceiptModel]:
        """
        Receipt of a transfer, or None if no transfer has the reference

        Raises:
            PermissionDeniedError: If the caller is neither party nor an administrator
        """
        identity = self._require(Permission.VIEW_OWN_ACCOUNT)

        legs = {t.transaction_type: t for t in self.ledger.get_transactions_by_reference(reference)}
        outgoing = legs.get(TransactionType.TRANSFER_OUT)
        received = legs.get(TransactionType.RECEIVED)
        if outgoing is None or received is None:
            return None

        if identity.user_id not in (outgoing.user_id, received.user_id):
            self._require(Permission.VIEW_ANY_ACCOUNT)

        sender = self.account_manager.get_account(outgoing.user_id)
        recipient = self.account_manager.get_account(received.user_id)
        return TransferReceiptModel(
            reference=reference,
            amount=MoneyModel.from_money(outgoing.amount),
            sender_id=outgoing.user_id,
            sender_name=sender.holder_name,
            recipient_id=received.user_id,
            recipient_name=recipient.holder_name,
            recipient_account_number=recipient.account_number,
            description=outgoing.description,
            timestamp=outgoing.created_at,
            status=outgoing.status.value
        )

    # Administrator actions

    def admin_update_balance(self, request: BalanceUpdateRequest) -> BalanceUpdateResponse:
        """Increase, reduce or set any user's balance"""
        identity = self._require(Permission.ADJUST_BALANCE)
        adjustment = self.ledger.update_user_balance(
            request.user_id, request.amount, request.action, actor_id=identity.user_id
        )
        return BalanceUpdateResponse.from_adjustment(adjustment)

    def admin_open_account(self, request: OpenAccountRequest) -> AccountSummaryModel:
        """
        Open an account for a user, optionally funding it

        The initial balance is posted as a deposit so that it appears in the
        user's history.
        """
        identity = self._require(Permission.OPEN_ACCOUNT)

        if request.currency not in Currency.__members__:
            raise ValueError(f"Unsupported currency {request.currency}")
        initial_balance = None
        if request.initial_balance:
            initial_balance = quantize_amount(parse_amount(request.initial_balance))
            if initial_balance < 0:
                raise InvalidAmountError("Balance cannot be negative")

        account = self.account_manager.open_account(
            request.user_id, request.holder_name, currency=Currency[request.currency]
        )
        if initial_balance:
            self.ledger.adjust_balance(
                request.user_id,
                initial_balance,
                description="Initial deposit",
                actor_id=identity.user_id
            )
        return self._summary(account)

    def admin_list_accounts(self) -> List[AccountSummaryModel]:
        """All accounts with their balances, oldest first"""
        self._require(Permission.VIEW_ANY_ACCOUNT)
        return [self._summary(account) for account in self.account_manager.list_accounts()]
