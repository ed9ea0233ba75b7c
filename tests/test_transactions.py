"""
Test suite for transaction records
"""

import pytest
import re
from decimal import Decimal
from datetime import datetime, timezone

from bank_ledger.currency import Money, Currency
from bank_ledger.transactions import (
    Transaction, TransactionType, TransactionStatus, generate_reference
)


def make_transaction(**overrides) -> Transaction:
    now = datetime.now(timezone.utc)
    fields = dict(
        id="txn-1",
        created_at=now,
        updated_at=now,
        user_id="user-b",
        sender_id="user-a",
        transaction_type=TransactionType.RECEIVED,
        amount=Money(Decimal('30.00'), Currency.USD),
        description="rent",
        reference="TXN_1_abc"
    )
    fields.update(overrides)
    return Transaction(**fields)


class TestTransaction:
    """Test transaction record validation and storage format"""

    def test_defaults(self):
        transaction = make_transaction()
        assert transaction.status == TransactionStatus.SUCCESS
        assert transaction.currency == Currency.USD
        assert transaction.external_reference is None

    @pytest.mark.parametrize("amount", ["0", "-1"])
    def test_amount_must_be_positive(self, amount):
        with pytest.raises(ValueError, match="must be positive"):
            make_transaction(amount=Money(Decimal(amount), Currency.USD))

    def test_storage_format(self):
        transaction = make_transaction()
        data = transaction.to_dict()

        assert data['transaction_type'] == "received"
        assert data['amount'] == "30.0000"
        assert data['currency'] == "USD"
        assert data['status'] == "success"
        assert Transaction.from_dict(data) == transaction


class TestReferences:
    """Test reference generation"""

    def test_format(self):
        assert re.fullmatch(r"TXN_\d{13}_[0-9a-f]{12}", generate_reference())
        assert generate_reference("ADMIN").startswith("ADMIN_")

    def test_unique(self):
        references = {generate_reference() for _ in range(1000)}
        assert len(references) == 1000
