"""
Currency and Money Module

ISO 4217 currency codes and an immutable Money type backed by Decimal.
Ledger amounts keep four fractional digits regardless of how many a
currency displays. NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union

from .errors import InvalidAmountError

# Set global decimal context for financial precision
getcontext().prec = 28

# Fractional digits kept for every stored amount
LEDGER_PRECISION = 4
_LEDGER_QUANTUM = Decimal('1').scaleb(-LEDGER_PRECISION)

# Largest magnitude a stored amount may take: 15 integer and 4 fractional digits
MAX_AMOUNT = Decimal('999999999999999.9999')


class Currency(Enum):
    """ISO 4217 Currency Codes with display precision"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    JPY = ("JPY", 0)
    CAD = ("CAD", 2)
    CHF = ("CHF", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision


def parse_amount(value: Union[Decimal, int, str]) -> Decimal:
    """
    Convert a caller-supplied amount to Decimal

    Accepts Decimal, int and numeric strings. Floats are rejected so that
    money never passes through binary floating point.

    Raises:
        InvalidAmountError: If the value is not a finite number
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmountError(f"Amount must be a Decimal, int or numeric string, got {type(value).__name__}")

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, str):
        cleaned = value.strip().replace(',', '')
        if not cleaned:
            raise InvalidAmountError("Amount is required")
        try:
            result = Decimal(cleaned)
        except InvalidOperation:
            raise InvalidAmountError(f"Cannot convert '{value}' to an amount")
    else:
        raise InvalidAmountError(f"Unsupported amount type {type(value).__name__}")

    if not result.is_finite():
        raise InvalidAmountError(f"Amount must be finite, got {value}")
    if abs(result) > MAX_AMOUNT:
        raise InvalidAmountError(f"Amount exceeds the maximum of {MAX_AMOUNT}")

    return result


def quantize_amount(value: Decimal) -> Decimal:
    """Round to ledger precision"""
    try:
        return value.quantize(_LEDGER_QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmountError(f"Amount {value} is out of range")


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and ledger precision.
    All monetary values MUST use this class or raw Decimal.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        amount = self.amount if isinstance(self.amount, Decimal) else parse_amount(self.amount)
        object.__setattr__(self, 'amount', quantize_amount(amount))

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def __add__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot add {self.currency.code} and {other.currency.code}")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot subtract {other.currency.code} from {self.currency.code}")
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

    def __lt__(self, other: 'Money') -> bool:
        if self.currency != other.currency:
            raise ValueError(f"Cannot compare {self.currency.code} and {other.currency.code}")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        if self.currency != other.currency:
            raise ValueError(f"Cannot compare {self.currency.code} and {other.currency.code}")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        if self.currency != other.currency:
            raise ValueError(f"Cannot compare {self.currency.code} and {other.currency.code}")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        if self.currency != other.currency:
            raise ValueError(f"Cannot compare {self.currency.code} and {other.currency.code}")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display at the currency's precision"""
        display = self.amount.quantize(
            Decimal('1').scaleb(-self.currency.precision), rounding=ROUND_HALF_UP
        )
        return f"{self.currency.code} {display:,.{self.currency.precision}f}"
