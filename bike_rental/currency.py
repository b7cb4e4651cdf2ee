"""
Currency Support Module

Handles ISO 4217 currency codes and proper Decimal precision for hourly
rates and rental charges. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Any, Dict, Union
from enum import Enum
import re

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    INR = ("INR", 2, "₹")  # Indian Rupee, 2 decimal places
    USD = ("USD", 2, "$")  # US Dollar, 2 decimal places
    EUR = ("EUR", 2, "€")  # Euro, 2 decimal places
    GBP = ("GBP", 2, "£")  # British Pound, 2 decimal places
    JPY = ("JPY", 0, "¥")  # Japanese Yen, 0 decimal places

    def __init__(self, code: str, precision: int, symbol: str):
        self.code = code
        self.precision = precision
        self.symbol = symbol

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Look up a currency by its ISO code (case-insensitive)"""
        for currency in cls:
            if currency.code == code.upper():
                return currency
        raise ValueError(f"Unsupported currency code: {code}")


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    All monetary values MUST use this class or raw Decimal.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        # Round to currency precision
        try:
            rounded = self.amount.quantize(
                Decimal('0.1') ** self.currency.precision,
                rounding=ROUND_HALF_UP
            )
        except InvalidOperation:
            raise ValueError(f"Amount {self.amount} is out of range for {self.currency.code}")
        object.__setattr__(self, 'amount', rounded)

    def __mul__(self, multiplier: Union[Decimal, int]) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.symbol}{self.amount:,.{self.currency.precision}f}"

    def to_dict(self) -> Dict[str, str]:
        """Convert to a JSON-safe dictionary"""
        return {"amount": str(self.amount), "currency": self.currency.code}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Money':
        """Create Money from its dictionary form"""
        return cls(Decimal(str(data["amount"])), Currency.from_code(data["currency"]))


CURRENCY_SYMBOLS = re.compile(r"[\s" + re.escape("".join(c.symbol for c in Currency)) + "]")
PLAIN_NUMBER = re.compile(r'[+-]?(\d+(\.\d*)?|\.\d+)')


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number, e.g. "₹1,250.00"

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Remove currency symbols and whitespace only
    clean_value = CURRENCY_SYMBOLS.sub('', value)

    # Handle comma as decimal separator (European format)
    if ',' in clean_value and '.' in clean_value:
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:
            clean_value = clean_value.replace(',', '.')
        else:
            clean_value = clean_value.replace(',', '')
    elif ',' in clean_value:
        clean_value = clean_value.replace(',', '')

    # Plain decimal notation only: no exponents, no trailing units
    if not PLAIN_NUMBER.fullmatch(clean_value):
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    return Decimal(clean_value)


def to_decimal(value: Union[Decimal, int, float, str]) -> Decimal:
    """
    Coerce a user-supplied number to Decimal.

    Floats go through ``str()`` so that 150.0 becomes Decimal('150.0') and not
    its binary expansion.

    Raises:
        ValueError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        result = decimal_from_string(value)
    else:
        raise ValueError(f"Not a number: {value!r}")

    if not result.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return result
