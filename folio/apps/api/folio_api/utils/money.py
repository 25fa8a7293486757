"""Integer minor-unit money helpers.

All amounts in the pipeline are integers in the currency's minor unit
(pence for GBP). Floats never touch money.
"""

from decimal import Decimal

CURRENCY_SYMBOLS = {"gbp": "£", "usd": "$", "eur": "€"}

# Sanity ceiling for a single charge (1,000,000.00 in major units)
MAX_MINOR_UNITS = 100_000_000


class MoneyError(ValueError):
    """Base class for money validation errors."""


class NegativeAmountError(MoneyError):
    pass


class AmountTooLargeError(MoneyError):
    pass


def validate_minor_units(amount: int) -> int:
    """Return amount unchanged if it is a sane non-negative integer.

    Raises:
        MoneyError: On non-integer, negative, or oversized amounts
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise MoneyError(f"Amount must be an integer number of minor units, got {type(amount).__name__}")
    if amount < 0:
        raise NegativeAmountError(f"Amount must be non-negative, got {amount}")
    if amount > MAX_MINOR_UNITS:
        raise AmountTooLargeError(f"Amount {amount} exceeds ceiling {MAX_MINOR_UNITS}")
    return amount


def minor_units_to_decimal(amount: int) -> Decimal:
    return (Decimal(amount) / Decimal(100)).quantize(Decimal("0.01"))


def format_minor_units(amount: int, currency: str = "gbp") -> str:
    """Format minor units for humans: 2499, "gbp" → "£24.99"."""
    symbol = CURRENCY_SYMBOLS.get(currency.lower())
    value = f"{minor_units_to_decimal(amount):,.2f}"
    if symbol:
        return f"{symbol}{value}"
    return f"{value} {currency.upper()}"
