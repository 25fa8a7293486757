"""Utility functions and helpers."""

from folio_api.utils.logging import JSONFormatter, configure_json_logging
from folio_api.utils.money import (
    AmountTooLargeError,
    MoneyError,
    NegativeAmountError,
    format_minor_units,
    minor_units_to_decimal,
    validate_minor_units,
)

__all__ = [
    "MoneyError",
    "NegativeAmountError",
    "AmountTooLargeError",
    "format_minor_units",
    "minor_units_to_decimal",
    "validate_minor_units",
    "JSONFormatter",
    "configure_json_logging",
]
