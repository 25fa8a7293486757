"""
Folio Pricing Module
"""

from .calculator import (
    PRICING_VERSION,
    BillingPlan,
    LineItem,
    PriceBreakdown,
    calculate_pricing,
)

__all__ = [
    "PRICING_VERSION",
    "BillingPlan",
    "LineItem",
    "PriceBreakdown",
    "calculate_pricing",
]
