"""Pricing calculator: (plan, add-ons) → money breakdown in minor units.

Pure and deterministic. The same function builds checkout line items and
redisplays charges on billing queries, so the two call sites cannot drift.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict

PRICING_VERSION = "2025-10-27"
CURRENCY = "gbp"

SETUP_FEE = 6000            # £60.00 one-off
MONTHLY_PRICE = 2499        # £24.99 / month
ANNUAL_PRICE = 23988        # £239.88 / year
CUSTOM_DESIGN_FEE = 9900    # £99.00 one-off


class BillingPlan(str, Enum):
    """Recurring plan kinds (short period / long period)."""

    MONTHLY = "monthly"
    ANNUAL = "annual"

    @property
    def period_months(self) -> int:
        return 1 if self is BillingPlan.MONTHLY else 12

    @property
    def interval(self) -> str:
        """Processor recurring interval name."""
        return "month" if self is BillingPlan.MONTHLY else "year"


_RECURRING_PRICES = {
    BillingPlan.MONTHLY: MONTHLY_PRICE,
    BillingPlan.ANNUAL: ANNUAL_PRICE,
}


class LineItem(BaseModel):
    """One checkout line item."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    amount: int
    currency: str = CURRENCY
    recurring_interval: str | None = None


class PriceBreakdown(BaseModel):
    """Charges for one (plan, add-on) selection."""

    model_config = ConfigDict(frozen=True)

    plan: BillingPlan
    setup_fee: int
    recurring_amount: int
    custom_design_fee: int
    initial_amount: int
    currency: str = CURRENCY
    pricing_version: str = PRICING_VERSION

    def line_items(self) -> list[LineItem]:
        """Line items for the checkout session (recurring item first)."""
        items = [
            LineItem(
                name=f"Folio {self.plan.value.capitalize()} Plan",
                description="Portfolio website subscription",
                amount=self.recurring_amount,
                currency=self.currency,
                recurring_interval=self.plan.interval,
            ),
            LineItem(
                name="Setup Fee",
                description="One-time setup fee",
                amount=self.setup_fee,
                currency=self.currency,
            ),
        ]
        if self.custom_design_fee:
            items.append(
                LineItem(
                    name="Custom Design",
                    description="Bespoke website design",
                    amount=self.custom_design_fee,
                    currency=self.currency,
                )
            )
        return items


def calculate_pricing(plan: BillingPlan | str, custom_design: bool = False) -> PriceBreakdown:
    """Compute the charge breakdown.

    initial_amount = setup_fee + recurring_amount + custom_design_fee

    Raises:
        ValueError: On an unknown plan name
    """
    plan = BillingPlan(plan)
    recurring = _RECURRING_PRICES[plan]
    add_on = CUSTOM_DESIGN_FEE if custom_design else 0
    return PriceBreakdown(
        plan=plan,
        setup_fee=SETUP_FEE,
        recurring_amount=recurring,
        custom_design_fee=add_on,
        initial_amount=SETUP_FEE + recurring + add_on,
    )
