"""Billing schedule: next billing date with short-month handling.

Billing dates are whole days at 00:00 UTC, so every event for the same
period computes the same timestamp.
"""

import calendar
from datetime import datetime, timezone
from enum import Enum

from folio_api.config.env import get_short_month_policy
from folio_api.pricing import BillingPlan


class ShortMonthPolicy(str, Enum):
    """What to do when the billing day does not exist in the target month.

    CLAMP: use the last day of that month (31 → Feb 28/29).
    ROLL_FORWARD: use the first day of the following month (31 → Mar 1).
    """

    CLAMP = "clamp"
    ROLL_FORWARD = "roll_forward"


def default_policy() -> ShortMonthPolicy:
    return ShortMonthPolicy(get_short_month_policy())


def start_of_day_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(hour=0, minute=0, second=0, microsecond=0, tzinfo=timezone.utc)


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def billing_date_in_month(
    year: int,
    month: int,
    billing_day: int,
    reference: datetime,
    policy: ShortMonthPolicy = ShortMonthPolicy.CLAMP,
) -> datetime:
    """Billing date for billing_day in (year, month), at 00:00 UTC."""
    if not 1 <= billing_day <= 31:
        raise ValueError(f"billing_day must be 1..31, got {billing_day}")
    reference = start_of_day_utc(reference)

    last_day = calendar.monthrange(year, month)[1]
    if billing_day <= last_day:
        return reference.replace(year=year, month=month, day=billing_day)

    if policy is ShortMonthPolicy.CLAMP:
        return reference.replace(year=year, month=month, day=last_day)

    next_year, next_month = _add_months(year, month, 1)
    return reference.replace(year=next_year, month=next_month, day=1)


def next_billing_date(
    reference: datetime,
    plan: BillingPlan | str,
    billing_day: int | None = None,
    policy: ShortMonthPolicy | None = None,
) -> datetime:
    """Same day-of-month, one billing period after reference.

    billing_day defaults to reference.day (in UTC). Annual plans advance twelve months,
    so a 29 Feb start lands on 28 Feb (CLAMP) or 1 Mar (ROLL_FORWARD).
    """
    reference = start_of_day_utc(reference)
    plan = BillingPlan(plan)
    if policy is None:
        policy = default_policy()
    if billing_day is None:
        billing_day = reference.day

    year, month = _add_months(reference.year, reference.month, plan.period_months)
    return billing_date_in_month(year, month, billing_day, reference, policy)
